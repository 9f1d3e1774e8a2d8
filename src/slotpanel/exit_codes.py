"""Exit codes returned by the ``slotpanel`` CLI."""
from __future__ import annotations

from enum import IntEnum

from .runner import LaunchFailure, RunOutcome


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    BUSY = 5


def exit_code_for(outcome: RunOutcome) -> ExitCode:
    """Map a finished invocation to the CLI exit code."""
    if outcome.launch_failure is LaunchFailure.NOT_FOUND:
        return ExitCode.ENVIRONMENT
    if outcome.ok:
        return ExitCode.OK
    return ExitCode.PROVIDER


__all__ = ["ExitCode", "exit_code_for"]
