"""Operation kinds and the finish policies that decide how each one ends."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum


class OperationKind(str, Enum):
    """Every unit of external work the supervisor knows how to run."""

    CREATE_BACKUP = "create-backup"
    RESTORE_BACKUP = "restore-backup"
    DELETE_BACKUP = "delete-backup"
    SWITCH_SLOT = "switch-slot"
    SWITCH_ONCE = "switch-once"
    SYNC_SLOTS = "sync-slots"
    HEALTH_CHECK = "health-check"
    SLOT_DIFF = "slot-diff"
    APPLY_UPDATE_FROM_FILE = "apply-update-from-file"
    APPLY_UPDATE_FROM_NETWORK = "apply-update-from-network"
    VERIFY_INTEGRITY = "verify-integrity"
    ENTER_ENVIRONMENT = "enter-environment"


class Refresh(str, Enum):
    """Follow-up actions run after a successful operation."""

    NONE = "none"
    CATALOG = "catalog"
    CURRENT_SLOT = "current-slot"


@dataclass(frozen=True, slots=True)
class FinishPolicy:
    """How a successful run of one operation kind is reported.

    ``command`` is the tool subcommand the kind maps to. ``message`` is the
    text of the success notification (``None`` suppresses it). ``note`` is
    appended to the output buffer instead of, or in addition to, a message.
    """

    command: str
    message: str | None = None
    title: str = "Success"
    note: str | None = None
    tracks_progress: bool = False
    refresh: Refresh = Refresh.NONE
    interactive: bool = False


FINISH_POLICIES: Mapping[OperationKind, FinishPolicy] = {
    OperationKind.CREATE_BACKUP: FinishPolicy(
        command="backup-slot",
        message="Backup created successfully!",
        refresh=Refresh.CATALOG,
    ),
    OperationKind.RESTORE_BACKUP: FinishPolicy(
        command="rollback-slot",
        message="Backup restored successfully!",
    ),
    # Deletion is dispatched directly through the wrapper; see
    # OperationSupervisor.delete_backup.
    OperationKind.DELETE_BACKUP: FinishPolicy(
        command="rm",
        message="Backup deleted successfully!",
    ),
    OperationKind.SWITCH_SLOT: FinishPolicy(
        command="switch",
        message="Slot switch scheduled. Please reboot to apply.",
        refresh=Refresh.CURRENT_SLOT,
    ),
    OperationKind.SWITCH_ONCE: FinishPolicy(
        command="switch-once",
        message="One-time slot switch scheduled for next boot.",
    ),
    OperationKind.SYNC_SLOTS: FinishPolicy(
        command="sync",
        message="Slot synchronization completed successfully!",
    ),
    OperationKind.HEALTH_CHECK: FinishPolicy(
        command="health-check",
        note="Health check completed successfully.",
    ),
    OperationKind.SLOT_DIFF: FinishPolicy(
        command="slot-diff",
        note="Slot comparison completed.",
    ),
    OperationKind.APPLY_UPDATE_FROM_FILE: FinishPolicy(
        command="update",
        message="System update completed successfully!",
        tracks_progress=True,
    ),
    OperationKind.APPLY_UPDATE_FROM_NETWORK: FinishPolicy(
        command="netupdate",
        message="Network update completed successfully!",
        tracks_progress=True,
    ),
    OperationKind.VERIFY_INTEGRITY: FinishPolicy(
        command="verify-integrity",
        message="Slot integrity verified successfully.",
        note="Integrity verification completed successfully.",
    ),
    OperationKind.ENTER_ENVIRONMENT: FinishPolicy(
        command="enter-slot",
        message="Environment session ended.",
        interactive=True,
    ),
}


def policy_for(kind: OperationKind) -> FinishPolicy:
    """Return the finish policy registered for *kind*."""
    return FINISH_POLICIES[kind]


@dataclass(frozen=True, slots=True)
class Operation:
    """A named unit of external work currently in flight."""

    kind: OperationKind
    arguments: tuple[str, ...] = field(default_factory=tuple)
    privileged: bool = True

    @classmethod
    def create(
        cls,
        kind: OperationKind,
        arguments: Sequence[str] = (),
        *,
        privileged: bool = True,
    ) -> Operation:
        """Build an operation, normalising *arguments* to a tuple of strings."""
        return cls(kind=kind, arguments=tuple(str(arg) for arg in arguments), privileged=privileged)

    @property
    def policy(self) -> FinishPolicy:
        """Return this operation's finish policy."""
        return policy_for(self.kind)

    @property
    def command(self) -> str:
        """Return the tool subcommand for this operation."""
        return self.policy.command


__all__ = [
    "FINISH_POLICIES",
    "FinishPolicy",
    "Operation",
    "OperationKind",
    "Refresh",
    "policy_for",
]
