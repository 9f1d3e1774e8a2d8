"""Slot switching, synchronisation and inspection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..observable import Observable
from ..operations import OperationKind, Refresh
from ..supervisor import OperationSupervisor
from .common import require_slot

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SlotsProvider:
    """Slot-level operations plus the current-slot probe."""

    supervisor: OperationSupervisor
    probe_timeout: float = 3.0
    current_slot: Observable[str] = field(default_factory=lambda: Observable("currentSlot", ""))

    def __post_init__(self) -> None:
        """Refresh the current slot after a successful switch."""
        self.supervisor.set_refresh_hook(Refresh.CURRENT_SLOT, self.refresh_current_slot)

    def switch(self, slot: str) -> bool:
        """Make *slot* the default boot slot."""
        return self._request(OperationKind.SWITCH_SLOT, slot)

    def switch_once(self, slot: str) -> bool:
        """Boot *slot* on the next boot only."""
        return self._request(OperationKind.SWITCH_ONCE, slot)

    def sync(self, target_slot: str) -> bool:
        """Synchronise *target_slot* from the active slot."""
        return self._request(OperationKind.SYNC_SLOTS, target_slot)

    def slot_diff(self) -> bool:
        """Compare the two slots."""
        return self.supervisor.request_operation(OperationKind.SLOT_DIFF)

    def health_check(self) -> bool:
        """Run the tool's health check."""
        return self.supervisor.request_operation(OperationKind.HEALTH_CHECK)

    def refresh_current_slot(self) -> str | None:
        """Ask the tool (unprivileged) which slot is active.

        Only standard output is read, so warnings on standard error never
        end up in the slot name. The observable only changes when the tool
        exits 0 and reports a new value; any failure leaves the previous
        value in place.
        """
        runner = self.supervisor.runner
        outcome = runner.run_blocking(
            runner.build_argv("current-slot", privileged=False),
            timeout=self.probe_timeout,
            capture_stderr=False,
        )
        if not outcome.ok:
            LOGGER.debug("current-slot query failed: %s", outcome)
            return None
        slot = outcome.combined_output.strip()
        self.current_slot.set(slot)
        return slot

    def _request(self, kind: OperationKind, slot: str) -> bool:
        target = require_slot(self.supervisor, slot)
        if target is None:
            return False
        return self.supervisor.request_operation(kind, [target])
