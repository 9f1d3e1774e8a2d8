"""Input validation shared by the feature providers."""
from __future__ import annotations

from ..supervisor import ERROR_TITLE, OperationSupervisor

SLOT_REQUIRED = "Please choose a slot."


def require_slot(supervisor: OperationSupervisor, slot: str | None) -> str | None:
    """Return the normalised *slot*, or report an error and return ``None``."""
    value = (slot or "").strip()
    if not value:
        supervisor.failed.emit(ERROR_TITLE, SLOT_REQUIRED)
        return None
    return value
