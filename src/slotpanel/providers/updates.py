"""System image updates from a local file or the network."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..observable import Observable
from ..operations import OperationKind
from ..supervisor import ERROR_TITLE, OperationSupervisor
from .common import require_slot

INVALID_IMAGE = "Please select a valid system image file."


def validate_image_path(path: str | None) -> bool:
    """Return ``True`` when *path* names an existing regular file."""
    if not path:
        return False
    candidate = Path(path)
    return candidate.exists() and candidate.is_file()


@dataclass(slots=True)
class UpdatesProvider:
    """Apply updates to a slot; progress is reported by the supervisor."""

    supervisor: OperationSupervisor
    break_system: Observable[bool] = field(
        default_factory=lambda: Observable("breakSystemEnabled", False)
    )

    def update_from_file(self, slot: str, image_path: str) -> bool:
        """Write *image_path* into *slot*."""
        if not validate_image_path(image_path):
            self.supervisor.failed.emit(ERROR_TITLE, INVALID_IMAGE)
            return False
        target = require_slot(self.supervisor, slot)
        if target is None:
            return False
        return self.supervisor.request_operation(
            OperationKind.APPLY_UPDATE_FROM_FILE, [target, image_path]
        )

    def network_update(self, slot: str) -> bool:
        """Download and apply the latest image to *slot*."""
        target = require_slot(self.supervisor, slot)
        if target is None:
            return False
        args = [target]
        if self.break_system.value:
            args.append("--break-system")
        return self.supervisor.request_operation(OperationKind.APPLY_UPDATE_FROM_NETWORK, args)
