"""Sandboxed slot environments and integrity verification."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..observable import Observable
from ..operations import OperationKind
from ..supervisor import OperationSupervisor
from .common import require_slot


def _flag(name: str, initial: bool) -> Observable[bool]:
    return Observable(name, initial)


@dataclass(slots=True)
class EnvironmentProvider:
    """Enter a slot's environment (in the caller's terminal) or verify it."""

    supervisor: OperationSupervisor
    enable_networking: Observable[bool] = field(
        default_factory=lambda: _flag("enableNetworking", False)
    )
    mount_essentials: Observable[bool] = field(
        default_factory=lambda: _flag("mountEssentials", True)
    )
    mount_home: Observable[bool] = field(default_factory=lambda: _flag("mountHome", False))
    mount_root: Observable[bool] = field(default_factory=lambda: _flag("mountRoot", False))

    def enter_arguments(self, slot: str) -> list[str]:
        """Return the ``enter-slot`` arguments for *slot* and the enabled options."""
        args = [slot]
        if self.enable_networking.value:
            args.append("--enable-networking")
        if self.mount_essentials.value:
            args.append("--mount-essentials")
        if self.mount_home.value:
            args.append("--mount-home")
        if self.mount_root.value:
            args.append("--mount-root")
        return args

    def enter(self, slot: str) -> bool:
        """Open a privileged session inside *slot*."""
        target = require_slot(self.supervisor, slot)
        if target is None:
            return False
        return self.supervisor.request_operation(
            OperationKind.ENTER_ENVIRONMENT, self.enter_arguments(target)
        )

    def verify_integrity(self, slot: str) -> bool:
        """Verify the files of *slot* against its manifest."""
        target = require_slot(self.supervisor, slot)
        if target is None:
            return False
        return self.supervisor.request_operation(OperationKind.VERIFY_INTEGRITY, [target])
