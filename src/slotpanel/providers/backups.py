"""Backup creation, restore, deletion and retention."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..catalog import BackupCatalog, BackupRecord
from ..observable import Signal
from ..operations import OperationKind, Refresh
from ..supervisor import ERROR_TITLE, INVALID_SELECTION, OperationSupervisor
from .common import require_slot

LOGGER = logging.getLogger(__name__)

CLEANUP_TITLE = "Cleanup Complete"


@dataclass(slots=True)
class BackupsProvider:
    """Drive backup operations and keep the catalog in step with them."""

    supervisor: OperationSupervisor
    catalog: BackupCatalog
    prune_timeout: float = 30.0
    refreshed: Signal = field(default_factory=lambda: Signal("refreshFinished"))

    def __post_init__(self) -> None:
        """Wire the catalog refresh and privileged deleter into the supervisor."""
        self.supervisor.set_refresh_hook(Refresh.CATALOG, self.refresh)
        self.catalog.set_deleter(self._delete_blocking)

    def refresh(self) -> list[BackupRecord]:
        """Rescan the backup directories."""
        records = self.catalog.scan()
        self.refreshed.emit()
        return records

    def create(
        self,
        slot: str,
        custom_dir: str | None = None,
        full_backup: bool = False,
    ) -> bool:
        """Back up *slot*, optionally into *custom_dir* and as a full backup."""
        target = require_slot(self.supervisor, slot)
        if target is None:
            return False
        args = [target]
        if custom_dir:
            args.extend(["--backup-dir", custom_dir])
        if full_backup:
            args.append("--full-backup")
        return self.supervisor.request_operation(OperationKind.CREATE_BACKUP, args)

    def restore(self, index: int, target_slot: str) -> bool:
        """Roll *target_slot* back to the backup at *index*."""
        record = self._selected(index)
        if record is None:
            return False
        target = require_slot(self.supervisor, target_slot)
        if target is None:
            return False
        return self.supervisor.request_operation(
            OperationKind.RESTORE_BACKUP, [target, record.path]
        )

    def delete(self, index: int) -> bool:
        """Delete the backup at *index*; the catalog entry goes only on success."""
        record = self._selected(index)
        if record is None:
            return False
        path = record.path
        return self.supervisor.delete_backup(path, on_success=lambda: self.catalog.remove(path))

    def cleanup(self, older_than_days: int) -> int:
        """Delete every backup older than *older_than_days*; return the count."""
        removed = self.catalog.prune_older_than(older_than_days)
        self.supervisor.succeeded.emit(CLEANUP_TITLE, f"Deleted {removed} old backups.")
        return removed

    def _selected(self, index: int) -> BackupRecord | None:
        record = self.catalog.record_at(index)
        if record is None or not record.path:
            self.supervisor.failed.emit(ERROR_TITLE, INVALID_SELECTION)
            return None
        return record

    def _delete_blocking(self, path: str) -> int:
        runner = self.supervisor.runner
        outcome = runner.run_blocking(
            runner.direct_argv(["rm", "-f", path]),
            timeout=self.prune_timeout,
        )
        if outcome.exit_code is None:
            LOGGER.debug("Delete of %s failed to run: %s", path, outcome.launch_failure)
            return -1
        return outcome.exit_code
