"""Scan backup directories and maintain the in-memory backup catalog."""
from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from .observable import Signal

LOGGER = logging.getLogger(__name__)

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

#: Runs a privileged ``rm -f <path>`` to completion and returns its exit code.
Deleter = Callable[[str], int]


class CatalogError(RuntimeError):
    """Raised when the catalog is used incorrectly."""


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """One backup artifact on disk."""

    path: str
    slot: str
    timestamp: datetime
    size_bytes: int = 0
    is_full_backup: bool = False

    @property
    def size_label(self) -> str:
        """Return the human readable size."""
        return size_label(self.size_bytes)

    @property
    def timestamp_label(self) -> str:
        """Return the timestamp formatted as ``YYYY-MM-DD HH:MM:SS``."""
        return self.timestamp.strftime(TIMESTAMP_FORMAT)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "path": self.path,
            "slot": self.slot,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "size_bytes": self.size_bytes,
            "size": self.size_label,
            "is_full_backup": self.is_full_backup,
        }


def size_label(size_bytes: int) -> str:
    """Format *size_bytes* with binary units; ``0`` means unknown."""
    if size_bytes == 0:
        return "Unknown"
    size = float(size_bytes)
    unit_index = 0
    while size >= 1024.0 and unit_index < len(SIZE_UNITS) - 1:
        size /= 1024.0
        unit_index += 1
    return f"{size:.1f} {SIZE_UNITS[unit_index]}"


def read_full_backup_flag(sidecar: Path) -> bool:
    """Return ``is_full_backup`` from *sidecar*; ``False`` on any problem."""
    try:
        text = sidecar.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    except (OSError, UnicodeDecodeError) as exc:
        LOGGER.debug("Unable to read sidecar %s: %s", sidecar, exc)
        return False
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        LOGGER.debug("Ignoring malformed sidecar %s: %s", sidecar, exc)
        return False
    if not isinstance(data, dict):
        return False
    value = data.get("is_full_backup", False)
    return value if isinstance(value, bool) else False


class BackupCatalog:
    """Sorted (newest first) list of backup artifacts.

    The record list is replaced wholesale by :meth:`scan` and mutated in place
    only by :meth:`remove`, :meth:`remove_at` and :meth:`prune_older_than`.
    Readers get copies.
    """

    def __init__(
        self,
        directories: Iterable[Path | str] = (),
        *,
        extension: str = ".sfs",
        sidecar_extension: str = ".json",
        slot_prefix_length: int = 5,
        deleter: Deleter | None = None,
    ) -> None:
        """Configure where to look for backups and how to delete them."""
        self.directories = tuple(Path(entry) for entry in directories)
        self.extension = extension
        self.sidecar_extension = sidecar_extension
        self.slot_prefix_length = slot_prefix_length
        self._deleter = deleter
        self._records: list[BackupRecord] = []
        self._lock = threading.Lock()
        self.changed = Signal("catalogChanged")

    def __len__(self) -> int:
        """Return the number of records."""
        return len(self._records)

    def set_deleter(self, deleter: Deleter) -> None:
        """Install the privileged deletion callable used by prune."""
        self._deleter = deleter

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------
    def scan(self, directories: Iterable[Path | str] | None = None) -> list[BackupRecord]:
        """Rebuild the catalog from *directories* (default: configured ones)."""
        targets = self.directories if directories is None else tuple(
            Path(entry) for entry in directories
        )
        found: list[BackupRecord] = []
        for directory in targets:
            found.extend(self._scan_directory(directory))
        records = self.replace(found)
        LOGGER.debug("Catalog scan found %d backups in %d directories", len(records), len(targets))
        return records

    def replace(self, records: Iterable[BackupRecord]) -> list[BackupRecord]:
        """Swap in *records*, dropping duplicate paths and sorting newest first."""
        unique: list[BackupRecord] = []
        seen: set[str] = set()
        for record in records:
            if record.path in seen:
                continue
            seen.add(record.path)
            unique.append(record)
        unique.sort(key=lambda record: record.timestamp, reverse=True)
        with self._lock:
            self._records = unique
        self.changed.emit()
        return list(unique)

    def _scan_directory(self, directory: Path) -> list[BackupRecord]:
        if not directory.is_dir():
            LOGGER.debug("Skipping missing backup directory %s", directory)
            return []
        slot = directory.name[self.slot_prefix_length :]
        entries: list[tuple[float, Path, os.stat_result]] = []
        try:
            candidates = list(directory.iterdir())
        except OSError as exc:
            LOGGER.debug("Unable to list %s: %s", directory, exc)
            return []
        wanted = self.extension.lower()
        for candidate in candidates:
            if candidate.name.startswith(".") or candidate.suffix.lower() != wanted:
                continue
            try:
                stat_result = candidate.stat()
            except OSError as exc:
                LOGGER.debug("Unable to stat %s: %s", candidate, exc)
                continue
            if not candidate.is_file():
                continue
            entries.append((stat_result.st_mtime, candidate, stat_result))

        # Enumerate newest first, the order a time-sorted directory listing gives.
        entries.sort(key=lambda item: item[0], reverse=True)
        records: list[BackupRecord] = []
        for mtime, artifact, stat_result in entries:
            sidecar = artifact.with_suffix(self.sidecar_extension)
            records.append(
                BackupRecord(
                    path=str(artifact.absolute()),
                    slot=slot,
                    timestamp=datetime.fromtimestamp(mtime).astimezone(),
                    size_bytes=stat_result.st_size,
                    is_full_backup=read_full_backup_flag(sidecar),
                )
            )
        return records

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------
    def records(self) -> list[BackupRecord]:
        """Return a snapshot of the records."""
        with self._lock:
            return list(self._records)

    def record_at(self, index: int) -> BackupRecord | None:
        """Return the record at *index*, or ``None`` when out of range."""
        with self._lock:
            if 0 <= index < len(self._records):
                return self._records[index]
        return None

    def find(self, path: str) -> BackupRecord | None:
        """Return the record stored under *path*."""
        with self._lock:
            for record in self._records:
                if record.path == path:
                    return record
        return None

    def remove(self, path: str) -> bool:
        """Drop the record stored under *path*; return whether one was removed."""
        with self._lock:
            for index, record in enumerate(self._records):
                if record.path == path:
                    del self._records[index]
                    break
            else:
                return False
        self.changed.emit()
        return True

    def remove_at(self, index: int) -> BackupRecord | None:
        """Drop and return the record at *index* (``None`` when out of range)."""
        with self._lock:
            if not 0 <= index < len(self._records):
                return None
            record = self._records.pop(index)
        self.changed.emit()
        return record

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def prune_older_than(self, days: int, *, now: datetime | None = None) -> int:
        """Delete every backup older than *days*; return how many were removed.

        Records are visited from the highest index down so removals never
        shift entries that are still to be visited. A failed deletion keeps
        its record and does not stop the remaining ones.
        """
        if days < 0:
            raise CatalogError("Retention days must be non-negative.")
        if self._deleter is None:
            raise CatalogError("No deleter configured for pruning backups.")
        reference = now or datetime.now().astimezone()
        cutoff = reference - timedelta(days=days)

        removed = 0
        for index in range(len(self._records) - 1, -1, -1):
            record = self.record_at(index)
            if record is None or not _older_than(record.timestamp, cutoff):
                continue
            exit_code = self._deleter(record.path)
            if exit_code != 0:
                LOGGER.debug("Keeping %s; delete exited %s", record.path, exit_code)
                continue
            with self._lock:
                if index < len(self._records) and self._records[index] is record:
                    del self._records[index]
                    removed += 1
        if removed:
            self.changed.emit()
        return removed


def _older_than(timestamp: datetime, cutoff: datetime) -> bool:
    if (timestamp.tzinfo is None) != (cutoff.tzinfo is None):
        if timestamp.tzinfo is None:
            timestamp = timestamp.astimezone()
        else:
            cutoff = cutoff.astimezone()
    return timestamp < cutoff


__all__ = [
    "BackupCatalog",
    "BackupRecord",
    "CatalogError",
    "Deleter",
    "read_full_backup_flag",
    "size_label",
]
