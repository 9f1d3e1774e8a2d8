"""Tests for the feature providers layered on the supervisor."""
from __future__ import annotations

import stat
from collections.abc import Iterator, Sequence
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from slotpanel.catalog import BackupCatalog, BackupRecord
from slotpanel.providers import (
    BackupsProvider,
    EnvironmentProvider,
    SlotsProvider,
    UpdatesProvider,
    validate_image_path,
)
from slotpanel.runner import CommandRunner, Finished, LaunchFailure, RunEvent, RunOutcome
from slotpanel.supervisor import OperationSupervisor


class ScriptedHandle:
    """Handle that immediately finishes with a fixed exit code."""

    def __init__(self, exit_code: int) -> None:
        self._exit_code = exit_code

    def events(self) -> Iterator[RunEvent]:
        yield Finished(self._exit_code)

    def cancel(self, grace: float | None = None) -> None:
        return None


class RecordingRunner(CommandRunner):
    """Real argv assembly, scripted process results."""

    def __init__(self, exit_code: int = 0, probe: RunOutcome | None = None) -> None:
        super().__init__(tool_bin="obsidianctl", wrapper_bin="pkexec")
        self.exit_code = exit_code
        self.probe = probe or RunOutcome(0, None, "")
        self.launched: list[list[str]] = []
        self.blocking: list[tuple[list[str], float]] = []
        self.stderr_captured: list[bool] = []

    def launch(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        interactive: bool = False,
    ) -> ScriptedHandle:  # type: ignore[override]
        self.launched.append(list(argv))
        return ScriptedHandle(self.exit_code)

    def run_blocking(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        capture_stderr: bool = True,
    ) -> RunOutcome:
        self.blocking.append((list(argv), timeout))
        self.stderr_captured.append(capture_stderr)
        return self.probe


NOW = datetime.now().astimezone()


def _notifications(supervisor: OperationSupervisor) -> dict[str, list[tuple[str, str]]]:
    seen: dict[str, list[tuple[str, str]]] = {"succeeded": [], "failed": []}
    supervisor.succeeded.connect(lambda title, message: seen["succeeded"].append((title, message)))
    supervisor.failed.connect(lambda title, message: seen["failed"].append((title, message)))
    return seen


def _backups(
    runner: RecordingRunner,
    records: Sequence[BackupRecord] = (),
) -> tuple[BackupsProvider, BackupCatalog, OperationSupervisor]:
    supervisor = OperationSupervisor(runner)
    catalog = BackupCatalog()
    catalog.replace(records)
    return BackupsProvider(supervisor, catalog, prune_timeout=12.0), catalog, supervisor


def _record(path: str, age_days: float = 1) -> BackupRecord:
    return BackupRecord(path=path, slot="a", timestamp=NOW - timedelta(days=age_days))


def test_create_backup_arguments() -> None:
    """Optional directory and full-backup flag are appended in order."""
    runner = RecordingRunner()
    provider, _, supervisor = _backups(runner)

    assert provider.create("a", "/mnt/backups", full_backup=True) is True
    supervisor.wait(5)

    assert runner.launched == [
        ["pkexec", "obsidianctl", "backup-slot", "a", "--backup-dir", "/mnt/backups", "--full-backup"]
    ]


def test_create_requires_slot() -> None:
    """An empty slot is rejected without launching anything."""
    runner = RecordingRunner()
    provider, _, supervisor = _backups(runner)
    seen = _notifications(supervisor)

    assert provider.create("  ") is False

    assert runner.launched == []
    assert seen["failed"] == [("Error", "Please choose a slot.")]


def test_restore_uses_selected_record() -> None:
    """Restore passes the target slot and the backup path."""
    runner = RecordingRunner()
    provider, _, supervisor = _backups(runner, [_record("/b/slot_a/1.sfs")])

    assert provider.restore(0, "b") is True
    supervisor.wait(5)

    assert runner.launched == [["pkexec", "obsidianctl", "rollback-slot", "b", "/b/slot_a/1.sfs"]]


@pytest.mark.parametrize("index", [-1, 1, 99])
def test_invalid_selection_is_rejected(index: int) -> None:
    """Out-of-range indexes never launch a process."""
    runner = RecordingRunner()
    provider, _, supervisor = _backups(runner, [_record("/b/slot_a/1.sfs")])
    seen = _notifications(supervisor)

    assert provider.restore(index, "a") is False
    assert provider.delete(index) is False

    assert runner.launched == []
    assert seen["failed"] == [("Error", "Invalid backup selection.")] * 2


def test_delete_removes_entry_on_success() -> None:
    """A successful delete drops exactly that catalog entry."""
    runner = RecordingRunner(exit_code=0)
    provider, catalog, supervisor = _backups(
        runner, [_record("/b/1.sfs", 1), _record("/b/2.sfs", 2)]
    )
    seen = _notifications(supervisor)

    assert provider.delete(1) is True
    supervisor.wait(5)

    assert runner.launched == [["pkexec", "rm", "-f", "/b/2.sfs"]]
    assert [record.path for record in catalog.records()] == ["/b/1.sfs"]
    assert seen["succeeded"] == [("Success", "Backup deleted successfully!")]


def test_delete_failure_keeps_entry() -> None:
    """A failing delete leaves the catalog unchanged."""
    runner = RecordingRunner(exit_code=1)
    provider, catalog, supervisor = _backups(runner, [_record("/b/1.sfs")])
    seen = _notifications(supervisor)

    provider.delete(0)
    supervisor.wait(5)

    assert len(catalog) == 1
    assert seen["failed"] == [("Error", "Failed to delete backup with exit code 1")]


def test_cleanup_deletes_through_wrapper() -> None:
    """Cleanup runs a bounded privileged ``rm`` per old backup."""
    runner = RecordingRunner(probe=RunOutcome(0, None, ""))
    provider, catalog, supervisor = _backups(
        runner, [_record("/b/new.sfs", 1), _record("/b/old.sfs", 40)]
    )
    seen = _notifications(supervisor)

    assert provider.cleanup(30) == 1

    assert runner.blocking == [(["pkexec", "rm", "-f", "/b/old.sfs"], 12.0)]
    assert [record.path for record in catalog.records()] == ["/b/new.sfs"]
    assert seen["succeeded"] == [("Cleanup Complete", "Deleted 1 old backups.")]


def test_cleanup_keeps_backups_when_helper_missing() -> None:
    """A delete that cannot be launched counts as a failure."""
    runner = RecordingRunner(probe=RunOutcome(None, LaunchFailure.NOT_FOUND, ""))
    provider, catalog, supervisor = _backups(runner, [_record("/b/old.sfs", 40)])
    seen = _notifications(supervisor)

    assert provider.cleanup(30) == 0

    assert len(catalog) == 1
    assert seen["succeeded"] == [("Cleanup Complete", "Deleted 0 old backups.")]


def test_refresh_scans_configured_directories(tmp_path: Path) -> None:
    """``refresh`` rescans and notifies listeners."""
    (tmp_path / "slot_b").mkdir()
    (tmp_path / "slot_b" / "x.sfs").write_bytes(b"1")
    supervisor = OperationSupervisor(RecordingRunner())
    provider = BackupsProvider(supervisor, BackupCatalog([tmp_path / "slot_b"]))
    refreshed: list[None] = []
    provider.refreshed.connect(lambda: refreshed.append(None))

    records = provider.refresh()

    assert [record.slot for record in records] == ["b"]
    assert refreshed == [None]


@pytest.mark.parametrize(
    ("method", "args", "expected"),
    [
        ("switch", ("b",), ["switch", "b"]),
        ("switch_once", ("a",), ["switch-once", "a"]),
        ("sync", ("b",), ["sync", "b"]),
        ("slot_diff", (), ["slot-diff"]),
        ("health_check", (), ["health-check"]),
    ],
)
def test_slot_operations(method: str, args: tuple[str, ...], expected: list[str]) -> None:
    """Slot operations map onto privileged tool subcommands."""
    runner = RecordingRunner()
    supervisor = OperationSupervisor(runner)
    provider = SlotsProvider(supervisor)

    assert getattr(provider, method)(*args) is True
    supervisor.wait(5)

    assert runner.launched[0] == ["pkexec", "obsidianctl", *expected]


def test_current_slot_query_updates_observable() -> None:
    """The current slot is read unprivileged with the configured timeout."""
    runner = RecordingRunner(probe=RunOutcome(0, None, "b\n"))
    provider = SlotsProvider(OperationSupervisor(runner), probe_timeout=2.5)

    assert provider.refresh_current_slot() == "b"

    assert provider.current_slot.value == "b"
    assert runner.blocking == [(["obsidianctl", "current-slot"], 2.5)]
    assert runner.stderr_captured == [False]


def test_current_slot_query_failure_keeps_previous_value() -> None:
    """A failed query leaves the last known slot in place."""
    runner = RecordingRunner(probe=RunOutcome(1, None, "boom"))
    provider = SlotsProvider(OperationSupervisor(runner))
    provider.current_slot.set("a")

    assert provider.refresh_current_slot() is None
    assert provider.current_slot.value == "a"


def test_switch_success_refreshes_current_slot() -> None:
    """A successful switch re-reads the current slot."""
    runner = RecordingRunner(probe=RunOutcome(0, None, "b"))
    supervisor = OperationSupervisor(runner)
    provider = SlotsProvider(supervisor)

    provider.switch("b")
    supervisor.wait(5)

    assert provider.current_slot.value == "b"


def test_validate_image_path(tmp_path: Path) -> None:
    """Only existing regular files are valid images."""
    image = tmp_path / "system.img"
    image.write_bytes(b"img")

    assert validate_image_path(str(image)) is True
    assert validate_image_path(str(tmp_path)) is False
    assert validate_image_path(str(tmp_path / "missing.img")) is False
    assert validate_image_path("") is False
    assert validate_image_path(None) is False


def test_update_from_file(tmp_path: Path) -> None:
    """A valid image is handed to the ``update`` subcommand."""
    image = tmp_path / "system.img"
    image.write_bytes(b"img")
    runner = RecordingRunner()
    supervisor = OperationSupervisor(runner)
    provider = UpdatesProvider(supervisor)

    assert provider.update_from_file("a", str(image)) is True
    supervisor.wait(5)

    assert runner.launched == [["pkexec", "obsidianctl", "update", "a", str(image)]]


def test_update_from_file_rejects_missing_image(tmp_path: Path) -> None:
    """Missing images are reported without launching."""
    runner = RecordingRunner()
    supervisor = OperationSupervisor(runner)
    seen = _notifications(supervisor)

    assert UpdatesProvider(supervisor).update_from_file("a", str(tmp_path / "nope")) is False

    assert runner.launched == []
    assert seen["failed"] == [("Error", "Please select a valid system image file.")]


@pytest.mark.parametrize(("flag", "extra"), [(False, []), (True, ["--break-system"])])
def test_network_update_break_system(flag: bool, extra: list[str]) -> None:
    """``--break-system`` follows the observable flag."""
    runner = RecordingRunner()
    supervisor = OperationSupervisor(runner)
    provider = UpdatesProvider(supervisor)
    provider.break_system.set(flag)

    provider.network_update("b")
    supervisor.wait(5)

    assert runner.launched == [["pkexec", "obsidianctl", "netupdate", "b", *extra]]


def test_environment_default_arguments() -> None:
    """Only essentials are mounted by default."""
    provider = EnvironmentProvider(OperationSupervisor(RecordingRunner()))

    assert provider.enter_arguments("a") == ["a", "--mount-essentials"]


def test_environment_enter_with_all_options() -> None:
    """Every enabled option becomes a flag."""
    runner = RecordingRunner()
    supervisor = OperationSupervisor(runner)
    provider = EnvironmentProvider(supervisor)
    provider.enable_networking.set(True)
    provider.mount_home.set(True)
    provider.mount_root.set(True)

    assert provider.enter("b") is True
    supervisor.wait(5)

    assert runner.launched == [
        [
            "pkexec",
            "obsidianctl",
            "enter-slot",
            "b",
            "--enable-networking",
            "--mount-essentials",
            "--mount-home",
            "--mount-root",
        ]
    ]


def test_verify_integrity() -> None:
    """Integrity verification targets the chosen slot."""
    runner = RecordingRunner()
    supervisor = OperationSupervisor(runner)

    assert EnvironmentProvider(supervisor).verify_integrity("a") is True
    supervisor.wait(5)

    assert runner.launched == [["pkexec", "obsidianctl", "verify-integrity", "a"]]


def test_current_slot_query_ignores_stderr(tmp_path: Path) -> None:
    """Warnings the tool prints on stderr never become the slot name."""
    tool = tmp_path / "obsidianctl"
    tool.write_text("#!/bin/sh\necho 'warning: deprecated' >&2\necho a\n", encoding="utf-8")
    tool.chmod(tool.stat().st_mode | stat.S_IXUSR)
    runner = CommandRunner(tool_bin=str(tool), wrapper_bin=None)
    provider = SlotsProvider(OperationSupervisor(runner), probe_timeout=10)

    assert provider.refresh_current_slot() == "a"
    assert provider.current_slot.value == "a"
