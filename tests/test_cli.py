"""Tests for the slotpanel CLI using a scripted stand-in for the slot tool."""
from __future__ import annotations

import json
import os
import stat
import textwrap
import time
from dataclasses import dataclass
from pathlib import Path

import pytest
from typer.testing import CliRunner, Result

from slotpanel import __version__
from slotpanel.cli import app
from slotpanel.exit_codes import ExitCode

runner = CliRunner()

FAKE_TOOL = """\
#!/bin/sh
case "$1" in
  current-slot) echo a ;;
  backup-slot) touch "{slot_a}/fresh.sfs"; echo "backup of $2 written" ;;
  netupdate) echo "downloading 40%"; echo "applying 100%" ;;
  sync) echo "sync failed: target busy" >&2; exit 1 ;;
  health-check) echo "all checks passed" ;;
  *) echo "args: $*" ;;
esac
"""

PASSTHROUGH_WRAPPER = """\
#!/bin/sh
exec "$@"
"""


@dataclass
class Sandbox:
    """Paths of a throwaway slotpanel installation."""

    root: Path
    config: Path
    logs: Path
    slot_a: Path
    slot_b: Path

    def invoke(self, *args: str) -> Result:
        return runner.invoke(app, ["--config-file", str(self.config), *args])

    def operations(self) -> list[dict[str, object]]:
        path = self.logs / "operations.jsonl"
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _write_executable(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def _write_config(path: Path, **values: str) -> None:
    lines = [f"{key}: {value}" for key, value in values.items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


@pytest.fixture()
def sandbox(tmp_path: Path) -> Sandbox:
    slot_a = tmp_path / "backups" / "slot_a"
    slot_b = tmp_path / "backups" / "slot_b"
    slot_a.mkdir(parents=True)
    slot_b.mkdir(parents=True)
    tool = _write_executable(tmp_path / "obsidianctl", FAKE_TOOL.format(slot_a=slot_a))
    wrapper = _write_executable(tmp_path / "wrapper", PASSTHROUGH_WRAPPER)
    config = tmp_path / "slotpanel.yml"
    config.write_text(
        textwrap.dedent(
            f"""\
            tool_bin: {tool}
            wrapper_bin: {wrapper}
            logs_dir: {tmp_path / "logs"}
            backups:
              directories:
                - {slot_a}
                - {slot_b}
            timeouts:
              probe: 10
            """
        ),
        encoding="utf-8",
    )
    return Sandbox(tmp_path, config, tmp_path / "logs", slot_a, slot_b)


def _backup(directory: Path, name: str, *, age_days: float) -> Path:
    path = directory / name
    path.write_bytes(b"backup")
    stamp = time.time() - age_days * 86400
    os.utime(path, (stamp, stamp))
    return path


def test_version_option() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"slotpanel {__version__}" in result.stdout


def test_help_lists_command_groups() -> None:
    """Running without a command shows the available groups."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for group in ("backup", "slot", "update", "env", "config"):
        assert group in result.stdout


def test_config_show_json(sandbox: Sandbox) -> None:
    """The resolved configuration is available as JSON."""
    result = sandbox.invoke("config", "show", "--json")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["tool_bin"] == str(sandbox.root / "obsidianctl")
    assert data["backups"]["directories"] == [str(sandbox.slot_a), str(sandbox.slot_b)]


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown configuration keys stop the CLI early."""
    config = tmp_path / "bad.yml"
    _write_config(config, surprise="yes")

    result = runner.invoke(app, ["--config-file", str(config), "config", "show"])

    assert result.exit_code == ExitCode.VALIDATION
    assert "Configuration error" in result.stdout


def test_slot_current(sandbox: Sandbox) -> None:
    """The current slot is probed without the wrapper."""
    result = sandbox.invoke("slot", "current")

    assert result.exit_code == 0
    assert result.stdout.strip() == "A"


def test_slot_health_streams_output_and_note(sandbox: Sandbox) -> None:
    """Report-style operations print the tool output and the trailing note."""
    result = sandbox.invoke("slot", "health")

    assert result.exit_code == 0
    assert "all checks passed" in result.stdout
    assert "Health check completed successfully." in result.stdout
    record = sandbox.operations()[-1]
    assert record["command"] == "slot health"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_failed_operation_reports_tool_output(sandbox: Sandbox) -> None:
    """A non-zero exit surfaces the tool's message and a provider exit code."""
    result = sandbox.invoke("slot", "sync", "b")

    assert result.exit_code == ExitCode.PROVIDER
    assert "sync failed: target busy" in result.stdout
    record = sandbox.operations()[-1]
    assert record["command"] == "slot sync"
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["errors"] == ["sync failed: target busy"]  # type: ignore[index]


def test_network_update_reports_progress(sandbox: Sandbox) -> None:
    """Update output is streamed and the final percentage reported."""
    result = sandbox.invoke("update", "network", "b", "--break-system")

    assert result.exit_code == 0
    assert "downloading 40%" in result.stdout
    assert "Progress: 100%" in result.stdout
    assert "Network update completed successfully!" in result.stdout


def test_update_file_rejects_missing_image(sandbox: Sandbox) -> None:
    """A missing image is a validation error."""
    result = sandbox.invoke("update", "file", "a", str(sandbox.root / "missing.img"))

    assert result.exit_code == ExitCode.VALIDATION
    assert "Please select a valid system image file." in result.stdout


def test_env_enter_passes_options(sandbox: Sandbox) -> None:
    """Environment options become ``enter-slot`` flags."""
    result = sandbox.invoke("env", "enter", "a", "--home")

    assert result.exit_code == 0
    assert "args: enter-slot a --mount-essentials --mount-home" in result.stdout
    assert "Environment session ended." in result.stdout


def test_backup_create_then_list(sandbox: Sandbox) -> None:
    """A new backup shows up in the listing."""
    created = sandbox.invoke("backup", "create", "a")
    listed = sandbox.invoke("backup", "list", "--json")

    assert created.exit_code == 0
    assert "Backup created successfully!" in created.stdout
    assert listed.exit_code == 0
    backups = json.loads(listed.stdout)["backups"]
    assert [entry["path"] for entry in backups] == [str(sandbox.slot_a / "fresh.sfs")]
    assert backups[0]["slot"] == "a"


def test_backup_list_table(sandbox: Sandbox) -> None:
    """The human listing shows slot and size columns."""
    _backup(sandbox.slot_b, "b1.sfs", age_days=1)

    result = sandbox.invoke("backup", "list")

    assert result.exit_code == 0
    assert "Backups" in result.stdout
    assert "6.0 B" in result.stdout


def test_backup_list_empty(sandbox: Sandbox) -> None:
    """An empty catalog is reported plainly."""
    result = sandbox.invoke("backup", "list")

    assert result.exit_code == 0
    assert "No backups found." in result.stdout


def test_backup_delete_removes_file(sandbox: Sandbox) -> None:
    """Deleting by index removes the file through the wrapper."""
    newest = _backup(sandbox.slot_a, "new.sfs", age_days=1)
    older = _backup(sandbox.slot_b, "old.sfs", age_days=2)

    result = sandbox.invoke("backup", "delete", "0")

    assert result.exit_code == 0
    assert "Backup deleted successfully!" in result.stdout
    assert not newest.exists()
    assert older.exists()


def test_backup_restore_invalid_index(sandbox: Sandbox) -> None:
    """Restoring a backup that does not exist is a validation error."""
    result = sandbox.invoke("backup", "restore", "3", "a")

    assert result.exit_code == ExitCode.VALIDATION
    assert "Invalid backup selection." in result.stdout


def test_backup_cleanup_prunes_old_backups(sandbox: Sandbox) -> None:
    """Cleanup deletes only backups past the retention window."""
    recent = _backup(sandbox.slot_a, "recent.sfs", age_days=1)
    stale = _backup(sandbox.slot_b, "stale.sfs", age_days=30)

    result = sandbox.invoke("backup", "cleanup", "--older-than", "7")

    assert result.exit_code == 0
    assert "Deleted 1 old backups." in result.stdout
    assert recent.exists()
    assert not stale.exists()
    record = sandbox.operations()[-1]
    assert record["result"]["changed"] == 1  # type: ignore[index]


def test_missing_wrapper_is_environment_error(sandbox: Sandbox) -> None:
    """A privilege helper that cannot be found maps to the environment exit code."""
    config = sandbox.config.read_text(encoding="utf-8").replace(
        f"wrapper_bin: {sandbox.root / 'wrapper'}",
        f"wrapper_bin: {sandbox.root / 'no-such-wrapper'}",
    )
    sandbox.config.write_text(config, encoding="utf-8")

    result = sandbox.invoke("slot", "switch", "b")

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "tool or privilege helper missing" in result.stdout
