"""Typer-powered command line front end for ``slotpanel``.

Each command builds (or reuses) a :class:`RuntimeContext`, runs one
operation through the supervisor, streams the tool's output to the terminal
as it arrives and exits with a code derived from the outcome.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .catalog import BackupCatalog, CatalogError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode, exit_code_for
from .logging import OperationScope, StructuredLogger
from .providers import BackupsProvider, EnvironmentProvider, SlotsProvider, UpdatesProvider
from .runner import CommandRunner
from .supervisor import OperationSupervisor

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to slotpanel's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        A/B slot administration front end.

        Wraps the privileged slot tool to manage backups, switch and sync
        slots, apply system updates and enter slot environments.
        """
    ).strip(),
)
backup_app = typer.Typer(help="List, create, restore and prune slot backups.")
slot_app = typer.Typer(help="Switch, synchronise and inspect slots.")
update_app = typer.Typer(help="Apply system updates to a slot.")
env_app = typer.Typer(help="Enter or verify a slot environment.")
config_app = typer.Typer(help="Inspect the resolved configuration.")

app.add_typer(backup_app, name="backup")
app.add_typer(slot_app, name="slot")
app.add_typer(update_app, name="update")
app.add_typer(env_app, name="env")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: CommandRunner
    supervisor: OperationSupervisor
    catalog: BackupCatalog
    backups: BackupsProvider
    slots: SlotsProvider
    updates: UpdatesProvider
    environment: EnvironmentProvider


@dataclass
class _Notifications:
    """What the supervisor reported while one command ran."""

    successes: list[tuple[str, str]] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)
    progress: list[int] = field(default_factory=list)
    printed: int = 0


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire the runner, supervisor, catalog and providers for *config*."""
    runner = CommandRunner(
        tool_bin=config.tool_bin,
        wrapper_bin=config.wrapper_bin,
        cancel_grace=config.timeouts.cancel_grace,
    )
    supervisor = OperationSupervisor(runner, cancel_grace=config.timeouts.cancel_grace)
    catalog = BackupCatalog(
        config.backups.directories,
        extension=config.backups.extension,
        sidecar_extension=config.backups.sidecar_extension,
        slot_prefix_length=config.backups.slot_prefix_length,
    )
    return RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        runner=runner,
        supervisor=supervisor,
        catalog=catalog,
        backups=BackupsProvider(
            supervisor, catalog, prune_timeout=config.backups.prune_timeout
        ),
        slots=SlotsProvider(supervisor, probe_timeout=config.timeouts.probe),
        updates=UpdatesProvider(supervisor),
        environment=EnvironmentProvider(supervisor),
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the slotpanel version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    if version:
        console.print(f"slotpanel {get_version()}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=[message], rc=rc)
    raise typer.Exit(code=rc)


def _run_supervised(
    runtime: RuntimeContext,
    op: OperationScope,
    start: Callable[[], bool],
) -> None:
    """Start an operation, stream its output and exit with its outcome."""
    supervisor = runtime.supervisor
    seen = _Notifications()

    def _print_delta(text: str) -> None:
        if len(text) < seen.printed:
            seen.printed = 0
        delta = text[seen.printed :]
        seen.printed = len(text)
        if delta:
            console.print(delta, end="", markup=False, highlight=False, soft_wrap=True)

    unsubscribe = [
        supervisor.output.subscribe(_print_delta),
        supervisor.succeeded.connect(lambda title, message: seen.successes.append((title, message))),
        supervisor.failed.connect(lambda title, message: seen.errors.append((title, message))),
        supervisor.progress.connect(seen.progress.append),
    ]
    try:
        accepted = start()
        if accepted:
            try:
                supervisor.wait()
            except KeyboardInterrupt:
                supervisor.close()
                op.add_step("operation.cancel", status="info", detail="interrupted")
    finally:
        for callback in unsubscribe:
            callback()

    if seen.printed and not supervisor.output_text.endswith("\n"):
        console.print()
    if seen.progress:
        console.print(f"[cyan]Progress: {seen.progress[-1]}%[/cyan]")
        op.add_step("operation.progress", status="info", detail=seen.progress[-1])

    if not accepted:
        if seen.errors:
            _command_error(op, seen.errors[-1][1])
        _command_error(op, "Another operation is already running.", rc=int(ExitCode.BUSY))

    outcome = supervisor.last_outcome
    code = exit_code_for(outcome) if outcome is not None else ExitCode.PROVIDER
    if seen.errors:
        title, message = seen.errors[-1]
        console.print(f"[red]{title}: {message}[/red]")
        op.error(message, errors=[item[1] for item in seen.errors], rc=int(code))
        raise typer.Exit(code=int(code) or int(ExitCode.PROVIDER))

    for title, message in seen.successes:
        console.print(f"[green]{title}:[/green] {message}")
    op.success(
        seen.successes[-1][1] if seen.successes else "Operation completed.",
        changed=1,
    )


# ----------------------------------------------------------------------
# backup
# ----------------------------------------------------------------------
@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backups found in the configured backup directories."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "catalog"},
    ) as op:
        records = runtime.backups.refresh()
        if json_output:
            console.print_json(data={"backups": [record.to_dict() for record in records]})
            op.success("Reported backups (JSON).", changed=0)
            return
        if not records:
            console.print("No backups found.")
            op.success("No backups found.", changed=0)
            return
        table = Table(title="Backups")
        table.add_column("#", justify="right")
        table.add_column("Slot")
        table.add_column("Created")
        table.add_column("Size", justify="right")
        table.add_column("Full")
        table.add_column("Path")
        for index, record in enumerate(records):
            table.add_row(
                str(index),
                record.slot.upper(),
                record.timestamp_label,
                record.size_label,
                "yes" if record.is_full_backup else "no",
                record.path,
            )
        console.print(table)
        op.success("Reported backups.", changed=0, context={"count": len(records)})


@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    slot: str = typer.Argument(..., help="Slot to back up (a or b)."),
    backup_dir: str | None = typer.Option(
        None, "--backup-dir", help="Write the backup into this directory."
    ),
    full_backup: bool = typer.Option(
        False, "--full-backup", help="Capture the full slot instead of an incremental backup."
    ),
) -> None:
    """Create a backup of SLOT."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"slot": slot, "backup_dir": backup_dir, "full_backup": full_backup},
        target={"kind": "backup", "slot": slot},
    ) as op:
        _run_supervised(
            runtime,
            op,
            lambda: runtime.backups.create(slot, backup_dir, full_backup),
        )


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    index: int = typer.Argument(..., help="Backup number as shown by `backup list`."),
    target_slot: str = typer.Argument(..., help="Slot to restore into."),
) -> None:
    """Restore backup INDEX into TARGET_SLOT."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"index": index, "target_slot": target_slot},
        target={"kind": "backup", "slot": target_slot},
    ) as op:
        runtime.backups.refresh()
        _run_supervised(runtime, op, lambda: runtime.backups.restore(index, target_slot))


@backup_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    index: int = typer.Argument(..., help="Backup number as shown by `backup list`."),
) -> None:
    """Delete backup INDEX."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup delete",
        args={"index": index},
        target={"kind": "backup", "index": index},
    ) as op:
        runtime.backups.refresh()
        record = runtime.catalog.record_at(index)
        if record is not None:
            op.add_step("backup.delete.target", status="info", detail=record.path)
        _run_supervised(runtime, op, lambda: runtime.backups.delete(index))


@backup_app.command("cleanup")
def backup_cleanup(
    ctx: typer.Context,
    older_than: int = typer.Option(
        ..., "--older-than", min=0, help="Delete backups older than this many days."
    ),
) -> None:
    """Delete every backup older than the given number of days."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup cleanup",
        args={"older_than": older_than},
        target={"kind": "backup", "scope": "retention"},
    ) as op:
        runtime.backups.refresh()
        before = len(runtime.catalog)
        try:
            removed = runtime.backups.cleanup(older_than)
        except CatalogError as exc:
            _command_error(op, str(exc))
        console.print(f"[green]Cleanup Complete:[/green] Deleted {removed} old backups.")
        op.success(
            f"Deleted {removed} old backups.",
            changed=removed,
            context={"before": before, "after": len(runtime.catalog)},
        )


# ----------------------------------------------------------------------
# slot
# ----------------------------------------------------------------------
@slot_app.command("current")
def slot_current(ctx: typer.Context) -> None:
    """Show the currently active slot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "slot current",
        target={"kind": "slot", "scope": "current"},
    ) as op:
        slot = runtime.slots.refresh_current_slot()
        if slot is None:
            _command_error(
                op,
                "Unable to determine the current slot.",
                rc=int(ExitCode.ENVIRONMENT),
            )
        console.print(slot.upper() if slot else "unknown")
        op.success("Reported current slot.", changed=0, context={"slot": slot})


def _slot_command(
    ctx: typer.Context,
    name: str,
    slot: str | None,
    start: Callable[[RuntimeContext], bool],
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        name,
        args={"slot": slot},
        target={"kind": "slot", "slot": slot},
    ) as op:
        _run_supervised(runtime, op, lambda: start(runtime))


@slot_app.command("switch")
def slot_switch(ctx: typer.Context, slot: str = typer.Argument(..., help="Slot to boot.")) -> None:
    """Make SLOT the default boot slot."""
    _slot_command(ctx, "slot switch", slot, lambda runtime: runtime.slots.switch(slot))


@slot_app.command("switch-once")
def slot_switch_once(
    ctx: typer.Context,
    slot: str = typer.Argument(..., help="Slot to boot once."),
) -> None:
    """Boot SLOT on the next boot only."""
    _slot_command(ctx, "slot switch-once", slot, lambda runtime: runtime.slots.switch_once(slot))


@slot_app.command("sync")
def slot_sync(
    ctx: typer.Context,
    target_slot: str = typer.Argument(..., help="Slot to overwrite from the active one."),
) -> None:
    """Synchronise TARGET_SLOT from the active slot."""
    _slot_command(ctx, "slot sync", target_slot, lambda runtime: runtime.slots.sync(target_slot))


@slot_app.command("diff")
def slot_diff(ctx: typer.Context) -> None:
    """Compare the two slots."""
    _slot_command(ctx, "slot diff", None, lambda runtime: runtime.slots.slot_diff())


@slot_app.command("health")
def slot_health(ctx: typer.Context) -> None:
    """Run the slot health check."""
    _slot_command(ctx, "slot health", None, lambda runtime: runtime.slots.health_check())


# ----------------------------------------------------------------------
# update
# ----------------------------------------------------------------------
@update_app.command("file")
def update_file(
    ctx: typer.Context,
    slot: str = typer.Argument(..., help="Slot to update."),
    image: Path = typer.Argument(..., help="System image to write into the slot."),
) -> None:
    """Update SLOT from a local system IMAGE."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update file",
        args={"slot": slot, "image": image},
        target={"kind": "update", "slot": slot},
    ) as op:
        _run_supervised(
            runtime, op, lambda: runtime.updates.update_from_file(slot, str(image))
        )


@update_app.command("network")
def update_network(
    ctx: typer.Context,
    slot: str = typer.Argument(..., help="Slot to update."),
    break_system: bool = typer.Option(
        False, "--break-system", help="Allow updates that the tool flags as breaking."
    ),
) -> None:
    """Download and apply the latest system image to SLOT."""
    runtime = _get_runtime(ctx)
    runtime.updates.break_system.set(break_system)
    with runtime.logger.operation(
        "update network",
        args={"slot": slot, "break_system": break_system},
        target={"kind": "update", "slot": slot},
    ) as op:
        _run_supervised(runtime, op, lambda: runtime.updates.network_update(slot))


# ----------------------------------------------------------------------
# env
# ----------------------------------------------------------------------
@env_app.command("enter")
def env_enter(
    ctx: typer.Context,
    slot: str = typer.Argument(..., help="Slot to enter."),
    networking: bool = typer.Option(
        False, "--networking/--no-networking", help="Enable networking inside the slot."
    ),
    essentials: bool = typer.Option(
        True, "--essentials/--no-essentials", help="Mount /dev, /proc and /sys."
    ),
    home: bool = typer.Option(False, "--home/--no-home", help="Bind-mount /home."),
    root: bool = typer.Option(False, "--root/--no-root", help="Bind-mount /root."),
) -> None:
    """Open a privileged session inside SLOT in this terminal."""
    runtime = _get_runtime(ctx)
    environment = runtime.environment
    environment.enable_networking.set(networking)
    environment.mount_essentials.set(essentials)
    environment.mount_home.set(home)
    environment.mount_root.set(root)
    with runtime.logger.operation(
        "env enter",
        args={
            "slot": slot,
            "networking": networking,
            "essentials": essentials,
            "home": home,
            "root": root,
        },
        target={"kind": "environment", "slot": slot},
    ) as op:
        _run_supervised(runtime, op, lambda: environment.enter(slot))


@env_app.command("verify")
def env_verify(ctx: typer.Context, slot: str = typer.Argument(..., help="Slot to verify.")) -> None:
    """Verify the integrity of SLOT."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env verify",
        args={"slot": slot},
        target={"kind": "environment", "slot": slot},
    ) as op:
        _run_supervised(runtime, op, lambda: runtime.environment.verify_integrity(slot))


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the resolved configuration."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    if json_output:
        console.print_json(data=data)
        return
    table = Table(show_header=False)
    for key, value in data.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(f"{key}.{sub_key}", str(sub_value))
        else:
            table.add_row(key, str(value))
    console.print(table)


def main() -> None:  # pragma: no cover - console script entry point
    """Run the Typer application."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
