"""Typer-powered command line for ``stonectl``."""
from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupsRegistry, TranlogParseError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .installation import Installation
from .logging import OperationScope, StructuredLogger
from .process import CommandError
from .stone import (
    InvalidStoneNameError,
    Stone,
    StoneExistsError,
    StoneNotFoundError,
    StoneRunningError,
    StoneSettings,
)
from .templates import TemplateEngine, TemplateError
from .topaz import TopazError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stonectl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit structured JSON instead of human-readable output.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        GemStone stone lifecycle manager.

        Creates, starts, stops, backs up, restores and destroys the stones
        configured on this host.
        """
    ).strip(),
)
netldi_app = typer.Typer(help="Start or stop the GemStone network listener.")
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(netldi_app, name="netldi")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    installation: Installation
    settings: StoneSettings
    backups: BackupsRegistry

    def existing(self, name: str) -> Stone:
        """Adopt the configured stone *name*."""
        return Stone.existing(
            name,
            self.installation,
            settings=self.settings,
            templates=self.templates,
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    installation = Installation.from_config(config)
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        installation=installation,
        settings=StoneSettings.from_config(config),
        backups=BackupsRegistry(installation.backup_directory),
    )
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
        help="Show the stonectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"stonectl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _failure(op: OperationScope, step: str, exc: Exception) -> NoReturn:
    """Map a lifecycle exception onto the matching exit code."""
    op.add_step(step, status="error", detail=str(exc))
    if isinstance(
        exc, (InvalidStoneNameError, StoneNotFoundError, StoneExistsError, StoneRunningError)
    ):
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    if isinstance(exc, (TemplateError, OSError)):
        _command_error(op, f"{step} failed: {exc}", rc=ExitCode.ENVIRONMENT)
    _command_error(op, f"{step} failed: {exc}", rc=ExitCode.PROVIDER)


LIFECYCLE_ERRORS = (
    InvalidStoneNameError,
    StoneNotFoundError,
    StoneExistsError,
    StoneRunningError,
    CommandError,
    TopazError,
    BackupError,
    TemplateError,
    OSError,
)


def _require_stone(runtime: RuntimeContext, name: str, op: OperationScope) -> Stone:
    try:
        return runtime.existing(name)
    except (InvalidStoneNameError, StoneNotFoundError) as exc:
        _failure(op, "stone.lookup", exc)


@app.command("list")
def stone_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the stones configured on this host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("list", args={"json": json_output}) as op:
        names = sorted(runtime.installation.stones())
        if json_output:
            console.print_json(data={"stones": names})
        elif not names:
            console.print(
                f"No stones configured in {runtime.installation.config_directory}."
            )
        else:
            table = Table("Stone", "Config")
            for name in names:
                table.add_row(name, str(runtime.installation.config_directory / f"{name}.conf"))
            console.print(table)
        op.success("Listed stones.", changed=0, context={"count": len(names)})


@app.command("status")
def stone_status(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Stone to query (omit for every server)."),
) -> None:
    """Report gslist status for one stone or for the whole host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"name": name},
        target={"kind": "stone", "name": name} if name else {"kind": "host"},
    ) as op:
        try:
            if name is None:
                output = runtime.installation.status()
                op.add_step("gslist", status="success")
            else:
                output = _require_stone(runtime, name, op).status()
                op.add_step("stone.status", status="success")
        except CommandError as exc:
            _failure(op, "gslist", exc)
        console.print(output.rstrip(), markup=False, highlight=False)
        op.success("Reported status.", changed=0)


@app.command("create")
def stone_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to create."),
) -> None:
    """Configure, start and bootstrap a new stone."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "create",
        args={"name": name},
        target={"kind": "stone", "name": name},
    ) as op:
        try:
            stone = Stone.create(
                name,
                runtime.installation,
                settings=runtime.settings,
                templates=runtime.templates,
            )
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "stone.create", exc)
        op.add_step("stone.create", status="success", detail=str(stone.system_config_filename))
        console.print(f"[green]Stone '{name}' created.[/green]")
        op.success("Stone created.", changed=1)


@app.command("start")
def stone_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to start."),
) -> None:
    """Start a stone (the start wait outcome is reported, not enforced)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"name": name},
        target={"kind": "stone", "name": name},
    ) as op:
        stone = _require_stone(runtime, name, op)
        try:
            stone.start()
            op.add_step("startstone", status="success")
            is_running = stone.running()
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "startstone", exc)
        if not is_running:
            console.print(f"[yellow]Stone '{name}' started but is not running yet.[/yellow]")
            op.warning("Stone not running after start.", changed=1)
            return
        console.print(f"[green]Stone '{name}' started.[/green]")
        op.success("Stone started.", changed=1)


@app.command("stop")
def stone_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to stop."),
) -> None:
    """Stop a stone."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "stone", "name": name},
    ) as op:
        stone = _require_stone(runtime, name, op)
        try:
            stone.stop()
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "stopstone", exc)
        op.add_step("stopstone", status="success")
        console.print(f"[yellow]Stone '{name}' stopped.[/yellow]")
        op.success("Stone stopped.", changed=1)


@app.command("restart")
def stone_restart(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to restart."),
) -> None:
    """Stop and start a stone."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"name": name},
        target={"kind": "stone", "name": name},
    ) as op:
        stone = _require_stone(runtime, name, op)
        try:
            stone.restart()
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "restart", exc)
        op.add_step("stopstone", status="success")
        op.add_step("startstone", status="success")
        console.print(f"[green]Stone '{name}' restarted.[/green]")
        op.success("Stone restarted.", changed=2)


@app.command("running")
def stone_running(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to probe."),
    wait: int = typer.Option(-1, "--wait", help="Seconds to wait for the stone (-1: no wait)."),
) -> None:
    """Exit 0 when the stone is running, 1 otherwise."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "running",
        args={"name": name, "wait": wait},
        target={"kind": "stone", "name": name},
    ) as op:
        stone = _require_stone(runtime, name, op)
        try:
            is_running = stone.running(wait)
        except CommandError as exc:
            _failure(op, "waitstone", exc)
        console.print(f"{name} {'running' if is_running else 'not running'}")
        op.success("Probed stone.", changed=0, context={"running": is_running})
    if not is_running:
        raise typer.Exit(code=ExitCode.NOT_RUNNING)


@app.command("destroy")
def stone_destroy(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to destroy."),
    yes: bool = typer.Option(False, "--yes", help="Confirm removal of every stone file."),
) -> None:
    """Remove a stopped stone's configuration, extents, logs and transaction logs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"name": name, "yes": yes},
        target={"kind": "stone", "name": name},
    ) as op:
        if not yes:
            _command_error(op, "Refusing to destroy without --yes.")
        stone = _require_stone(runtime, name, op)
        try:
            stone.destroy()
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "stone.destroy", exc)
        op.add_step("stone.destroy", status="success")
        console.print(f"[yellow]Stone '{name}' destroyed.[/yellow]")
        op.success("Stone destroyed.", changed=4)


@app.command("backup")
def stone_backup(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to back up."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Take an online backup bundled with the current transaction log."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup",
        args={"name": name, "json": json_output},
        target={"kind": "stone", "name": name},
    ) as op:
        stone = _require_stone(runtime, name, op)
        try:
            result = stone.backup(runtime.backups)
        except TranlogParseError as exc:
            op.add_step("tranlog.parse", status="error", detail=str(exc))
            _command_error(op, f"Backup aborted: {exc}", rc=ExitCode.PROVIDER)
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "backup", exc)
        op.add_step("tranlog.parse", status="success", detail=str(result.tranlog_number))
        op.add_step("archive.bundle", status="success", detail=str(result.paths.bundle))
        payload = {
            "instance": name,
            "bundle": str(result.paths.bundle),
            "extent_backup": str(result.paths.extent_backup),
            "tranlog": result.tranlog_number,
            "checksum": result.checksum,
            "size_bytes": result.size_bytes,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"[green]Backup written to {result.paths.bundle}[/green]")
        op.success(
            "Backup created.",
            changed=2,
            backups=[str(result.paths.bundle)],
            context=payload,
        )


@app.command("restore")
def stone_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the stone to restore."),
    on: str | None = typer.Option(
        None,
        "--date",
        help="Date of the backup bundle to restore (YYYY-MM-DD, default today).",
    ),
) -> None:
    """Restore a stone from a dated backup bundle."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"name": name, "date": on},
        target={"kind": "stone", "name": name},
    ) as op:
        day: date | None = None
        if on is not None:
            try:
                day = date.fromisoformat(on)
            except ValueError:
                _command_error(op, f"Invalid --date value '{on}'; expected YYYY-MM-DD.")
        stone = _require_stone(runtime, name, op)
        bundle = stone.backup_paths(day).bundle
        if not bundle.exists():
            _command_error(op, f"Backup bundle {bundle} not found.")
        try:
            stone.restore(day)
        except LIFECYCLE_ERRORS as exc:
            _failure(op, "restore", exc)
        op.add_step("restore", status="success", detail=str(bundle))
        console.print(
            f"[green]Stone '{name}' restored from {bundle}.[/green] "
            "Start it and confirm it is running before use."
        )
        op.success("Stone restored.", changed=1, backups=[str(bundle)])


@app.command("backups")
def backup_list(
    ctx: typer.Context,
    instance: str | None = typer.Option(None, "--instance", help="Only list this stone."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups",
        args={"instance": instance, "json": json_output},
    ) as op:
        try:
            entries = (
                runtime.backups.entries_for_instance(instance)
                if instance
                else runtime.backups.list_entries()
            )
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if json_output:
            console.print_json(data={"backups": entries})
        else:
            table = Table("Stone", "Date", "Tranlog", "Bundle")
            for entry in entries:
                table.add_row(
                    str(entry.get("instance", "")),
                    str(entry.get("date", "")),
                    str(entry.get("tranlog", "")),
                    str(entry.get("bundle", "")),
                )
            console.print(table)
        op.success("Listed backups.", changed=0, context={"count": len(entries)})


@netldi_app.command("start")
def netldi_start(ctx: typer.Context) -> None:
    """Start the network listener in guest mode."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("netldi start", target={"kind": "host"}) as op:
        try:
            runtime.installation.start_netldi()
        except CommandError as exc:
            _failure(op, "startnetldi", exc)
        op.add_step("startnetldi", status="success")
        console.print("[green]NetLDI started.[/green]")
        op.success("NetLDI started.", changed=1)


@netldi_app.command("stop")
def netldi_stop(ctx: typer.Context) -> None:
    """Stop the network listener."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("netldi stop", target={"kind": "host"}) as op:
        try:
            runtime.installation.stop_netldi()
        except CommandError as exc:
            _failure(op, "stopnetldi", exc)
        op.add_step("stopnetldi", status="success")
        console.print("[yellow]NetLDI stopped.[/yellow]")
        op.success("NetLDI stopped.", changed=1)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", args={"json": json_output}) as op:
        data = runtime.config.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            table = Table("Key", "Value")
            for key, value in data.items():
                table.add_row(key, str(value))
            console.print(table)
        op.success("Displayed configuration.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
