"""Typer-powered command line for ``conduitctl``.

Every command loads the application config once, builds a shared
:class:`RuntimeContext`, and records its outcome through the structured
operations log. Engine failures are classified (see :mod:`conduitctl.errors`):
recoverable ones print a warning and exit 0, the rest exit 1.
"""
from __future__ import annotations

import shutil
import sys
import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .controller import WorkloadController, WorkloadState
from .dashboard import (
    CancellationToken,
    DashboardSession,
    ExitReason,
    FollowSession,
    KeySource,
    TerminalMode,
    collect_snapshot,
    noise_filter,
    render_status,
    signal_handlers,
    telemetry_filter,
)
from .errors import (
    ConduitError,
    EngineOperationFailed,
    EngineUnavailable,
    NotFound,
    PersistenceFailure,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import (
    AutostartStatus,
    DockerEngine,
    ServiceError,
    ServiceManager,
    UnitSpec,
)
from .settings import (
    SettingsRecord,
    SettingsStore,
    detect_ram_gb,
    format_bandwidth,
    format_memory,
    merge_settings,
    recommended_max_clients,
)
from .stats import filter_noise
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to conduitctl's YAML config file.",
)

MAX_CLIENTS_OPTION = typer.Option(
    None,
    "--max-clients",
    help="Maximum concurrent proxy clients (1-1000).",
)

BANDWIDTH_OPTION = typer.Option(
    None,
    "--bandwidth",
    help="Bandwidth per peer in Mbps (1-40), or -1 for unlimited.",
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Skip the interactive confirmation.",
)

MENU_OPTIONS = (
    ("1", "View status dashboard"),
    ("2", "Live connection stats"),
    ("3", "View logs"),
    ("4", "Change settings"),
    ("5", "Start Conduit"),
    ("6", "Stop Conduit"),
    ("7", "Restart Conduit"),
    ("u", "Uninstall"),
    ("0", "Exit"),
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Psiphon Conduit manager.

        Installs, configures and supervises the Conduit proxy container and
        shows its live telemetry. Run without a command to open the menu.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect conduitctl's own configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    engine: DockerEngine
    store: SettingsStore
    services: ServiceManager
    controller: WorkloadController


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    engine = DockerEngine(
        docker_bin=config.engine.docker_bin,
        docker_host=config.engine.docker_host,
        command_timeout=config.engine.command_timeout,
        pull_timeout=config.engine.pull_timeout,
    )
    store = SettingsStore(config.settings_file)
    unit = UnitSpec(
        container_name=config.workload.container_name,
        docker_bin=config.engine.docker_bin,
        docker_path=shutil.which(config.engine.docker_bin) or "/usr/bin/docker",
    )
    services = ServiceManager(config.service, templates, unit)
    controller = WorkloadController(engine, store, config.workload)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        engine=engine,
        store=store,
        services=services,
        controller=controller,
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
        help="Show the conduitctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"conduitctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        _run_menu(ctx)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _engine_error(op: OperationScope, exc: ConduitError) -> NoReturn:
    """Report a fatal engine/persistence failure with its guidance."""
    if isinstance(exc, EngineUnavailable):
        console.print(f"[red]{exc}[/red]")
        for line in exc.remediation:
            console.print(line, markup=False, highlight=False)
        op.error(str(exc), errors=[str(exc)], rc=int(ExitCode.FAILURE))
        raise typer.Exit(code=ExitCode.FAILURE)
    if isinstance(exc, EngineOperationFailed):
        message = exc.args[0] if exc.args else str(exc)
        console.print(f"[red]{message}[/red]")
        for line in exc.output:
            console.print(f"  {line}", style="dim", markup=False, highlight=False)
        op.error(message, errors=[message, *exc.output], rc=int(ExitCode.FAILURE))
        raise typer.Exit(code=ExitCode.FAILURE)
    _command_error(op, str(exc))


def _not_found(op: OperationScope, exc: NotFound) -> None:
    console.print(f"[yellow]{exc}[/yellow]")
    op.warning(str(exc), warnings=[str(exc)], changed=0)


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)


def _finish(
    op: OperationScope,
    message: str,
    *,
    warnings: Sequence[str] = (),
    changed: int = 0,
) -> None:
    """Record success, or a warning result when *warnings* were collected."""
    if warnings:
        op.warning(message, warnings=list(warnings), changed=changed)
    else:
        op.success(message, changed=changed)


def _load_settings(runtime: RuntimeContext, op: OperationScope) -> SettingsRecord:
    loaded = runtime.store.read()
    _print_warnings(loaded.warnings)
    op.add_step(
        "settings.load",
        status="warning" if loaded.warnings else "success",
        detail=str(runtime.store.path) if loaded.exists else "defaults",
    )
    return loaded.record


def _require_engine(runtime: RuntimeContext, op: OperationScope) -> None:
    try:
        runtime.engine.info()
    except EngineUnavailable as exc:
        _engine_error(op, exc)
    op.add_step("docker.info", status="success")


def _describe_autostart(runtime: RuntimeContext) -> AutostartStatus | None:
    try:
        return runtime.services.describe()
    except ServiceError:
        return None


def _ensure_autostart(runtime: RuntimeContext, op: OperationScope) -> list[str]:
    """Register auto-start; problems are printed and returned as warnings."""
    try:
        result = runtime.services.install()
    except ServiceError as exc:
        op.add_step("service.install", status="warning", detail=str(exc))
        warnings = [f"Auto-start registration failed: {exc}"]
        _print_warnings(warnings)
        return warnings
    if not result.managed:
        step_status = "skipped"
    elif not result.registered:
        step_status = "warning"
    else:
        step_status = "success"
    op.add_step("service.install", status=step_status, detail=result.detail or None)
    if not result.managed:
        _print_warnings([result.detail])
        return [result.detail]
    if not result.registered:
        warnings = [f"Auto-start not registered with {result.kind.label}: {result.detail}"]
        _print_warnings(warnings)
        return warnings
    if result.changed:
        console.print(f"[green]Auto-start enabled via {result.kind.label}.[/green]")
    return []


def _print_settings(record: SettingsRecord) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_row("Max clients", str(record.max_clients))
    table.add_row("Bandwidth", record.bandwidth_label())
    if record.cpu_limit is not None:
        table.add_row("CPU limit", f"{record.cpu_limit:g} cores")
    if record.memory_limit is not None:
        table.add_row("Memory limit", format_memory(record.memory_limit))
    console.print(table)


def _interactive() -> bool:
    return sys.stdin.isatty()


def _follow(
    runtime: RuntimeContext,
    *,
    tail: int,
    line_filter: Callable[[str], str | None],
) -> ExitReason:
    with CancellationToken() as token, signal_handlers(token):
        session = FollowSession(
            runtime.controller,
            console,
            token,
            tail=tail,
            line_filter=line_filter,
        )
        return session.run()


def _run_dashboard(
    runtime: RuntimeContext,
    settings: SettingsRecord,
    interval: float | None,
) -> ExitReason:
    terminal = TerminalMode(console, sys.stdin)
    keys = KeySource(sys.stdin) if terminal.interactive else None
    with CancellationToken() as token, signal_handlers(token):
        session = DashboardSession(
            runtime.controller,
            settings,
            terminal=terminal,
            token=token,
            keys=keys,
            refresh_interval=interval or runtime.config.dashboard.refresh_interval,
            log_tail=runtime.config.dashboard.log_tail,
            autostart=_describe_autostart(runtime),
        )
        return session.run()


# ----------------------------------------------------------------------
# Observation commands
# ----------------------------------------------------------------------
@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the status report as JSON.",
    ),
) -> None:
    """Show a one-shot status report."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        settings = _load_settings(runtime, op)
        _require_engine(runtime, op)
        try:
            snapshot = collect_snapshot(runtime.controller, runtime.config.dashboard.log_tail)
        except ConduitError as exc:
            _engine_error(op, exc)
        autostart = _describe_autostart(runtime)

        if json_output:
            console.print_json(
                data={
                    "state": snapshot.state.value,
                    "telemetry": snapshot.telemetry.to_dict(),
                    "resources": snapshot.usage.to_dict(),
                    "settings": settings.to_dict(),
                    "autostart": {
                        "kind": autostart.kind.value,
                        "enabled": autostart.enabled,
                        "detail": autostart.detail,
                    }
                    if autostart is not None
                    else None,
                }
            )
        else:
            console.print(render_status(snapshot, settings, autostart=autostart))
        op.success("Reported workload status.", context={"state": snapshot.state.value})


@app.command()
def dashboard(
    ctx: typer.Context,
    interval: float | None = typer.Option(
        None,
        "--interval",
        min=1.0,
        help="Seconds between refreshes (defaults to dashboard.refresh_interval).",
    ),
) -> None:
    """Open the live status dashboard."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "dashboard",
        args={"interval": interval},
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        settings = _load_settings(runtime, op)
        _require_engine(runtime, op)
        try:
            reason = _run_dashboard(runtime, settings, interval)
        except ConduitError as exc:
            _engine_error(op, exc)
        op.success("Dashboard closed.", context={"reason": reason.value})


@app.command()
def stats(ctx: typer.Context) -> None:
    """Stream live telemetry lines until interrupted."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stats",
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        _require_engine(runtime, op)
        try:
            state = runtime.controller.status()
            if state is not WorkloadState.RUNNING:
                message = "Conduit is not running. Start it with 'conduitctl start'."
                console.print(f"[yellow]{message}[/yellow]")
                op.warning(message, warnings=[message])
                return
            console.print("Streaming live stats. Press Ctrl+C to stop.", style="cyan")
            reason = _follow(
                runtime,
                tail=runtime.config.dashboard.stats_tail,
                line_filter=telemetry_filter,
            )
        except ConduitError as exc:
            _engine_error(op, exc)
        op.success("Stats stream ended.", context={"reason": reason.value})


@app.command()
def logs(
    ctx: typer.Context,
    lines: int | None = typer.Option(
        None,
        "--lines",
        "-n",
        min=1,
        help="Number of log lines to show (defaults to dashboard.logs_tail).",
    ),
    follow: bool = typer.Option(
        False,
        "--follow",
        "-f",
        help="Keep streaming new log lines until interrupted.",
    ),
) -> None:
    """Show the workload's recent log output."""
    runtime = _get_runtime(ctx)
    tail = lines or runtime.config.dashboard.logs_tail
    with runtime.logger.operation(
        "logs",
        args={"lines": tail, "follow": follow},
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        _require_engine(runtime, op)
        try:
            state = runtime.controller.status()
        except ConduitError as exc:
            _engine_error(op, exc)
        if state in {WorkloadState.ABSENT, WorkloadState.REMOVED}:
            _not_found(op, NotFound("Conduit container not found."))
            return
        try:
            if follow:
                reason = _follow(runtime, tail=tail, line_filter=noise_filter)
                op.success("Log stream ended.", context={"reason": reason.value})
                return
            output = filter_noise(runtime.controller.log_tail(tail))
        except NotFound as exc:
            _not_found(op, exc)
            return
        except ConduitError as exc:
            _engine_error(op, exc)
        if not output:
            console.print("[yellow]No log output available.[/yellow]")
        for line in output:
            console.print(line, markup=False, highlight=False)
        op.success("Displayed log output.", context={"lines": len(output)})


# ----------------------------------------------------------------------
# Lifecycle commands
# ----------------------------------------------------------------------
@app.command()
def start(ctx: typer.Context) -> None:
    """Start Conduit, creating the container when it does not exist."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        settings = _load_settings(runtime, op)
        _require_engine(runtime, op)
        try:
            result = runtime.controller.ensure_running(settings)
        except NotFound as exc:
            _not_found(op, exc)
            return
        except ConduitError as exc:
            _engine_error(op, exc)
        if not result.changed:
            console.print("[green]Conduit is already running.[/green]")
            op.success("Workload already running.", changed=0)
            return
        op.add_step("workload.start", detail=f"running after {result.attempts} check(s)")
        console.print("[green]Conduit started.[/green]")
        op.success("Workload started.", changed=1)


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop Conduit if it is running."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        _require_engine(runtime, op)
        try:
            result = runtime.controller.stop()
        except ConduitError as exc:
            _engine_error(op, exc)
        if not result.changed:
            console.print("Conduit is not running.")
            op.success("Workload already stopped.", changed=0)
            return
        op.add_step("workload.stop")
        console.print("[yellow]Conduit stopped.[/yellow]")
        op.success("Workload stopped.", changed=1)


@app.command()
def restart(ctx: typer.Context) -> None:
    """Restart the existing Conduit container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        _require_engine(runtime, op)
        try:
            result = runtime.controller.restart()
        except NotFound as exc:
            _not_found(op, exc)
            return
        except ConduitError as exc:
            _engine_error(op, exc)
        op.add_step("workload.restart", detail=f"running after {result.attempts} check(s)")
        console.print("[green]Conduit restarted.[/green]")
        op.success("Workload restarted.", changed=1)


@app.command("settings")
def settings_command(
    ctx: typer.Context,
    max_clients: str | None = MAX_CLIENTS_OPTION,
    bandwidth: str | None = BANDWIDTH_OPTION,
    cpus: str | None = typer.Option(
        None,
        "--cpus",
        help="CPU core limit for the container (0 or 'none' clears it).",
    ),
    memory: str | None = typer.Option(
        None,
        "--memory",
        help="Memory limit such as 512m or 1g (0 or 'none' clears it).",
    ),
) -> None:
    """Change settings and recreate the container with them."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "settings",
        args={"max_clients": max_clients, "bandwidth": bandwidth, "cpus": cpus, "memory": memory},
        target={"kind": "settings", "path": str(runtime.store.path)},
    ) as op:
        current = _load_settings(runtime, op)
        console.print("Current settings:", style="bold")
        _print_settings(current)

        no_options = all(value is None for value in (max_clients, bandwidth, cpus, memory))
        if no_options and _interactive():
            max_clients = typer.prompt("Max clients (1-1000)", default=str(current.max_clients))
            bandwidth = typer.prompt(
                "Bandwidth per peer in Mbps (1-40, -1 for unlimited)",
                default=format_bandwidth(current.bandwidth_mbps),
            )

        update = merge_settings(
            current,
            max_clients=max_clients,
            bandwidth=bandwidth,
            cpu_limit=cpus,
            memory_limit=memory,
        )
        _print_warnings(update.warnings)
        if not update.changed:
            console.print("Settings unchanged.")
            _finish(op, "Settings unchanged.", warnings=update.warnings)
            return

        _require_engine(runtime, op)
        try:
            result = runtime.controller.apply_settings(update.record)
        except NotFound as exc:
            _not_found(op, exc)
            return
        except PersistenceFailure as exc:
            _command_error(op, str(exc))
        except ConduitError as exc:
            _engine_error(op, exc)
        op.add_step("settings.save", detail=str(runtime.store.path))
        op.add_step("workload.recreate", detail=f"running after {result.attempts} check(s)")
        _print_warnings(result.warnings)
        warnings = [*update.warnings, *result.warnings, *_ensure_autostart(runtime, op)]

        console.print("[green]Settings updated and Conduit restarted.[/green]")
        _print_settings(update.record)
        _finish(op, "Settings applied.", warnings=warnings, changed=1)


@app.command()
def install(
    ctx: typer.Context,
    max_clients: str | None = MAX_CLIENTS_OPTION,
    bandwidth: str | None = BANDWIDTH_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Set up Conduit: choose settings, start the container, enable auto-start."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={"max_clients": max_clients, "bandwidth": bandwidth, "yes": yes},
        target={"kind": "workload", "name": runtime.config.workload.container_name},
    ) as op:
        loaded = runtime.store.read()
        _print_warnings(loaded.warnings)
        ram_gb = detect_ram_gb()
        base = loaded.record
        if not loaded.exists:
            base = SettingsRecord(max_clients=recommended_max_clients(ram_gb))
        op.add_step("host.ram", detail=f"{ram_gb} GB")

        interactive = not yes and _interactive()
        if interactive:
            console.print(f"Detected {ram_gb} GB of RAM.")
            if max_clients is None:
                max_clients = typer.prompt("Max clients (1-1000)", default=str(base.max_clients))
            if bandwidth is None:
                bandwidth = typer.prompt(
                    "Bandwidth per peer in Mbps (1-40, -1 for unlimited)",
                    default=format_bandwidth(base.bandwidth_mbps),
                )

        update = merge_settings(base, max_clients=max_clients, bandwidth=bandwidth)
        _print_warnings(update.warnings)
        console.print("Conduit will be installed with:", style="bold")
        _print_settings(update.record)
        if interactive and not typer.confirm("Proceed?", default=True):
            console.print("Install cancelled.")
            op.success("Install cancelled by operator.", changed=0)
            return

        _require_engine(runtime, op)
        try:
            result = runtime.controller.apply_settings(update.record)
        except NotFound as exc:
            _not_found(op, exc)
            return
        except PersistenceFailure as exc:
            _command_error(op, str(exc))
        except ConduitError as exc:
            _engine_error(op, exc)
        op.add_step("settings.save", detail=str(runtime.store.path))
        op.add_step("workload.create", detail=f"running after {result.attempts} check(s)")
        _print_warnings(result.warnings)
        warnings = [*update.warnings, *result.warnings, *_ensure_autostart(runtime, op)]

        console.print("[green]Conduit is running.[/green]")
        console.print("Use 'conduitctl dashboard' for live status or 'conduitctl' for the menu.")
        _finish(op, "Conduit installed.", warnings=warnings, changed=1)


@app.command()
def uninstall(ctx: typer.Context, yes: bool = YES_OPTION) -> None:
    """Remove the container, image, data volume and auto-start registration."""
    runtime = _get_runtime(ctx)
    workload = runtime.config.workload
    with runtime.logger.operation(
        "uninstall",
        args={"yes": yes},
        target={"kind": "workload", "name": workload.container_name},
    ) as op:
        console.print("[bold red]This will completely remove Conduit:[/bold red]")
        console.print(f"  - container '{workload.container_name}'", highlight=False)
        console.print(f"  - image {workload.image}", highlight=False)
        console.print(f"  - volume '{workload.volume}' (node identity and data)", highlight=False)
        console.print("  - auto-start service registration")
        console.print(f"  - settings in {runtime.store.path.parent}", highlight=False)
        if not yes:
            answer = typer.prompt("Type 'yes' to confirm", default="", show_default=False)
            if answer.strip() != "yes":
                console.print("Uninstall cancelled.")
                op.success("Uninstall cancelled by operator.", changed=0)
                return

        _require_engine(runtime, op)
        try:
            result = runtime.controller.uninstall()
        except NotFound as exc:
            _not_found(op, exc)
            return
        except ConduitError as exc:
            _engine_error(op, exc)
        op.add_step("workload.remove", detail=f"changed={result.changed}")
        warnings = list(result.warnings)

        try:
            service = runtime.services.remove()
            op.add_step("service.remove", detail=f"{service.kind.value} changed={service.changed}")
        except ServiceError as exc:
            op.add_step("service.remove", status="warning", detail=str(exc))
            warnings.append(f"Auto-start removal failed: {exc}")

        runtime.store.purge()
        op.add_step("settings.purge", detail=str(runtime.store.path))

        _print_warnings(warnings)
        console.print("[green]Conduit has been uninstalled.[/green]")
        _finish(op, "Conduit uninstalled.", warnings=warnings, changed=1)


# ----------------------------------------------------------------------
# Menu and help
# ----------------------------------------------------------------------
def _menu_actions(ctx: typer.Context) -> dict[str, Callable[[], None]]:
    return {
        "1": lambda: dashboard(ctx, interval=None),
        "2": lambda: stats(ctx),
        "3": lambda: logs(ctx, lines=None, follow=True),
        "4": lambda: settings_command(
            ctx, max_clients=None, bandwidth=None, cpus=None, memory=None
        ),
        "5": lambda: start(ctx),
        "6": lambda: stop(ctx),
        "7": lambda: restart(ctx),
        "u": lambda: uninstall(ctx, yes=False),
    }


def _run_menu(ctx: typer.Context) -> None:
    actions = _menu_actions(ctx)
    while True:
        table = Table(title="Conduit Manager", show_header=False)
        table.add_column("Key", style="bold cyan")
        table.add_column("Action")
        for key, label in MENU_OPTIONS:
            table.add_row(key, label)
        console.print(table)

        choice = typer.prompt("Select option", default="0").strip().lower()
        if choice == "0":
            return
        action = actions.get(choice)
        if action is None:
            console.print("[red]Invalid option.[/red]")
            continue
        try:
            action()
        except typer.Exit:
            # the command already reported its failure
            pass
        if choice == "u":
            return


@app.command()
def menu(ctx: typer.Context) -> None:
    """Open the interactive menu."""
    _run_menu(ctx)


@app.command("help")
def help_command(ctx: typer.Context) -> None:
    """Show the command overview."""
    root = ctx.find_root()
    console.print(root.get_help())


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = "\n".join(f"{name}: {item}" for name, item in value.items())
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["RuntimeContext", "app"]
