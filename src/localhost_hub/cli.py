"""Command-line interface for localhost-hub.

Commands:
    run        Run a project script in the foreground
    exec       Run an ad hoc command in the foreground
    install    Install a project's dependencies
    detect-pm  Show the package manager of a directory
    ports      List listening processes on dev ports
    kill       Terminate a process tree by pid
    serve      Start the HTTP API
    workspace  Workspace commands (list, up)
"""

import logging
from pathlib import Path

import typer
from rich.table import Table

from localhost_hub import __version__
from localhost_hub.cli_utils import (
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    _error,
    _setup_logging,
    _success,
    _validate_project_path,
    _warning,
    console,
)
from localhost_hub.commands import workspace_app
from localhost_hub.commands._foreground import follow_run
from localhost_hub.core.async_utils import run_async_with_timeout
from localhost_hub.core.config import get_config, load_config_file
from localhost_hub.core.exceptions import ConfigError, LocalhostHubError
from localhost_hub.orchestrator import ExternalProcess, Hub, RunRecord, RunState, detect_package_manager

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="localhost-hub",
    help="Run, watch and group local development scripts",
    no_args_is_help=True,
)
app.add_typer(workspace_app, name="workspace")


def _parse_env(pairs: list[str] | None) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            _error(f"Invalid --env value (expected KEY=VALUE): {pair}")
            raise typer.Exit(code=EXIT_ERROR)
        env[key] = value
    return env


def _exit_with(record: RunRecord) -> None:
    if record.state is RunState.STOPPED:
        raise typer.Exit(code=EXIT_INTERRUPTED)
    raise typer.Exit(code=record.exit_code or 0)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"localhost-hub {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ~/.config/localhost-hub/config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Warnings and errors only"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Load configuration and set up logging for every command."""
    _setup_logging(verbose=verbose, quiet=quiet)
    try:
        load_config_file(config.expanduser() if config else None)
    except ConfigError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from None


@app.command(name="run")
def run_command(
    project_id: str = typer.Argument(..., help="Project ID from hub.yaml"),
    script: str = typer.Argument(..., help="Script name"),
    profile: str | None = typer.Option(None, "--profile", "-p", help="Env profile ID"),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="Extra variable KEY=VALUE"),
) -> None:
    """Run a project script in the foreground. Ctrl+C stops it gracefully."""
    overrides = _parse_env(env)

    async def _run() -> RunRecord:
        async with Hub(get_config()) as hub:
            return await follow_run(
                hub,
                lambda: hub.run_script(project_id, script, env_overrides=overrides, profile_id=profile),
            )

    try:
        record = run_async_with_timeout(_run())
    except LocalhostHubError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    _exit_with(record)


@app.command(name="exec")
def exec_command(
    command: list[str] = typer.Argument(..., help="Command and arguments"),
    cwd: Path = typer.Option(Path("."), "--cwd", "-C", help="Working directory"),
    env: list[str] | None = typer.Option(None, "--env", "-e", help="Extra variable KEY=VALUE"),
    shell: bool = typer.Option(False, "--shell", help="Run the command line through the shell"),
) -> None:
    """Run an ad hoc command under supervision in the foreground."""
    workdir = _validate_project_path(cwd)
    overrides = _parse_env(env)
    spawn = " ".join(command) if shell else list(command)

    async def _exec() -> RunRecord:
        async with Hub(get_config()) as hub:
            return await follow_run(hub, lambda: hub.run_command(spawn, workdir, env_overrides=overrides))

    try:
        record = run_async_with_timeout(_exec())
    except LocalhostHubError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    _exit_with(record)


@app.command(name="install")
def install_command(
    project_id: str = typer.Argument(..., help="Project ID from hub.yaml"),
) -> None:
    """Install a project's dependencies with its package manager."""

    async def _install() -> RunRecord:
        async with Hub(get_config()) as hub:
            return await follow_run(hub, lambda: hub.install_dependencies(project_id))

    try:
        record = run_async_with_timeout(_install())
    except LocalhostHubError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    if record.state is RunState.EXITED:
        _success("Dependencies installed")
    _exit_with(record)


@app.command(name="detect-pm")
def detect_pm_command(
    path: Path = typer.Argument(Path("."), help="Project directory"),
) -> None:
    """Print the package manager detected from lock files."""
    project_path = _validate_project_path(path)
    console.print(detect_package_manager(project_path))


@app.command(name="ports")
def ports_command(
    all_ports: bool = typer.Option(False, "--all", "-a", help="Include every listening port"),
) -> None:
    """List processes listening on dev ports."""
    config = get_config()

    async def _scan() -> list[ExternalProcess]:
        hub = Hub(config)
        if all_ports:
            hub.port_watcher.external_ports = frozenset()
        await hub.port_watcher.poll_once()
        return hub.port_watcher.external_processes()

    processes = run_async_with_timeout(_scan())
    if not processes:
        console.print("No listening processes found")
        return

    table = Table(title="Listening processes")
    table.add_column("PID", justify="right")
    table.add_column("Ports")
    table.add_column("Name", style="bold")
    table.add_column("Command", overflow="fold")
    for proc in processes:
        table.add_row(str(proc.pid), ", ".join(map(str, proc.ports)), proc.name, proc.command)
    console.print(table)


@app.command(name="kill")
def kill_command(
    pid: int = typer.Argument(..., help="Process ID"),
) -> None:
    """Terminate a process and its children (SIGTERM, then SIGKILL)."""

    async def _kill() -> None:
        await Hub(get_config()).kill_external(pid)

    try:
        run_async_with_timeout(_kill())
    except LocalhostHubError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
    _success(f"Process {pid} terminated")


@app.command(name="serve")
def serve_command(
    host: str | None = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: int | None = typer.Option(None, "--port", help="Bind port (default from config)"),
) -> None:
    """Start the HTTP API. All runs are stopped when the server exits."""
    import uvicorn

    from localhost_hub.server import create_app

    config = get_config()
    bind_host = host or config.server.host
    bind_port = port or config.server.port
    if bind_host not in ("127.0.0.1", "localhost", "::1"):
        _warning(f"Binding to {bind_host}: anyone on the network can start and kill processes")
    app_instance = create_app(Hub(config))
    console.print(f"[green]Serving localhost-hub API on http://{bind_host}:{bind_port}[/green]")
    uvicorn.run(app_instance, host=bind_host, port=bind_port, log_config=None)


if __name__ == "__main__":
    app()
