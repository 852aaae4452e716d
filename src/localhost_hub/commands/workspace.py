"""Workspace command group for localhost-hub.

Provides:
- `localhost-hub workspace list`: Show defined workspaces and their items
- `localhost-hub workspace up ID`: Start a workspace in the foreground

Example:
    $ localhost-hub workspace list
    $ localhost-hub workspace up fullstack
"""

import logging

import typer
from rich.table import Table

from localhost_hub.cli_utils import EXIT_ERROR, _error, console
from localhost_hub.commands._foreground import follow_workspace
from localhost_hub.core.async_utils import run_async_with_timeout
from localhost_hub.core.config import get_config
from localhost_hub.core.exceptions import LocalhostHubError
from localhost_hub.orchestrator import Hub, YamlRepository

logger = logging.getLogger(__name__)

workspace_app = typer.Typer(
    name="workspace",
    help="Workspace commands",
    no_args_is_help=True,
)


@workspace_app.command(name="list")
def list_command() -> None:
    """List workspaces defined in hub.yaml."""
    config = get_config()
    repository = YamlRepository(config.config_dir)
    workspaces = repository.list_workspaces()
    if not workspaces:
        console.print(f"No workspaces defined in {repository.definitions_path}")
        return

    table = Table(title="Workspaces")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("#", justify="right")
    table.add_column("Mode")
    table.add_column("Script")
    table.add_column("Profile")
    for workspace in workspaces:
        items = workspace.ordered_items()
        if not items:
            table.add_row(workspace.id, workspace.name, "", "", "[dim]empty[/dim]", "")
        for position, item in enumerate(items):
            table.add_row(
                workspace.id if position == 0 else "",
                workspace.name if position == 0 else "",
                str(item.order_index),
                item.run_mode.value,
                f"{item.project_id}:{item.script_name}",
                item.env_profile_id or "",
            )
    console.print(table)


@workspace_app.command(name="up")
def up_command(
    workspace_id: str = typer.Argument(..., help="Workspace ID"),
) -> None:
    """Start a workspace and stream its output until Ctrl+C."""
    config = get_config()

    async def _up() -> None:
        async with Hub(config) as hub:
            await follow_workspace(hub, workspace_id)

    try:
        run_async_with_timeout(_up())
    except LocalhostHubError as e:
        _error(str(e))
        raise typer.Exit(code=EXIT_ERROR) from None
