"""Shared helpers for localhost-hub CLI commands."""

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

# Exit codes
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

# Shared console for output
console = Console()


def _setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Install a RichHandler on the root logger.

    Args:
        verbose: DEBUG level.
        quiet: WARNING level (ignored when verbose).

    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # psutil/asyncio chatter is not useful at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _error(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")


def _warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {message}")


def _info(message: str) -> None:
    console.print(f"[cyan]{message}[/cyan]")


def _success(message: str) -> None:
    console.print(f"[green]{message}[/green]")


def _validate_project_path(path: Path) -> Path:
    """Resolve a directory argument or exit with EXIT_ERROR."""
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        _error(f"Directory does not exist: {resolved}")
        raise typer.Exit(code=EXIT_ERROR)
    if not resolved.is_dir():
        _error(f"Not a directory: {resolved}")
        raise typer.Exit(code=EXIT_ERROR)
    return resolved
