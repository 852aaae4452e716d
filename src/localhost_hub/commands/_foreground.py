"""Foreground execution helpers shared by CLI commands.

Runs a hub inside the CLI process, prints run output to the console and
turns Ctrl+C into a graceful stop instead of abandoning child processes.
"""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable

from rich.markup import escape

from localhost_hub.cli_utils import _info, console
from localhost_hub.core.exceptions import RunNotFoundError
from localhost_hub.events import (
    Event,
    ExitEvent,
    LogChunk,
    PortEvent,
    SpawnErrorEvent,
    Stream,
    Subscription,
    TruncationMarker,
    WorkspaceStatusEvent,
)
from localhost_hub.orchestrator import Hub, RunHandle
from localhost_hub.orchestrator.models import RunRecord

logger = logging.getLogger(__name__)


def _install_interrupt(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)


def _label_for(hub: Hub, run_id: str | None) -> str:
    if run_id is None:
        return "hub"
    try:
        return hub.run_manager.get(run_id).label
    except RunNotFoundError:
        return run_id[:8]


def print_event(hub: Hub, event: Event, prefix: bool = False) -> None:
    """Render one event on the console."""
    label = f"[bold]{escape(_label_for(hub, event.run_id))}[/bold] | " if prefix else ""
    if isinstance(event, LogChunk):
        text = escape(event.chunk.rstrip("\n"))
        if not text:
            return
        if event.stream is Stream.STDERR:
            console.print(f"{label}[red]{text}[/red]", highlight=False)
        else:
            console.print(f"{label}{text}", highlight=False)
    elif isinstance(event, ExitEvent):
        style = "yellow" if event.was_stopped else ("green" if event.exit_code == 0 else "red")
        console.print(f"{label}[{style}]{event.state} (exit code {event.exit_code})[/{style}]")
    elif isinstance(event, SpawnErrorEvent):
        console.print(f"{label}[red]{escape(event.message)}[/red]")
    elif isinstance(event, PortEvent) and event.port is not None:
        verdict = ""
        if event.matches is False:
            verdict = f" [yellow](expected {event.expected_port})[/yellow]"
        console.print(f"{label}[cyan]listening on port {event.port}[/cyan]{verdict}")
    elif isinstance(event, WorkspaceStatusEvent):
        if event.error:
            console.print(f"[red]Workspace item failed:[/red] {escape(event.error)}")
        else:
            console.print(f"[dim]Workspace: {event.active_run_count} active run(s)[/dim]")
    elif isinstance(event, TruncationMarker):
        console.print(f"{label}[dim]... {event.dropped} event(s) dropped[/dim]")


async def _print_run(hub: Hub, subscription: Subscription, run_id: str) -> None:
    async for event in subscription:
        print_event(hub, event)
        if isinstance(event, ExitEvent) and event.run_id == run_id:
            return


async def follow_run(hub: Hub, start: Callable[[], Awaitable[RunHandle]]) -> RunRecord:
    """Start a run, print its output until it exits, stop it on Ctrl+C.

    Args:
        hub: Started hub.
        start: Coroutine factory starting the run.

    Returns:
        Terminal record of the run.

    """
    stop = asyncio.Event()
    _install_interrupt(stop)

    handle = await start()
    console.print(f"[dim]Started {escape(handle.label)} (PID {handle.pid}): {escape(handle.command)}[/dim]")
    subscription = hub.broadcaster.subscribe(run_id=handle.run_id)
    printer = asyncio.create_task(_print_run(hub, subscription, handle.run_id))
    finished = asyncio.ensure_future(hub.run_manager.wait(handle.run_id))
    interrupted = asyncio.create_task(stop.wait())

    await asyncio.wait({finished, interrupted}, return_when=asyncio.FIRST_COMPLETED)
    if not finished.done():
        _info("Stopping...")
        await hub.stop_run(handle.run_id)
    record = await finished
    interrupted.cancel()

    # Let the printer flush the tail of the output and the exit line
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(printer, timeout=2.0)
    subscription.unsubscribe()
    return record


async def follow_workspace(hub: Hub, workspace_id: str) -> None:
    """Start a workspace and print its events until Ctrl+C, then stop it."""
    stop = asyncio.Event()
    _install_interrupt(stop)

    subscription = hub.broadcaster.subscribe(workspace_id=workspace_id)
    printer = asyncio.create_task(_print_workspace(hub, subscription))
    try:
        state = await hub.start_workspace(workspace_id)
        console.print(f"[dim]Workspace started, {state.active_run_count} run(s) active. Ctrl+C to stop.[/dim]")
        await stop.wait()
        _info("Stopping workspace...")
        await hub.stop_workspace(workspace_id)
    finally:
        subscription.unsubscribe()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(printer, timeout=2.0)


async def _print_workspace(hub: Hub, subscription: Subscription) -> None:
    async for event in subscription:
        print_event(hub, event, prefix=True)
