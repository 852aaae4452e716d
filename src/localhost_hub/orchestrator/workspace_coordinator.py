"""Workspace coordination: start, stop and restart groups of runs.

A workspace is an ordered list of (project, script) items. On start:
- PARALLEL items are launched together, staggered slightly by position
- SEQUENTIAL items run as a background chain ordered by order_index;
  each item must settle before the next one is launched
- both groups proceed side by side

Settling (WorkspaceConfig.settle):
- READY: the run binds a listening port, or exits with code 0; with port
  watching disabled the run counts as ready once started
- EXIT: the run reaches a terminal state

A run that fails to spawn, crashes, is stopped, or does not settle within
settle_timeout is a failed item. With FailurePolicy.ABORT the chain ends
there (running items are left alone); with CONTINUE the chain moves on.

Workspace state is never stored: it is derived from RunManager's active
runs, which carry the workspace attribution.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from localhost_hub.core.async_utils import cancel_and_wait, delayed_invoke
from localhost_hub.core.config.models import FailurePolicy, SettleCondition, WorkspaceConfig
from localhost_hub.core.exceptions import (
    LocalhostHubError,
    NotFoundError,
    RunNotFoundError,
    SpawnFailure,
    WorkspaceError,
    WorkspaceItemFailure,
)
from localhost_hub.events import EventBroadcaster, EventKind, Subscription, WorkspaceStatusEvent
from localhost_hub.orchestrator.models import (
    RunHandle,
    RunMode,
    RunRecord,
    RunState,
    Workspace,
    WorkspaceItem,
    WorkspaceRunState,
)
from localhost_hub.orchestrator.port_watcher import PortWatcher
from localhost_hub.orchestrator.run_manager import RunManager

logger = logging.getLogger(__name__)

WorkspaceLookup = Callable[[str], Workspace]
ItemLauncher = Callable[[Workspace, WorkspaceItem], Awaitable[RunHandle]]

_WATCHED_KINDS = (EventKind.STATUS, EventKind.EXIT, EventKind.SPAWN_ERROR)


class WorkspaceCoordinator:
    """Runs workspaces on top of RunManager.

    Attributes:
        config: Settle, failure and timing settings.

    """

    def __init__(
        self,
        run_manager: RunManager,
        broadcaster: EventBroadcaster,
        workspaces: WorkspaceLookup,
        launcher: ItemLauncher,
        *,
        port_watcher: PortWatcher | None = None,
        config: WorkspaceConfig | None = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            run_manager: Executes every run.
            broadcaster: Source of run events, sink of workspace status.
            workspaces: Lookup raising NotFoundError for unknown ids.
            launcher: Starts one workspace item and returns its handle.
            port_watcher: Port discovery for the READY settle condition.
                Without it a READY item settles as soon as it is started.
            config: Workspace settings (defaults when omitted).

        """
        self.run_manager = run_manager
        self.broadcaster = broadcaster
        self.port_watcher = port_watcher
        self.config = config or WorkspaceConfig()
        self._workspaces = workspaces
        self._launcher = launcher

        self._chains: dict[str, asyncio.Task[None]] = {}
        self._launches: dict[str, asyncio.Task[list[Any]]] = {}
        self._errors: dict[str, str] = {}
        self._last_counts: dict[str, int] = {}
        self._monitor: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_monitoring(self) -> None:
        """Start publishing workspace_status events as runs change."""
        if self._monitor is None or self._monitor.done():
            subscription = self.broadcaster.subscribe(kinds=_WATCHED_KINDS, replay=False)
            self._monitor = asyncio.create_task(self._monitor_runs(subscription))

    async def close(self) -> None:
        """Cancel pending chains and the status monitor. Runs are left alone."""
        for workspace_id in list(self._launches):
            await cancel_and_wait(self._launches.pop(workspace_id, None))
        for workspace_id in list(self._chains):
            await cancel_and_wait(self._chains.pop(workspace_id, None))
        await cancel_and_wait(self._monitor)
        self._monitor = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, workspace_id: str) -> WorkspaceRunState:
        """Current active runs of a workspace."""
        return WorkspaceRunState(
            workspace_id=workspace_id,
            run_ids={r.run_id for r in self.run_manager.runs_for_workspace(workspace_id)},
        )

    def is_running(self, workspace_id: str) -> bool:
        """True while the workspace has active runs or a pending chain."""
        chain = self._chains.get(workspace_id)
        if chain is not None and not chain.done():
            return True
        launches = self._launches.get(workspace_id)
        if launches is not None and not launches.done():
            return True
        return self.state(workspace_id).active_run_count > 0

    def last_error(self, workspace_id: str) -> str | None:
        """Most recent item failure of the workspace's current start."""
        return self._errors.get(workspace_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(self, workspace_id: str) -> WorkspaceRunState:
        """Start every item of a workspace.

        Parallel items are launched before this returns, unless a stop
        cancels the launches first; the sequential chain continues in the
        background.

        Returns:
            State right after the parallel launches.

        Raises:
            NotFoundError: If the workspace is unknown.
            WorkspaceError: If it has no items or is already running.

        """
        workspace = self._workspaces(workspace_id)
        if not workspace.items:
            raise WorkspaceError(f"Workspace {workspace.name} has no items", workspace_id)
        if self.is_running(workspace_id):
            raise WorkspaceError(f"Workspace {workspace.name} is already running", workspace_id)

        items = workspace.ordered_items()
        parallel = [item for item in items if item.run_mode is RunMode.PARALLEL]
        sequential = [item for item in items if item.run_mode is RunMode.SEQUENTIAL]
        logger.info(
            "Starting workspace %s (%d parallel, %d sequential)",
            workspace.name,
            len(parallel),
            len(sequential),
        )

        self._errors.pop(workspace_id, None)
        if sequential:
            self._chains[workspace_id] = asyncio.create_task(
                self._run_chain(workspace, sequential),
                name=f"workspace-chain-{workspace_id}",
            )
        launches = asyncio.create_task(
            self._launch_parallel(workspace, parallel),
            name=f"workspace-launch-{workspace_id}",
        )
        self._launches[workspace_id] = launches
        try:
            await asyncio.wait({launches})
        except asyncio.CancelledError:
            launches.cancel()
            raise
        finally:
            if self._launches.get(workspace_id) is launches:
                del self._launches[workspace_id]

        if launches.cancelled():
            logger.info("Workspace %s: parallel launches cancelled", workspace.name)
            return self.state(workspace_id)

        for result in launches.result():
            if isinstance(result, WorkspaceItemFailure):
                self._report_failure(result)
            elif isinstance(result, BaseException):
                await cancel_and_wait(self._chains.pop(workspace_id, None))
                raise result

        self._publish_status(workspace_id, force=True)
        return self.state(workspace_id)

    async def stop(self, workspace_id: str) -> WorkspaceRunState:
        """Stop a workspace and wait until all its runs are terminal.

        Pending parallel launches and the sequential chain are cancelled
        first so no further item launches.
        Parallel runs are stopped together, then sequential runs one by
        one in reverse start order.

        Raises:
            NotFoundError: If the workspace is unknown.

        """
        workspace = self._workspaces(workspace_id)
        launches = self._launches.pop(workspace_id, None)
        if launches is not None and not launches.done():
            logger.info("Cancelling pending launches of workspace %s", workspace.name)
        await cancel_and_wait(launches)
        chain = self._chains.pop(workspace_id, None)
        if chain is not None and not chain.done():
            logger.info("Cancelling pending chain of workspace %s", workspace.name)
        await cancel_and_wait(chain)

        modes = {item.id: item.run_mode for item in workspace.items}
        runs = self.run_manager.runs_for_workspace(workspace_id)
        parallel_runs = [r for r in runs if modes.get(r.workspace_item_id or "") is not RunMode.SEQUENTIAL]
        sequential_runs = [r for r in runs if modes.get(r.workspace_item_id or "") is RunMode.SEQUENTIAL]

        logger.info("Stopping workspace %s (%d runs)", workspace.name, len(runs))
        await asyncio.gather(*(self._stop_and_wait(r) for r in parallel_runs))
        for record in reversed(sequential_runs):
            await self._stop_and_wait(record)

        self._errors.pop(workspace_id, None)
        self._publish_status(workspace_id, force=True)
        return self.state(workspace_id)

    async def restart(self, workspace_id: str) -> WorkspaceRunState:
        """Stop the workspace if running, wait the settle delay, start it again."""
        if self.is_running(workspace_id):
            await self.stop(workspace_id)
            await asyncio.sleep(self.config.restart_settle_delay)
        return await self.start(workspace_id)

    async def restart_item(self, workspace_id: str, item_id: str) -> RunHandle:
        """Restart one item of a workspace.

        Raises:
            NotFoundError: If the workspace or item is unknown.
            WorkspaceItemFailure: If the item cannot be started.

        """
        workspace = self._workspaces(workspace_id)
        item = workspace.get_item(item_id)
        if item is None:
            raise NotFoundError("workspace item", item_id)

        running = [r for r in self.run_manager.runs_for_workspace(workspace_id) if r.workspace_item_id == item_id]
        for record in running:
            await self._stop_and_wait(record)
        if running:
            await asyncio.sleep(self.config.restart_settle_delay)

        handle = await self._launch(workspace, item)
        self._publish_status(workspace_id, force=True)
        return handle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _launch(self, workspace: Workspace, item: WorkspaceItem) -> RunHandle:
        try:
            return await self._launcher(workspace, item)
        except SpawnFailure as e:
            raise WorkspaceItemFailure(
                f"{item.project_id}:{item.script_name} failed to start: {e}",
                workspace_id=workspace.id,
                item_id=item.id,
                run_id=e.run_id,
                reason="spawn_failed",
            ) from e
        except LocalhostHubError as e:
            raise WorkspaceItemFailure(
                f"{item.project_id}:{item.script_name} cannot be started: {e}",
                workspace_id=workspace.id,
                item_id=item.id,
                reason="spawn_failed",
            ) from e

    async def _launch_parallel(self, workspace: Workspace, items: list[WorkspaceItem]) -> list[Any]:
        return await asyncio.gather(
            *(
                delayed_invoke(index * self.config.parallel_stagger, self._launch(workspace, item))
                for index, item in enumerate(items)
            ),
            return_exceptions=True,
        )

    async def _run_chain(self, workspace: Workspace, items: list[WorkspaceItem]) -> None:
        try:
            for position, item in enumerate(items):
                try:
                    handle = await self._launch(workspace, item)
                    await self._settle(workspace, item, handle)
                except WorkspaceItemFailure as failure:
                    self._report_failure(failure)
                    if self.config.failure_policy is FailurePolicy.ABORT:
                        remaining = len(items) - position - 1
                        logger.warning(
                            "Workspace %s: chain aborted, %d item(s) not started",
                            workspace.name,
                            remaining,
                        )
                        return
            logger.info("Workspace %s: sequential chain complete", workspace.name)
        finally:
            if self._chains.get(workspace.id) is asyncio.current_task():
                del self._chains[workspace.id]

    async def _settle(self, workspace: Workspace, item: WorkspaceItem, handle: RunHandle) -> None:
        """Wait until the item's run settles.

        Raises:
            WorkspaceItemFailure: If the run crashed, was stopped, or did not
                settle in time.

        """
        run_id = handle.run_id
        if self.config.settle is SettleCondition.READY and self.port_watcher is None:
            logger.debug(
                "Workspace %s: no port watching, %s:%s counts as ready once started",
                workspace.name,
                item.project_id,
                item.script_name,
            )
            return

        timeout = self.config.settle_timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        exit_wait = asyncio.ensure_future(self.run_manager.wait(run_id))
        pending: set[asyncio.Future[Any]] = {exit_wait}
        port_wait = None
        if self.config.settle is SettleCondition.READY and self.port_watcher is not None:
            port_wait = asyncio.ensure_future(self.port_watcher.wait_for_port(run_id))
            pending.add(port_wait)

        try:
            while True:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    raise WorkspaceItemFailure(
                        f"{item.project_id}:{item.script_name} did not settle within {timeout:g}s",
                        workspace_id=workspace.id,
                        item_id=item.id,
                        run_id=run_id,
                        reason="settle_timeout",
                    )
                if exit_wait in done:
                    self._check_exit(workspace, item, exit_wait.result())
                    return
                if port_wait is not None and port_wait in done and port_wait.result() is not None:
                    logger.info(
                        "Workspace %s: %s:%s ready on port %s",
                        workspace.name,
                        item.project_id,
                        item.script_name,
                        port_wait.result(),
                    )
                    return
        finally:
            for future in pending:
                future.cancel()
            for future in pending:
                with contextlib.suppress(asyncio.CancelledError, LocalhostHubError):
                    await future

    def _check_exit(self, workspace: Workspace, item: WorkspaceItem, record: RunRecord) -> None:
        if record.state is RunState.EXITED:
            logger.info("Workspace %s: %s:%s completed", workspace.name, item.project_id, item.script_name)
            return
        reason = "stopped" if record.was_stopped else "crashed"
        raise WorkspaceItemFailure(
            f"{item.project_id}:{item.script_name} {reason} (exit code {record.exit_code})",
            workspace_id=workspace.id,
            item_id=item.id,
            run_id=record.run_id,
            reason=reason,
        )

    async def _stop_and_wait(self, record: RunRecord) -> None:
        try:
            await self.run_manager.stop(record.run_id)
            await self.run_manager.wait(record.run_id)
        except RunNotFoundError:
            logger.debug("Run %s vanished before stop", record.run_id[:8])

    def _report_failure(self, failure: WorkspaceItemFailure) -> None:
        workspace_id = str(failure.workspace_id)
        logger.warning("Workspace %s item %s failed: %s", workspace_id, failure.item_id, failure)
        self._errors[workspace_id] = str(failure)
        self.broadcaster.publish(
            WorkspaceStatusEvent(
                workspace_id=workspace_id,
                active_run_count=self.state(workspace_id).active_run_count,
                error=str(failure),
            )
        )

    def _publish_status(self, workspace_id: str, force: bool = False) -> None:
        count = self.state(workspace_id).active_run_count
        if not force and self._last_counts.get(workspace_id) == count:
            return
        self._last_counts[workspace_id] = count
        self.broadcaster.publish(WorkspaceStatusEvent(workspace_id=workspace_id, active_run_count=count))

    async def _monitor_runs(self, subscription: Subscription) -> None:
        with subscription:
            async for event in subscription:
                if event.workspace_id is None:
                    continue
                try:
                    self._publish_status(event.workspace_id)
                except Exception:
                    logger.exception("Failed to publish status of workspace %s", event.workspace_id)
