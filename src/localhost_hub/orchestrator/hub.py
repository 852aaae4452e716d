"""Hub: the command surface of localhost-hub.

Wires configuration, repository, broadcaster, RunManager, EnvironmentResolver,
PortWatcher and WorkspaceCoordinator together and exposes the operations
used by the HTTP API and the CLI.

Usage:
    async with Hub(config, repository) as hub:
        handle = await hub.run_script("web", "dev")
        ...
"""

import asyncio
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from localhost_hub.core.config import HubConfig, get_config
from localhost_hub.core.exceptions import LocalhostHubError, RunNotFoundError
from localhost_hub.core.platform_command import (
    Command,
    build_install_command,
    build_script_command,
    format_command,
)
from localhost_hub.events import EventBroadcaster, EventKind, ExitEvent, Subscription
from localhost_hub.orchestrator.environment import EnvironmentResolver
from localhost_hub.orchestrator.models import (
    Project,
    RunHandle,
    RunnerKind,
    RunRecord,
    RunState,
    ScriptDescriptor,
    Workspace,
    WorkspaceItem,
    WorkspaceRunState,
)
from localhost_hub.orchestrator.package_manager import select_package_manager
from localhost_hub.orchestrator.port_watcher import PortScanner, PortWatcher
from localhost_hub.orchestrator.repository import Repository, YamlRepository
from localhost_hub.orchestrator.run_manager import RunManager
from localhost_hub.orchestrator.workspace_coordinator import WorkspaceCoordinator

logger = logging.getLogger(__name__)

INSTALL_LABEL = "install"


class Hub:
    """Composition root and command surface.

    Attributes:
        config: Effective configuration.
        repository: Definitions and history storage.
        broadcaster: Event fan-out shared by all components.
        run_manager: Process supervision.
        env_resolver: Effective environment computation.
        port_watcher: Listening-port discovery.
        workspaces: Workspace coordination.

    """

    def __init__(
        self,
        config: HubConfig | None = None,
        repository: Repository | None = None,
        *,
        scanner: PortScanner | None = None,
        host_env: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize hub components. Nothing runs until start().

        Args:
            config: Configuration (defaults to the loaded singleton).
            repository: Storage (defaults to YamlRepository in config_dir).
            scanner: Port scanner override (tests).
            host_env: Host environment override (defaults to os.environ).

        """
        self.config = config or get_config()
        self.repository: Repository = (
            repository if repository is not None else YamlRepository(self.config.config_dir)
        )
        self._host_env = host_env

        runner = self.config.runner
        self.broadcaster = EventBroadcaster(
            run_buffer_size=self.config.events.run_buffer_size,
            subscriber_queue_size=self.config.events.subscriber_queue_size,
            max_buffered_runs=runner.history_size,
        )
        self.run_manager = RunManager(
            self.broadcaster,
            grace_period=runner.grace_period,
            restart_settle_delay=runner.restart_settle_delay,
            chunk_size=runner.chunk_size,
            history_size=runner.history_size,
            history_sink=self.repository.append_history,
        )
        self.env_resolver = EnvironmentResolver(
            self.repository,
            inherit_host_env=lambda: self.config.runner.inherit_host_env,
            host_env=host_env,
        )
        self.port_watcher = PortWatcher(
            self.run_manager,
            self.broadcaster,
            scanner=scanner,
            expected_ports=self.repository.get_expected_port,
            interval=self.config.ports.interval,
            include_external=self.config.ports.include_external,
            external_ports=self.config.ports.external_ports,
        )
        self.workspaces = WorkspaceCoordinator(
            self.run_manager,
            self.broadcaster,
            self.repository.get_workspace,
            self._launch_item,
            port_watcher=self.port_watcher if self.config.ports.enabled else None,
            config=self.config.workspace,
        )

        self._crash_watch: asyncio.Task[None] | None = None
        self._pending_restarts: set[asyncio.Task[None]] = set()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background tasks (port polling, status aggregation)."""
        if self._started:
            return
        self._started = True
        if self.config.ports.enabled:
            self.port_watcher.start()
        self.workspaces.start_monitoring()
        if self.config.runner.auto_restart_on_crash:
            subscription = self.broadcaster.subscribe(kinds=[EventKind.EXIT], replay=False)
            self._crash_watch = asyncio.create_task(self._watch_crashes(subscription))
        logger.info("Hub started (config_dir=%s)", self.config.config_dir)

    async def shutdown(self) -> None:
        """Stop every run and background task."""
        if self._crash_watch is not None:
            self._crash_watch.cancel()
            await asyncio.gather(self._crash_watch, return_exceptions=True)
            self._crash_watch = None
        for task in list(self._pending_restarts):
            task.cancel()
        await asyncio.gather(*self._pending_restarts, return_exceptions=True)

        await self.workspaces.close()
        await self.port_watcher.stop()
        await self.run_manager.shutdown()
        self.broadcaster.close()
        self._started = False
        logger.info("Hub shut down")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------

    def script_command(self, project: Project, script: ScriptDescriptor) -> Command:
        """Command that runs a script: via the package manager or the shell."""
        if script.runner is RunnerKind.SHELL:
            return script.command
        manager = select_package_manager(project.path, self.config.runner)
        return build_script_command(manager, script.name)

    async def run_script(
        self,
        project_id: str,
        script_name: str,
        *,
        env_overrides: Mapping[str, str] | None = None,
        profile_id: str | None = None,
        workspace_id: str | None = None,
        workspace_item_id: str | None = None,
    ) -> RunHandle:
        """Start a project script.

        Raises:
            NotFoundError: If the project, script or profile is unknown.
            SpawnFailure: If the process cannot be started.

        """
        project = self.repository.get_project(project_id)
        script = self.repository.get_script(project_id, script_name)
        env = self.env_resolver.resolve(project_id, script_name, env_overrides, profile_id=profile_id)
        return await self.run_manager.start(
            self.script_command(project, script),
            project.path,
            env,
            script.name,
            descriptor=script,
            workspace_id=workspace_id,
            workspace_item_id=workspace_item_id,
        )

    async def run_command(
        self,
        command: Command,
        cwd: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
        label: str | None = None,
    ) -> RunHandle:
        """Start an ad hoc command that belongs to no project."""
        env: dict[str, str] = {}
        if self.config.runner.inherit_host_env:
            env.update(self._host_env if self._host_env is not None else os.environ)
        env.update(env_overrides or {})
        return await self.run_manager.start(command, cwd, env, label or format_command(command))

    async def stop_run(self, run_id: str, *, force: bool = False) -> None:
        """Request termination of a run (returns before it exits)."""
        await self.run_manager.stop(run_id, force=force)

    async def restart_script(
        self,
        project_id: str,
        script_name: str,
        *,
        env_overrides: Mapping[str, str] | None = None,
        profile_id: str | None = None,
    ) -> RunHandle:
        """Restart a script with a freshly resolved environment.

        A script that was never started is simply started.
        """
        project = self.repository.get_project(project_id)
        script = self.repository.get_script(project_id, script_name)
        env = self.env_resolver.resolve(project_id, script_name, env_overrides, profile_id=profile_id)
        try:
            return await self.run_manager.restart(script, env=env)
        except RunNotFoundError:
            logger.debug("%s:%s never started, starting fresh", project_id, script_name)
            return await self.run_manager.start(
                self.script_command(project, script),
                project.path,
                env,
                script.name,
                descriptor=script,
            )

    async def install_dependencies(self, project_id: str) -> RunHandle:
        """Run the package manager's install command as a supervised run."""
        project = self.repository.get_project(project_id)
        manager = select_package_manager(project.path, self.config.runner)
        env = self.env_resolver.resolve(project_id, INSTALL_LABEL)
        logger.info("Installing dependencies of %s with %s", project.name, manager)
        return await self.run_manager.start(build_install_command(manager), project.path, env, INSTALL_LABEL)

    def detect_package_manager(self, project_id: str) -> str:
        """Package manager used for a project under current settings."""
        return select_package_manager(self.repository.get_project(project_id).path, self.config.runner)

    def get_expected_port(self, project_id: str, script_name: str) -> int | None:
        self.repository.get_script(project_id, script_name)
        return self.repository.get_expected_port(project_id, script_name)

    def set_expected_port(self, project_id: str, script_name: str, port: int | None) -> None:
        """Set or clear the expected port of a script.

        Raises:
            NotFoundError: If the project or script is unknown.
            ValueError: If the port is out of range.

        """
        self.repository.get_script(project_id, script_name)
        self.repository.set_expected_port(project_id, script_name, port)
        logger.info("Expected port of %s:%s set to %s", project_id, script_name, port)

    # ------------------------------------------------------------------
    # Runs and ports
    # ------------------------------------------------------------------

    def list_runs(self) -> list[RunRecord]:
        return self.run_manager.active_runs()

    def get_run(self, run_id: str) -> RunRecord:
        return self.run_manager.get(run_id)

    def list_ports(self) -> dict[str, Any]:
        """Latest port view of runs and unmanaged processes."""
        return {
            "runs": [status.to_dict() for status in self.port_watcher.statuses()],
            "external": [proc.to_dict() for proc in self.port_watcher.external_processes()],
        }

    async def kill_external(self, pid: int) -> None:
        """Terminate a process tree by pid.

        Raises:
            NotFoundError: If the process does not exist.

        """
        await self.run_manager.kill_pid(pid)

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def list_workspaces(self) -> list[Workspace]:
        return self.repository.list_workspaces()

    def workspace_state(self, workspace_id: str) -> WorkspaceRunState:
        self.repository.get_workspace(workspace_id)
        return self.workspaces.state(workspace_id)

    async def start_workspace(self, workspace_id: str) -> WorkspaceRunState:
        return await self.workspaces.start(workspace_id)

    async def stop_workspace(self, workspace_id: str) -> WorkspaceRunState:
        return await self.workspaces.stop(workspace_id)

    async def restart_workspace(self, workspace_id: str) -> WorkspaceRunState:
        return await self.workspaces.restart(workspace_id)

    async def restart_workspace_item(self, workspace_id: str, item_id: str) -> RunHandle:
        return await self.workspaces.restart_item(workspace_id, item_id)

    async def _launch_item(self, workspace: Workspace, item: WorkspaceItem) -> RunHandle:
        return await self.run_script(
            item.project_id,
            item.script_name,
            profile_id=item.env_profile_id,
            workspace_id=workspace.id,
            workspace_item_id=item.id,
        )

    # ------------------------------------------------------------------
    # Crash policy
    # ------------------------------------------------------------------

    async def _watch_crashes(self, subscription: Subscription) -> None:
        with subscription:
            async for event in subscription:
                if not isinstance(event, ExitEvent) or event.state != RunState.CRASHED:
                    continue
                if event.workspace_id is not None or event.run_id is None:
                    continue
                try:
                    record = self.run_manager.get(event.run_id)
                except RunNotFoundError:
                    continue
                if record.descriptor is None:
                    continue
                task = asyncio.create_task(self._restart_crashed(record.descriptor))
                self._pending_restarts.add(task)
                task.add_done_callback(self._pending_restarts.discard)

    async def _restart_crashed(self, descriptor: ScriptDescriptor) -> None:
        delay = self.config.runner.auto_restart_delay
        logger.info("%s:%s crashed, restarting in %.1fs", descriptor.project_id, descriptor.name, delay)
        await asyncio.sleep(delay)
        if self.run_manager.active_for(descriptor) is not None:
            logger.debug("%s:%s already running again, skipping restart", descriptor.project_id, descriptor.name)
            return
        try:
            await self.run_manager.restart(descriptor)
        except LocalhostHubError as e:
            logger.warning("Automatic restart of %s:%s failed: %s", descriptor.project_id, descriptor.name, e)
