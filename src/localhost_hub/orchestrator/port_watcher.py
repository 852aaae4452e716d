"""Listening-port discovery for active runs and unmanaged processes.

A background task periodically takes one snapshot of the system's listening
sockets and the process tree of every active run, then:
- publishes a ``port`` event when a run's port status changes
- writes the run's primary port back through RunManager.annotate_port
- keeps a list of unmanaged processes listening on common dev ports

OS enumeration runs in a worker thread. Any enumeration error degrades to
an "unknown" status (no ports) and is logged at debug level only.
"""

import asyncio
import contextlib
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

import psutil

from localhost_hub.core.async_utils import cancel_and_wait
from localhost_hub.core.config.models import DEV_PORTS
from localhost_hub.events import EventBroadcaster, PortEvent
from localhost_hub.orchestrator.run_manager import RunManager

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
MAX_COMMAND_LENGTH = 200

ExpectedPortLookup = Callable[[str, str], int | None]


@dataclass(frozen=True)
class ListeningSocket:
    """One socket in LISTEN state."""

    port: int
    pid: int | None


@dataclass(frozen=True)
class ProcessInfo:
    """Descriptive details of a process."""

    name: str
    command: str
    cwd: str | None = None


class PortScanner(Protocol):
    """OS access used by PortWatcher. Called from a worker thread."""

    def listening(self) -> list[ListeningSocket]: ...

    def descendants(self, pid: int) -> set[int]: ...

    def describe(self, pid: int) -> ProcessInfo | None: ...


class PsutilScanner:
    """PortScanner backed by psutil."""

    def listening(self) -> list[ListeningSocket]:
        """All listening inet sockets.

        Falls back to per-process enumeration where the system-wide table
        needs elevated privileges (macOS).
        """
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            return self._per_process_listening()

        return [
            ListeningSocket(port=conn.laddr.port, pid=conn.pid)
            for conn in connections
            if conn.status == psutil.CONN_LISTEN and conn.laddr
        ]

    def _per_process_listening(self) -> list[ListeningSocket]:
        found = []
        for proc in psutil.process_iter():
            try:
                for conn in proc.net_connections(kind="inet"):
                    if conn.status == psutil.CONN_LISTEN and conn.laddr:
                        found.append(ListeningSocket(port=conn.laddr.port, pid=proc.pid))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    def descendants(self, pid: int) -> set[int]:
        """Pids of all descendants of a process."""
        try:
            return {child.pid for child in psutil.Process(pid).children(recursive=True)}
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return set()

    def describe(self, pid: int) -> ProcessInfo | None:
        """Name, command line and cwd of a process, None if it is gone."""
        try:
            proc = psutil.Process(pid)
            name = proc.name()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        try:
            command = " ".join(proc.cmdline()) or name
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            command = name
        try:
            cwd: str | None = proc.cwd()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            cwd = None
        return ProcessInfo(name=name, command=command[:MAX_COMMAND_LENGTH], cwd=cwd)


@dataclass(frozen=True)
class PortStatus:
    """Port view of one run.

    Attributes:
        run_id: Run the status belongs to.
        ports: Listening ports of the run's process tree, ascending.
        port: Primary port (expected port if bound, else the lowest).
        expected_port: Configured expected port, if any.
        matches: Whether the expected port is bound; None without one.

    """

    run_id: str
    ports: tuple[int, ...] = ()
    port: int | None = None
    expected_port: int | None = None
    matches: bool | None = None

    @classmethod
    def build(cls, run_id: str, ports: Iterable[int], expected_port: int | None) -> "PortStatus":
        """Derive primary port and match flag from the discovered ports."""
        found = tuple(sorted(set(ports)))
        if expected_port is not None and expected_port in found:
            primary: int | None = expected_port
        else:
            primary = found[0] if found else None
        matches = None if expected_port is None else expected_port in found
        return cls(run_id=run_id, ports=found, port=primary, expected_port=expected_port, matches=matches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "ports": list(self.ports),
            "port": self.port,
            "expected_port": self.expected_port,
            "matches": self.matches,
        }


@dataclass(frozen=True)
class ExternalProcess:
    """A listening process the hub did not start."""

    pid: int
    ports: tuple[int, ...]
    name: str
    command: str
    cwd: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "ports": list(self.ports),
            "name": self.name,
            "command": self.command,
            "cwd": self.cwd,
        }


@dataclass
class _Target:
    run_id: str
    pid: int
    workspace_id: str | None
    expected_port: int | None


@dataclass
class _Snapshot:
    ports_by_run: dict[str, set[int]] = field(default_factory=dict)
    external: list[ExternalProcess] = field(default_factory=list)
    ok: bool = True


class PortWatcher:
    """Polls listening sockets and correlates them with active runs.

    Attributes:
        interval: Seconds between scans.
        include_external: Whether unmanaged processes are reported.
        external_ports: Ports an unmanaged process must listen on to be
            reported (empty means any port).

    """

    def __init__(
        self,
        run_manager: RunManager,
        broadcaster: EventBroadcaster,
        *,
        scanner: PortScanner | None = None,
        expected_ports: ExpectedPortLookup | None = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        include_external: bool = True,
        external_ports: Iterable[int] | None = DEV_PORTS,
        own_pid: int | None = None,
    ) -> None:
        """Initialize port watcher.

        Args:
            run_manager: Source of active runs and sink of port hints.
            broadcaster: Destination of port events.
            scanner: OS access (defaults to PsutilScanner).
            expected_ports: Lookup of the expected port per (project, script).
            interval: Seconds between scans.
            include_external: Report unmanaged listening processes.
            external_ports: Port filter for unmanaged processes.
            own_pid: Pid excluded from external processes (defaults to ours).

        """
        self.run_manager = run_manager
        self.broadcaster = broadcaster
        self.scanner: PortScanner = scanner or PsutilScanner()
        self.interval = interval
        self.include_external = include_external
        self.external_ports = frozenset(external_ports or ())
        self._expected_ports = expected_ports
        self._own_pid = own_pid if own_pid is not None else os.getpid()

        self._statuses: dict[str, PortStatus] = {}
        self._external: list[ExternalProcess] = []
        self._waiters: dict[str, list[asyncio.Future[int | None]]] = {}
        self._task: asyncio.Task[None] | None = None
        self._scan_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        """True while the background poll task is alive."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background poll task. No-op if already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Port watcher started (interval=%.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the background poll task and release all waiters."""
        if self._task is not None:
            await cancel_and_wait(self._task)
            self._task = None
            logger.info("Port watcher stopped")
        for run_id in list(self._waiters):
            self._release_waiters(run_id, None)

    def status(self, run_id: str) -> PortStatus | None:
        """Latest port status of a run."""
        return self._statuses.get(run_id)

    def statuses(self) -> list[PortStatus]:
        """Latest port status of every active run."""
        return list(self._statuses.values())

    def external_processes(self) -> list[ExternalProcess]:
        """Unmanaged listening processes seen in the latest scan."""
        return list(self._external)

    async def wait_for_port(self, run_id: str, timeout: float | None = None) -> int | None:
        """Wait until a port is discovered for a run.

        Args:
            run_id: Run to watch.
            timeout: Seconds to wait; raises TimeoutError when exceeded.

        Returns:
            The primary port, or None if the run ended (or the watcher
            stopped) before binding one.

        """
        current = self._statuses.get(run_id)
        if current is not None and current.port is not None:
            return current.port
        if all(record.run_id != run_id for record in self.run_manager.active_runs()):
            return None

        future: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(run_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            waiters = self._waiters.get(run_id)
            if waiters is not None:
                with contextlib.suppress(ValueError):
                    waiters.remove(future)
                if not waiters:
                    del self._waiters[run_id]

    async def poll_once(self) -> list[PortStatus]:
        """Run one scan and apply it.

        Returns:
            Port status of every active run.

        """
        async with self._scan_lock:
            targets = [
                _Target(
                    run_id=record.run_id,
                    pid=record.pid,
                    workspace_id=record.workspace_id,
                    expected_port=self._lookup_expected(record.descriptor),
                )
                for record in self.run_manager.active_runs()
                if record.pid is not None
            ]
            snapshot = await asyncio.to_thread(self._collect, targets)
            self._apply(targets, snapshot)
            return self.statuses()

    def _lookup_expected(self, descriptor: Any) -> int | None:
        if descriptor is None or self._expected_ports is None:
            return None
        try:
            return self._expected_ports(descriptor.project_id, descriptor.name)
        except Exception:
            logger.exception("Expected port lookup failed for %s:%s", descriptor.project_id, descriptor.name)
            return None

    def _collect(self, targets: list[_Target]) -> _Snapshot:
        """Blocking OS enumeration. Runs in a worker thread."""
        snapshot = _Snapshot()
        try:
            sockets = self.scanner.listening()
        except Exception as e:
            logger.debug("Listening socket enumeration failed: %s", e)
            snapshot.ok = False
            return snapshot

        by_pid: dict[int, set[int]] = {}
        for sock in sockets:
            if sock.pid is not None:
                by_pid.setdefault(sock.pid, set()).add(sock.port)

        claimed: set[int] = set()
        for target in targets:
            try:
                tree = {target.pid} | self.scanner.descendants(target.pid)
            except Exception as e:
                logger.debug("Process tree of run %s unavailable: %s", target.run_id[:8], e)
                tree = {target.pid}
            claimed |= tree
            ports: set[int] = set()
            for pid in tree:
                ports |= by_pid.get(pid, set())
            snapshot.ports_by_run[target.run_id] = ports

        if self.include_external:
            for pid, ports in sorted(by_pid.items()):
                if pid in claimed or pid == self._own_pid:
                    continue
                if self.external_ports:
                    ports = ports & self.external_ports
                if not ports:
                    continue
                try:
                    info = self.scanner.describe(pid)
                except Exception as e:
                    logger.debug("Cannot describe process %d: %s", pid, e)
                    info = None
                if info is None:
                    continue
                snapshot.external.append(
                    ExternalProcess(
                        pid=pid,
                        ports=tuple(sorted(ports)),
                        name=info.name,
                        command=info.command,
                        cwd=info.cwd,
                    )
                )
        return snapshot

    def _apply(self, targets: list[_Target], snapshot: _Snapshot) -> None:
        active_ids = {record.run_id for record in self.run_manager.active_runs()}
        for target in targets:
            if target.run_id not in active_ids:
                continue
            if snapshot.ok:
                found = snapshot.ports_by_run.get(target.run_id, set())
                status = PortStatus.build(target.run_id, found, target.expected_port)
            else:
                # Unknown: no ports, no verdict
                status = PortStatus(run_id=target.run_id, expected_port=target.expected_port)

            previous = self._statuses.get(target.run_id) or PortStatus.build(
                target.run_id, (), target.expected_port
            )
            self._statuses[target.run_id] = status
            if status != previous:
                logger.debug("Run %s ports: %s (primary=%s)", target.run_id[:8], status.ports, status.port)
                self.run_manager.annotate_port(target.run_id, status.port)
                self.broadcaster.publish(
                    PortEvent(
                        run_id=target.run_id,
                        workspace_id=target.workspace_id,
                        ports=status.ports,
                        port=status.port,
                        expected_port=status.expected_port,
                        matches=status.matches,
                    )
                )
            if status.port is not None:
                self._release_waiters(target.run_id, status.port)

        for run_id in list(self._statuses):
            if run_id not in active_ids:
                del self._statuses[run_id]
        for run_id in list(self._waiters):
            if run_id not in active_ids:
                self._release_waiters(run_id, None)

        if snapshot.ok:
            self._external = snapshot.external

    def _release_waiters(self, run_id: str, port: int | None) -> None:
        for future in self._waiters.pop(run_id, []):
            if not future.done():
                future.set_result(port)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Port scan failed")
            await asyncio.sleep(self.interval)
