"""Run manager: spawns, supervises and terminates script processes.

Provides:
- Subprocess spawning with a resolved environment
- Chunked stdout/stderr streaming into the event broadcaster
- Exit classification (stopped / exited / crashed)
- Graceful shutdown (SIGTERM to the process tree → grace window → SIGKILL)
- Restart with a settle delay so bound sockets are released

RunManager is the only writer of the active-run table. Other components
read run state through its query methods and observe changes through the
broadcaster.
"""

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import subprocess
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn, cast

import psutil

from localhost_hub.core.exceptions import NotFoundError, RunNotFoundError, SpawnFailure
from localhost_hub.core.platform_command import IS_POSIX, Command, format_command, normalize_command
from localhost_hub.events import (
    EventBroadcaster,
    ExitEvent,
    LogChunk,
    RunStatusEvent,
    SpawnErrorEvent,
    Stream,
)
from localhost_hub.orchestrator.models import RunHandle, RunRecord, RunState, ScriptDescriptor

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0  # seconds between SIGTERM and SIGKILL
DEFAULT_RESTART_SETTLE_DELAY = 0.4  # seconds between stop and start on restart
DEFAULT_CHUNK_SIZE = 4096
DEFAULT_HISTORY_SIZE = 200
# How long output readers may keep draining after the process exited.
# Orphaned grandchildren can hold the pipes open indefinitely.
DRAIN_TIMEOUT = 2.0

HistorySink = Callable[[RunRecord], None]


@dataclass
class _LaunchSpec:
    """What is needed to start a descriptor's run again."""

    command: Command
    cwd: Path
    env: dict[str, str]
    label: str
    workspace_id: str | None = None
    workspace_item_id: str | None = None


@dataclass
class _Supervised:
    """Runtime handles of one active run."""

    record: RunRecord
    process: asyncio.subprocess.Process
    done: asyncio.Future[RunRecord]
    readers: list[asyncio.Task[None]] = field(default_factory=list)
    watcher: asyncio.Task[None] | None = None
    stop_task: asyncio.Task[None] | None = None
    finalized: bool = False


def _descendants(pid: int) -> set[psutil.Process]:
    """All live descendants of a process, empty if it is gone."""
    try:
        return set(psutil.Process(pid).children(recursive=True))
    except psutil.Error:
        return set()


class RunManager:
    """Owns the active-run table and every supervised process.

    Attributes:
        grace_period: Seconds between graceful termination and kill.
        restart_settle_delay: Seconds between stop and start on restart.
        chunk_size: Maximum bytes per published log chunk.
        history_size: Terminal records kept for queries.

    """

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        restart_settle_delay: float = DEFAULT_RESTART_SETTLE_DELAY,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        history_size: int = DEFAULT_HISTORY_SIZE,
        history_sink: HistorySink | None = None,
    ) -> None:
        """Initialize run manager.

        Args:
            broadcaster: Destination of all run events.
            grace_period: Seconds between graceful termination and kill.
            restart_settle_delay: Seconds between stop and start on restart.
            chunk_size: Maximum bytes read from a pipe per chunk.
            history_size: Terminal records kept in memory.
            history_sink: Called with each record once it is terminal.

        """
        self.broadcaster = broadcaster
        self.grace_period = grace_period
        self.restart_settle_delay = restart_settle_delay
        self.chunk_size = chunk_size
        self.history_size = history_size
        self._history_sink = history_sink

        self._active: dict[str, _Supervised] = {}
        self._archive: OrderedDict[str, RunRecord] = OrderedDict()
        self._by_descriptor: dict[tuple[str, str], list[str]] = {}
        self._last_launch: dict[tuple[str, str], _LaunchSpec] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, run_id: str) -> RunRecord:
        """Get a run record, active or archived.

        Raises:
            RunNotFoundError: If the run id is unknown.

        """
        supervised = self._active.get(run_id)
        if supervised is not None:
            return supervised.record
        record = self._archive.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def active_runs(self) -> list[RunRecord]:
        """Records of all non-terminal runs, oldest first."""
        return [s.record for s in self._active.values()]

    def active_for(self, descriptor: ScriptDescriptor) -> RunRecord | None:
        """The most recently started active run of a script, if any."""
        run_ids = self._by_descriptor.get(descriptor.key)
        if not run_ids:
            return None
        return self._active[run_ids[-1]].record

    def runs_for_workspace(self, workspace_id: str) -> list[RunRecord]:
        """Active runs attributed to a workspace, in start order."""
        return [r for r in self.active_runs() if r.workspace_id == workspace_id]

    def history(self) -> list[RunRecord]:
        """Archived terminal records, oldest first."""
        return list(self._archive.values())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(
        self,
        command: Command,
        cwd: Path | str,
        env: Mapping[str, str],
        label: str,
        *,
        descriptor: ScriptDescriptor | None = None,
        workspace_id: str | None = None,
        workspace_item_id: str | None = None,
    ) -> RunHandle:
        """Spawn a process and start supervising it.

        Args:
            command: Shell string or argv sequence.
            cwd: Working directory.
            env: Complete environment for the process.
            label: Display label (usually the script name).
            descriptor: Script the run belongs to.
            workspace_id: Workspace the run is started for.
            workspace_item_id: Workspace item the run is started for.

        Returns:
            Handle with run id, pid and start time.

        Raises:
            SpawnFailure: If the working directory or command is invalid.
                A spawn_error event is published as well.

        """
        cwd_path = Path(cwd)
        record = RunRecord(
            run_id=str(uuid.uuid4()),
            label=label,
            cwd=cwd_path,
            command=format_command(command) if command else "",
            env=dict(env),
            descriptor=descriptor,
            workspace_id=workspace_id,
            workspace_item_id=workspace_item_id,
        )

        try:
            process = await self._spawn(command, cwd_path, record.env)
        except (OSError, ValueError) as e:
            self._fail_spawn(record, e)

        record.pid = process.pid
        record.transition(RunState.RUNNING)

        supervised = _Supervised(
            record=record,
            process=process,
            done=asyncio.get_running_loop().create_future(),
        )
        self._active[record.run_id] = supervised
        if descriptor is not None:
            self._by_descriptor.setdefault(descriptor.key, []).append(record.run_id)
            self._last_launch[descriptor.key] = _LaunchSpec(
                command=command,
                cwd=cwd_path,
                env=dict(env),
                label=label,
                workspace_id=workspace_id,
                workspace_item_id=workspace_item_id,
            )

        logger.info(
            "Started run %s (%s) PID %d: %s",
            record.run_id[:8],
            label,
            process.pid,
            record.command,
        )
        self.broadcaster.publish(
            RunStatusEvent(
                run_id=record.run_id,
                workspace_id=workspace_id,
                state=record.state.value,
                pid=record.pid,
            )
        )

        if process.stdout is not None:
            supervised.readers.append(
                asyncio.create_task(self._pump(record, process.stdout, Stream.STDOUT))
            )
        if process.stderr is not None:
            supervised.readers.append(
                asyncio.create_task(self._pump(record, process.stderr, Stream.STDERR))
            )
        supervised.watcher = asyncio.create_task(self._watch(supervised))

        return record.handle()

    async def stop(self, run_id: str, *, force: bool = False) -> None:
        """Request termination of a run.

        Returns once the termination sequence is scheduled; use wait() to
        await the exit. Repeated or concurrent calls collapse to a single
        termination and a single exit event.

        Args:
            run_id: Run to stop.
            force: Kill immediately instead of signalling gracefully first.

        Raises:
            RunNotFoundError: If the run id was never issued.

        """
        supervised = self._active.get(run_id)
        if supervised is None:
            if run_id in self._archive:
                logger.debug("Stop ignored for terminal run %s", run_id[:8])
                return
            raise RunNotFoundError(run_id)

        record = supervised.record
        if record.state is not RunState.RUNNING:
            logger.debug("Stop ignored for run %s in state %s", run_id[:8], record.state.value)
            return

        # Must be set before any signal so the exit is classified as intentional
        record.stop_requested = True
        record.transition(RunState.STOPPING)
        logger.info("Stopping run %s (%s) PID %s, force=%s", run_id[:8], record.label, record.pid, force)
        self.broadcaster.publish(
            RunStatusEvent(
                run_id=run_id,
                workspace_id=record.workspace_id,
                state=record.state.value,
                pid=record.pid,
            )
        )
        supervised.stop_task = asyncio.create_task(self._terminate(supervised, force))

    async def wait(self, run_id: str) -> RunRecord:
        """Wait until a run is terminal.

        Returns:
            The archived record.

        Raises:
            RunNotFoundError: If the run id is unknown.

        """
        supervised = self._active.get(run_id)
        if supervised is not None:
            return await asyncio.shield(supervised.done)
        return self.get(run_id)

    async def restart(
        self,
        descriptor: ScriptDescriptor,
        *,
        env: Mapping[str, str] | None = None,
        settle_delay: float | None = None,
    ) -> RunHandle:
        """Stop every active run of a script (if any) and start it again.

        The new run reuses the last command, working directory, label and
        workspace attribution recorded for the descriptor.

        Args:
            descriptor: Script to restart.
            env: Replacement environment (defaults to the previous one).
            settle_delay: Seconds between exit and start (default:
                restart_settle_delay). Only applied when a run was stopped.

        Returns:
            Handle of the new run.

        Raises:
            RunNotFoundError: If the script was never started.
            SpawnFailure: If the new process cannot be started.

        """
        launch = self._last_launch.get(descriptor.key)
        if launch is None:
            raise RunNotFoundError(f"{descriptor.project_id}:{descriptor.name}")

        active_ids = list(self._by_descriptor.get(descriptor.key, []))
        if active_ids:
            for run_id in active_ids:
                await self.stop(run_id)
            await asyncio.gather(*(self.wait(run_id) for run_id in active_ids))
            delay = self.restart_settle_delay if settle_delay is None else settle_delay
            if delay > 0:
                await asyncio.sleep(delay)

        logger.info("Restarting %s:%s", descriptor.project_id, descriptor.name)
        return await self.start(
            launch.command,
            launch.cwd,
            launch.env if env is None else env,
            launch.label,
            descriptor=descriptor,
            workspace_id=launch.workspace_id,
            workspace_item_id=launch.workspace_item_id,
        )

    def annotate_port(self, run_id: str, port: int | None) -> None:
        """Record the primary bound port of an active run."""
        supervised = self._active.get(run_id)
        if supervised is not None:
            supervised.record.port = port

    async def shutdown(self, *, force: bool = False) -> None:
        """Stop every active run and wait for all of them."""
        run_ids = list(self._active)
        if not run_ids:
            return
        logger.info("Stopping %d active runs", len(run_ids))
        for run_id in run_ids:
            await self.stop(run_id, force=force)
        await asyncio.gather(*(self.wait(run_id) for run_id in run_ids), return_exceptions=True)

    async def kill_pid(self, pid: int, *, grace_period: float = 3.0) -> None:
        """Terminate a process tree the hub did not start.

        Managed runs are routed through stop() so their exit is classified.

        Raises:
            NotFoundError: If no such process exists.

        """
        for supervised in self._active.values():
            if supervised.record.pid == pid:
                await self.stop(supervised.record.run_id)
                return

        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            raise NotFoundError("process", pid) from None

        procs = [root, *_descendants(pid)]
        logger.info("Terminating external process %d (%d in tree)", pid, len(procs))
        for proc in procs:
            with contextlib.suppress(psutil.Error):
                proc.terminate()
        _, alive = await asyncio.to_thread(psutil.wait_procs, procs, timeout=grace_period)
        for proc in alive:
            logger.warning("Killing stubborn process %d", proc.pid)
            with contextlib.suppress(psutil.Error):
                proc.kill()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _spawn(
        self,
        command: Command,
        cwd: Path,
        env: dict[str, str],
    ) -> asyncio.subprocess.Process:
        if not cwd.is_dir():
            raise NotADirectoryError(f"Working directory does not exist: {cwd}")

        spawn_command, use_shell = normalize_command(command)
        kwargs: dict[str, object] = {
            "cwd": str(cwd),
            "env": env,
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
        }
        if IS_POSIX:
            # Own session: the whole tree can be signalled through its group
            kwargs["start_new_session"] = True
        else:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

        if use_shell:
            return await asyncio.create_subprocess_shell(cast(str, spawn_command), **kwargs)  # type: ignore[arg-type]
        return await asyncio.create_subprocess_exec(*spawn_command, **kwargs)  # type: ignore[arg-type]

    def _fail_spawn(self, record: RunRecord, error: Exception) -> NoReturn:
        record.transition(RunState.FAILED)
        record.stopped_at = datetime.now(UTC)
        message = f"Failed to start {record.label}: {error}"
        logger.error("Run %s: %s", record.run_id[:8], message)
        self.broadcaster.publish(
            SpawnErrorEvent(
                run_id=record.run_id,
                workspace_id=record.workspace_id,
                message=message,
                started_at=record.started_at,
            )
        )
        raise SpawnFailure(message, run_id=record.run_id, record=record) from error

    async def _pump(self, record: RunRecord, stream: asyncio.StreamReader, source: Stream) -> None:
        """Forward one pipe to the broadcaster in chunks."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await stream.read(self.chunk_size)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._publish_chunk(record, text, source)
            tail = decoder.decode(b"", final=True)
            if tail:
                self._publish_chunk(record, tail, source)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error reading %s of run %s", source.value, record.run_id[:8])

    def _publish_chunk(self, record: RunRecord, text: str, source: Stream) -> None:
        self.broadcaster.publish(
            LogChunk(
                run_id=record.run_id,
                workspace_id=record.workspace_id,
                chunk=text,
                stream=source,
            )
        )

    async def _watch(self, supervised: _Supervised) -> None:
        """Wait for the process to exit, drain output, then finalize."""
        returncode = await supervised.process.wait()
        if supervised.readers:
            _, pending = await asyncio.wait(supervised.readers, timeout=DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
            if pending:
                logger.debug(
                    "Run %s: output still open after exit, %d reader(s) cancelled",
                    supervised.record.run_id[:8],
                    len(pending),
                )
                await asyncio.gather(*pending, return_exceptions=True)
        self._finalize(supervised, returncode)

    def _finalize(self, supervised: _Supervised, returncode: int) -> None:
        if supervised.finalized:
            return
        supervised.finalized = True
        record = supervised.record

        record.exit_code = returncode
        record.stopped_at = datetime.now(UTC)
        record.was_stopped = record.stop_requested
        if record.stop_requested:
            record.transition(RunState.STOPPED)
        elif returncode == 0:
            record.transition(RunState.EXITED)
        else:
            record.transition(RunState.CRASHED)

        self._active.pop(record.run_id, None)
        if record.descriptor is not None:
            run_ids = self._by_descriptor.get(record.descriptor.key, [])
            if record.run_id in run_ids:
                run_ids.remove(record.run_id)
            if not run_ids:
                self._by_descriptor.pop(record.descriptor.key, None)
        self._archive[record.run_id] = record
        while len(self._archive) > self.history_size:
            self._archive.popitem(last=False)

        if record.state is RunState.CRASHED:
            logger.warning(
                "Run %s (%s) crashed with exit code %s",
                record.run_id[:8],
                record.label,
                returncode,
            )
        else:
            logger.info(
                "Run %s (%s) %s with exit code %s",
                record.run_id[:8],
                record.label,
                record.state.value,
                returncode,
            )

        if self._history_sink is not None:
            try:
                self._history_sink(record)
            except Exception:
                logger.exception("History sink failed for run %s", record.run_id[:8])

        self.broadcaster.publish(
            ExitEvent(
                run_id=record.run_id,
                workspace_id=record.workspace_id,
                exit_code=returncode,
                was_stopped=record.was_stopped,
                state=record.state.value,
                started_at=record.started_at,
                finished_at=record.stopped_at,
            )
        )
        if not supervised.done.done():
            supervised.done.set_result(record)

    async def _terminate(self, supervised: _Supervised, force: bool) -> None:
        """Signal the process tree, escalating to kill after the grace period."""
        record = supervised.record
        pid = supervised.process.pid
        # Collected before signalling: children are reparented once the parent dies
        descendants = _descendants(pid)

        if not force:
            self._signal_tree(supervised, descendants, graceful=True)
            if await self._wait_tree(supervised, descendants, self.grace_period):
                return
            logger.warning(
                "Run %s (%s) did not stop within %.1fs, killing",
                record.run_id[:8],
                record.label,
                self.grace_period,
            )
            self._publish_chunk(
                record,
                f"[localhost-hub] process did not stop within {self.grace_period:g}s, forcing termination\n",
                Stream.STDERR,
            )

        descendants |= _descendants(pid)
        self._signal_tree(supervised, descendants, graceful=False)

    def _signal_tree(
        self,
        supervised: _Supervised,
        descendants: set[psutil.Process],
        graceful: bool,
    ) -> None:
        process = supervised.process
        if IS_POSIX:
            sig = signal.SIGTERM if graceful else signal.SIGKILL
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, sig)
        with contextlib.suppress(ProcessLookupError):
            if graceful:
                process.terminate()
            else:
                process.kill()
        for proc in descendants:
            with contextlib.suppress(psutil.Error):
                if graceful:
                    proc.terminate()
                else:
                    proc.kill()

    async def _wait_tree(
        self,
        supervised: _Supervised,
        descendants: set[psutil.Process],
        timeout: float,
    ) -> bool:
        """Wait for the process and its descendants to exit.

        Returns:
            True if everything exited within the timeout.

        """
        deadline = time.monotonic() + timeout
        try:
            await asyncio.wait_for(supervised.process.wait(), timeout=timeout)
        except TimeoutError:
            return False
        if not descendants:
            return True
        remaining = max(0.0, deadline - time.monotonic())
        # Grandchildren only: psutil must never reap our own child
        _, alive = await asyncio.to_thread(psutil.wait_procs, list(descendants), timeout=remaining)
        return not alive
