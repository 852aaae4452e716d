"""Tests for RunManager using real subprocesses."""

import os
import subprocess
import sys

import pytest

from localhost_hub.core.exceptions import NotFoundError, RunNotFoundError, SpawnFailure
from localhost_hub.events import (
    EventBroadcaster,
    EventKind,
    ExitEvent,
    LogChunk,
    RunStatusEvent,
    SpawnErrorEvent,
    Stream,
)
from localhost_hub.orchestrator import RunManager, RunRecord, RunState, ScriptDescriptor
from tests.fakes import IGNORES_SIGTERM, LONG_RUNNING, collect_until, eventually, py

ENV = dict(os.environ)


def output_of(events, stream: Stream = Stream.STDOUT) -> str:
    return "".join(e.chunk for e in events if isinstance(e, LogChunk) and e.stream is stream)


def exits(broadcaster: EventBroadcaster, run_id: str) -> list[ExitEvent]:
    return [e for e in broadcaster.history(run_id) if isinstance(e, ExitEvent)]


async def wait_for_output(broadcaster: EventBroadcaster, run_id: str, text: str) -> None:
    await eventually(lambda: text in output_of(broadcaster.history(run_id)))


class TestStart:
    """Spawning and output capture."""

    async def test_handle_and_running_state(self, run_manager: RunManager, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")

        record = run_manager.get(handle.run_id)
        assert handle.pid > 0
        assert record.pid == handle.pid
        assert record.state is RunState.RUNNING
        assert record in run_manager.active_runs()

    async def test_status_event_published(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")

        statuses = [e for e in broadcaster.history(handle.run_id) if isinstance(e, RunStatusEvent)]
        assert statuses[0].state == "running"
        assert statuses[0].pid == handle.pid

    async def test_stdout_and_stderr_streamed(self, run_manager: RunManager, broadcaster, tmp_path):
        command = py("import sys; print('to out', flush=True); sys.stderr.write('to err')")
        handle = await run_manager.start(command, tmp_path, ENV, "talker")

        await run_manager.wait(handle.run_id)
        events = broadcaster.history(handle.run_id)

        assert "to out" in output_of(events, Stream.STDOUT)
        assert "to err" in output_of(events, Stream.STDERR)

    async def test_output_precedes_exit_event(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(py("print('last words')"), tmp_path, ENV, "talker")

        await run_manager.wait(handle.run_id)
        kinds = [e.kind for e in broadcaster.history(handle.run_id)]

        assert kinds[-1] is EventKind.EXIT
        assert EventKind.LOG in kinds[:-1]

    async def test_multibyte_split_across_chunks(self, broadcaster, tmp_path):
        manager = RunManager(broadcaster, chunk_size=1)
        env = {**ENV, "PYTHONIOENCODING": "utf-8"}
        handle = await manager.start(py("print('h\\u00e9llo \\u2713')"), tmp_path, env, "utf8")

        await manager.wait(handle.run_id)

        assert output_of(broadcaster.history(handle.run_id)).strip() == "héllo ✓"

    async def test_environment_passed(self, run_manager: RunManager, broadcaster, tmp_path):
        env = {**ENV, "HUB_TEST_VALUE": "from-env"}
        handle = await run_manager.start(
            py("import os; print(os.environ['HUB_TEST_VALUE'])"), tmp_path, env, "env"
        )

        await run_manager.wait(handle.run_id)

        assert "from-env" in output_of(broadcaster.history(handle.run_id))

    async def test_working_directory(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(py("import os; print(os.getcwd())"), tmp_path, ENV, "cwd")

        await run_manager.wait(handle.run_id)

        assert os.path.samefile(output_of(broadcaster.history(handle.run_id)).strip(), tmp_path)

    async def test_shell_string(self, run_manager: RunManager, broadcaster, tmp_path):
        command = f'"{sys.executable}" -c "print(1 + 1)"'
        handle = await run_manager.start(command, tmp_path, ENV, "shell")

        record = await run_manager.wait(handle.run_id)

        assert record.state is RunState.EXITED
        assert "2" in output_of(broadcaster.history(handle.run_id))


class TestSpawnFailure:
    """Spawn errors are raised synchronously and published."""

    async def test_missing_cwd(self, run_manager: RunManager, broadcaster, tmp_path):
        sub = broadcaster.subscribe(kinds=[EventKind.SPAWN_ERROR])

        with pytest.raises(SpawnFailure) as exc_info:
            await run_manager.start(LONG_RUNNING, tmp_path / "missing", ENV, "nowhere")

        event = await sub.get(timeout=1)
        assert isinstance(event, SpawnErrorEvent)
        assert event.run_id == exc_info.value.run_id
        assert exc_info.value.record.state is RunState.FAILED
        assert run_manager.active_runs() == []

    async def test_missing_executable(self, run_manager: RunManager, tmp_path):
        with pytest.raises(SpawnFailure):
            await run_manager.start(["definitely-not-a-real-binary-xyz"], tmp_path, ENV, "ghost")

    async def test_empty_command(self, run_manager: RunManager, tmp_path):
        with pytest.raises(SpawnFailure):
            await run_manager.start([], tmp_path, ENV, "empty")


class TestExitClassification:
    """Terminal state depends on exit code and stop intent."""

    async def test_exit_zero_is_exited(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(py("pass"), tmp_path, ENV, "ok")

        record = await run_manager.wait(handle.run_id)

        assert record.state is RunState.EXITED
        assert record.exit_code == 0
        assert record.was_stopped is False
        assert record.stopped_at is not None

    async def test_nonzero_is_crashed(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(py("import sys; sys.exit(3)"), tmp_path, ENV, "bad")

        record = await run_manager.wait(handle.run_id)
        (event,) = exits(broadcaster, handle.run_id)

        assert record.state is RunState.CRASHED
        assert event.exit_code == 3
        assert event.was_stopped is False
        assert event.state == "crashed"

    async def test_terminal_record_archived(self, run_manager: RunManager, tmp_path):
        handle = await run_manager.start(py("pass"), tmp_path, ENV, "ok")

        await run_manager.wait(handle.run_id)

        assert run_manager.active_runs() == []
        assert run_manager.get(handle.run_id) in run_manager.history()

    async def test_history_sink_called_once(self, broadcaster, tmp_path):
        sunk: list[RunRecord] = []
        manager = RunManager(broadcaster, history_sink=sunk.append)
        handle = await manager.start(py("pass"), tmp_path, ENV, "ok")

        await manager.wait(handle.run_id)

        assert [r.run_id for r in sunk] == [handle.run_id]

    async def test_failing_history_sink_does_not_break_exit(self, broadcaster, tmp_path):
        def sink(record: RunRecord) -> None:
            raise OSError("disk full")

        manager = RunManager(broadcaster, history_sink=sink)
        handle = await manager.start(py("pass"), tmp_path, ENV, "ok")

        record = await manager.wait(handle.run_id)

        assert record.state is RunState.EXITED
        assert len(exits(broadcaster, handle.run_id)) == 1


class TestStop:
    """Graceful and forced termination."""

    async def test_stop_marks_was_stopped(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")
        await wait_for_output(broadcaster, handle.run_id, "ready")

        await run_manager.stop(handle.run_id)
        record = await run_manager.wait(handle.run_id)

        assert record.state is RunState.STOPPED
        assert record.was_stopped is True
        (event,) = exits(broadcaster, handle.run_id)
        assert event.was_stopped is True

    async def test_stopping_state_published(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")
        sub = broadcaster.subscribe(run_id=handle.run_id, replay=False)

        await run_manager.stop(handle.run_id)
        events = await collect_until(sub, lambda e: e.kind is EventKind.EXIT)

        states = [e.state for e in events if isinstance(e, RunStatusEvent)]
        assert states == ["stopping"]

    async def test_double_stop_single_exit(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")

        await run_manager.stop(handle.run_id)
        await run_manager.stop(handle.run_id)
        await run_manager.wait(handle.run_id)
        await run_manager.stop(handle.run_id)

        assert len(exits(broadcaster, handle.run_id)) == 1

    async def test_unknown_run(self, run_manager: RunManager):
        with pytest.raises(RunNotFoundError):
            await run_manager.stop("no-such-run")

    async def test_sigterm_ignored_escalates_to_kill(self, run_manager: RunManager, broadcaster, tmp_path):
        """Process ignoring SIGTERM is killed after the grace period."""
        if sys.platform == "win32":
            pytest.skip("POSIX signals only")
        handle = await run_manager.start(IGNORES_SIGTERM, tmp_path, ENV, "stubborn")
        await wait_for_output(broadcaster, handle.run_id, "armed")

        await run_manager.stop(handle.run_id)
        record = await run_manager.wait(handle.run_id)

        assert record.state is RunState.STOPPED
        assert record.was_stopped is True
        assert "forcing termination" in output_of(broadcaster.history(handle.run_id), Stream.STDERR)

    async def test_force_stop(self, run_manager: RunManager, broadcaster, tmp_path):
        handle = await run_manager.start(IGNORES_SIGTERM, tmp_path, ENV, "stubborn")
        await wait_for_output(broadcaster, handle.run_id, "armed")

        await run_manager.stop(handle.run_id, force=True)
        record = await run_manager.wait(handle.run_id)

        assert record.state is RunState.STOPPED
        assert "forcing termination" not in output_of(broadcaster.history(handle.run_id), Stream.STDERR)

    async def test_shutdown_stops_everything(self, broadcaster, tmp_path):
        manager = RunManager(broadcaster, grace_period=1.0)
        handles = [await manager.start(LONG_RUNNING, tmp_path, ENV, f"s{i}") for i in range(3)]

        await manager.shutdown()

        assert manager.active_runs() == []
        for handle in handles:
            assert manager.get(handle.run_id).state is RunState.STOPPED


class TestRestart:
    """restart() stops the active run and starts it again."""

    @pytest.fixture
    def descriptor(self) -> ScriptDescriptor:
        return ScriptDescriptor(project_id="web", name="serve")

    async def test_restart_replaces_run(self, run_manager: RunManager, broadcaster, tmp_path, descriptor):
        first = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "serve", descriptor=descriptor)

        second = await run_manager.restart(descriptor)

        assert second.run_id != first.run_id
        assert run_manager.get(first.run_id).state is RunState.STOPPED
        assert run_manager.active_for(descriptor).run_id == second.run_id
        assert run_manager.get(second.run_id).label == "serve"

    async def test_restart_stops_all_runs_of_descriptor(self, run_manager: RunManager, tmp_path, descriptor):
        first = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "serve", descriptor=descriptor)
        second = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "serve", descriptor=descriptor)
        assert run_manager.active_for(descriptor).run_id == second.run_id

        third = await run_manager.restart(descriptor)

        assert [r.run_id for r in run_manager.active_runs()] == [third.run_id]
        assert run_manager.get(first.run_id).was_stopped is True
        assert run_manager.get(second.run_id).was_stopped is True

    async def test_active_for_falls_back_to_older_run(self, run_manager: RunManager, tmp_path, descriptor):
        first = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "serve", descriptor=descriptor)
        second = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "serve", descriptor=descriptor)

        await run_manager.stop(second.run_id)
        await run_manager.wait(second.run_id)

        assert run_manager.active_for(descriptor).run_id == first.run_id

    async def test_restart_after_exit(self, run_manager: RunManager, tmp_path, descriptor):
        first = await run_manager.start(py("pass"), tmp_path, ENV, "serve", descriptor=descriptor)
        await run_manager.wait(first.run_id)

        second = await run_manager.restart(descriptor)

        assert second.run_id != first.run_id
        record = await run_manager.wait(second.run_id)
        assert record.state is RunState.EXITED

    async def test_restart_keeps_workspace_attribution(self, run_manager: RunManager, tmp_path, descriptor):
        await run_manager.start(
            LONG_RUNNING, tmp_path, ENV, "serve", descriptor=descriptor, workspace_id="dev", workspace_item_id="web"
        )

        handle = await run_manager.restart(descriptor)

        record = run_manager.get(handle.run_id)
        assert (record.workspace_id, record.workspace_item_id) == ("dev", "web")
        assert [r.run_id for r in run_manager.runs_for_workspace("dev")] == [handle.run_id]

    async def test_restart_never_started(self, run_manager: RunManager, descriptor):
        with pytest.raises(RunNotFoundError):
            await run_manager.restart(descriptor)


class TestQueries:
    async def test_get_unknown(self, run_manager: RunManager):
        with pytest.raises(RunNotFoundError):
            run_manager.get("nope")

    async def test_annotate_port(self, run_manager: RunManager, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")

        run_manager.annotate_port(handle.run_id, 4000)

        assert run_manager.get(handle.run_id).port == 4000

    async def test_history_bounded(self, broadcaster, tmp_path):
        manager = RunManager(broadcaster, history_size=2)
        for _ in range(3):
            handle = await manager.start(py("pass"), tmp_path, ENV, "ok")
            await manager.wait(handle.run_id)

        assert len(manager.history()) == 2


class TestKillPid:
    """kill_pid() for processes the hub did not start."""

    async def test_kills_external_process(self, run_manager: RunManager):
        proc = subprocess.Popen(LONG_RUNNING, stdout=subprocess.DEVNULL)
        try:
            await run_manager.kill_pid(proc.pid, grace_period=2.0)
            await eventually(lambda: proc.poll() is not None)
        finally:
            if proc.poll() is None:
                proc.kill()

    async def test_managed_pid_goes_through_stop(self, run_manager: RunManager, tmp_path):
        handle = await run_manager.start(LONG_RUNNING, tmp_path, ENV, "sleeper")

        await run_manager.kill_pid(handle.pid)
        record = await run_manager.wait(handle.run_id)

        assert record.was_stopped is True

    async def test_missing_process(self, run_manager: RunManager):
        with pytest.raises(NotFoundError):
            await run_manager.kill_pid(2**22 + 12345)
