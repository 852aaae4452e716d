"""Tests for orchestration data models."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from localhost_hub.core.exceptions import InvalidTransitionError
from localhost_hub.orchestrator import Project, RunRecord, RunState, Workspace


def record() -> RunRecord:
    return RunRecord(run_id="r1", label="dev", cwd=Path("/tmp"), command="vite")


class TestRunState:
    """The run state machine."""

    def test_happy_path(self):
        rec = record()

        rec.transition(RunState.RUNNING)
        rec.transition(RunState.STOPPING)
        rec.transition(RunState.STOPPED)

        assert rec.state is RunState.STOPPED
        assert not rec.is_active

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ([], RunState.STOPPED),
            ([RunState.RUNNING], RunState.FAILED),
            ([RunState.RUNNING, RunState.STOPPING], RunState.CRASHED),
            ([RunState.RUNNING, RunState.EXITED], RunState.RUNNING),
            ([RunState.FAILED], RunState.RUNNING),
        ],
    )
    def test_illegal_transitions(self, path, target):
        rec = record()
        for state in path:
            rec.transition(state)

        with pytest.raises(InvalidTransitionError):
            rec.transition(target)

    def test_terminal_states(self):
        assert {s for s in RunState if s.is_terminal} == {
            RunState.STOPPED,
            RunState.EXITED,
            RunState.CRASHED,
            RunState.FAILED,
        }

    def test_summary_omits_environment(self):
        rec = record()
        rec.env = {"TOKEN": "secret"}

        summary = rec.to_summary()

        assert "env" not in summary
        assert summary["state"] == "starting"
        assert summary["project_id"] is None


class TestProject:
    def test_scripts_inherit_project_id(self):
        project = Project.model_validate({
            "id": "web",
            "name": "Web",
            "path": "/srv/web",
            "scripts": [{"name": "dev", "command": "vite"}],
        })

        assert project.get_script("dev").key == ("web", "dev")
        assert project.get_script("missing") is None


class TestWorkspace:
    """Workspace item validation and ordering."""

    def test_items_ordered_by_index(self):
        workspace = Workspace.model_validate({
            "id": "w",
            "name": "W",
            "items": [
                {"id": "b", "project_id": "p", "script_name": "b", "order_index": 2},
                {"id": "a", "project_id": "p", "script_name": "a", "order_index": 1},
            ],
        })

        assert [i.id for i in workspace.ordered_items()] == ["a", "b"]
        assert workspace.get_item("b").script_name == "b"

    def test_duplicate_order_index_rejected(self):
        with pytest.raises(ValidationError, match="order_index"):
            Workspace.model_validate({
                "id": "w",
                "name": "W",
                "items": [
                    {"id": "a", "project_id": "p", "script_name": "a", "order_index": 0},
                    {"id": "b", "project_id": "p", "script_name": "b", "order_index": 0},
                ],
            })

    def test_duplicate_item_id_rejected(self):
        with pytest.raises(ValidationError, match="item id"):
            Workspace.model_validate({
                "id": "w",
                "name": "W",
                "items": [
                    {"id": "a", "project_id": "p", "script_name": "a", "order_index": 0},
                    {"id": "a", "project_id": "p", "script_name": "b", "order_index": 1},
                ],
            })
