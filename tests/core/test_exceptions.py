"""Tests for the exception hierarchy."""

from localhost_hub.core.exceptions import (
    LocalhostHubError,
    NotFoundError,
    ProfileNotFoundError,
    RunNotFoundError,
    SpawnFailure,
    WorkspaceError,
    WorkspaceItemFailure,
)


def test_all_errors_share_base():
    for exc in (
        NotFoundError("project", "x"),
        RunNotFoundError("r1"),
        SpawnFailure("boom"),
        WorkspaceError("busy"),
        WorkspaceItemFailure("failed"),
    ):
        assert isinstance(exc, LocalhostHubError)


def test_not_found_message():
    err = NotFoundError("workspace", "dev")

    assert str(err) == "Workspace not found: dev"
    assert err.kind == "workspace"
    assert err.key == "dev"


def test_profile_not_found_is_not_found():
    err = ProfileNotFoundError("web", "missing")

    assert isinstance(err, NotFoundError)
    assert err.project_id == "web"
    assert "missing" in str(err)


def test_item_failure_carries_context():
    err = WorkspaceItemFailure("api crashed", "dev", item_id="api", run_id="r1", reason="crashed")

    assert isinstance(err, WorkspaceError)
    assert err.workspace_id == "dev"
    assert (err.item_id, err.run_id, err.reason) == ("api", "r1", "crashed")
