"""Exception hierarchy for localhost-hub.

All errors raised by the orchestration core derive from LocalhostHubError so
callers (HTTP routes, CLI commands) can catch one base class.

Public API:
    LocalhostHubError: Base class
    ConfigError: Invalid or unreadable configuration
    NotFoundError: Repository lookup failed
    SpawnFailure: Process could not be started
    RunNotFoundError: Unknown run identifier
    InvalidTransitionError: Illegal run state transition
    ProfileNotFoundError: Unknown environment profile
    WorkspaceError: Workspace command rejected
    WorkspaceItemFailure: Workspace item failed to start or settle
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from localhost_hub.orchestrator.models import RunRecord

__all__ = [
    "ConfigError",
    "InvalidTransitionError",
    "LocalhostHubError",
    "NotFoundError",
    "ProfileNotFoundError",
    "RunNotFoundError",
    "SpawnFailure",
    "WorkspaceError",
    "WorkspaceItemFailure",
]


class LocalhostHubError(Exception):
    """Base exception for all localhost-hub errors."""


class ConfigError(LocalhostHubError):
    """Configuration could not be loaded or failed validation."""


class NotFoundError(LocalhostHubError):
    """A project, script, profile or workspace does not exist.

    Attributes:
        kind: Entity kind (e.g. "project", "workspace").
        key: Identifier that was looked up.

    """

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind.capitalize()} not found: {key}")
        self.kind = kind
        self.key = key


class SpawnFailure(LocalhostHubError):
    """The operating system refused to start a run.

    Raised synchronously from RunManager.start. The run never enters the
    active-run table.

    Attributes:
        run_id: Identifier that was reserved for the failed run.
        record: Transient record left in the FAILED state.

    """

    def __init__(
        self,
        message: str,
        run_id: str = "",
        record: RunRecord | None = None,
    ) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.record = record


class RunNotFoundError(LocalhostHubError):
    """No run is known under the given identifier or descriptor."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class InvalidTransitionError(LocalhostHubError):
    """A run state transition violated the state machine."""

    def __init__(self, run_id: str, current: str, target: str) -> None:
        super().__init__(f"Run {run_id}: cannot transition from {current} to {target}")
        self.run_id = run_id
        self.current = current
        self.target = target


class ProfileNotFoundError(NotFoundError):
    """Selected environment profile does not belong to the project."""

    def __init__(self, project_id: str, profile_id: object) -> None:
        super().__init__("env profile", profile_id)
        self.project_id = project_id


class WorkspaceError(LocalhostHubError):
    """Workspace command cannot be executed in the current state."""

    def __init__(self, message: str, workspace_id: object = None) -> None:
        super().__init__(message)
        self.workspace_id = workspace_id


class WorkspaceItemFailure(WorkspaceError):
    """A workspace item failed to spawn or did not settle.

    Attributes:
        item_id: Identifier of the failed workspace item.
        run_id: Run that failed, empty if the spawn itself failed.
        reason: Short machine-readable reason
            ("spawn_failed", "crashed", "stopped", "settle_timeout").

    """

    def __init__(
        self,
        message: str,
        workspace_id: object = None,
        item_id: object = None,
        run_id: str = "",
        reason: str = "",
    ) -> None:
        super().__init__(message, workspace_id)
        self.item_id = item_id
        self.run_id = run_id
        self.reason = reason
