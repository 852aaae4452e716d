"""Data model for the orchestration engine.

Definitions (projects, scripts, env profiles, workspaces) are immutable
pydantic models supplied by the repository. Runtime state (RunRecord,
WorkspaceRunState) is held in dataclasses owned by RunManager.

RunState transitions:
    STARTING → RUNNING (process spawned)
    STARTING → FAILED (spawn refused)
    RUNNING → STOPPING (stop requested)
    RUNNING → EXITED (exit code 0, no stop requested)
    RUNNING → CRASHED (any other exit, no stop requested)
    STOPPING → STOPPED (process gone after stop request)
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from localhost_hub.core.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    """Lifecycle state of one run."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    EXITED = "exited"
    CRASHED = "crashed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """True for states no transition can leave."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({RunState.STOPPED, RunState.EXITED, RunState.CRASHED, RunState.FAILED})

_ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.STARTING: frozenset({RunState.RUNNING, RunState.FAILED}),
    RunState.RUNNING: frozenset({RunState.STOPPING, RunState.EXITED, RunState.CRASHED}),
    RunState.STOPPING: frozenset({RunState.STOPPED}),
}


class RunnerKind(StrEnum):
    """How a script's command is executed."""

    PACKAGE_SCRIPT = "package_script"
    SHELL = "shell"


class RunMode(StrEnum):
    """Relative start ordering of a workspace item."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ScriptDescriptor(BaseModel):
    """One runnable script of a project.

    Attributes:
        project_id: Owning project identifier.
        name: Script name (package.json key or user label).
        command: Command text as declared in the manifest.
        runner: PACKAGE_SCRIPT runs through the package manager, SHELL runs
            the command text through the shell.
        description: Optional human description.

    """

    model_config = ConfigDict(frozen=True)

    project_id: str
    name: str
    command: str = ""
    runner: RunnerKind = RunnerKind.PACKAGE_SCRIPT
    description: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        """(project_id, name) pair identifying the script."""
        return (self.project_id, self.name)


class Project(BaseModel):
    """A discovered project and its scripts."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    path: Path
    scripts: list[ScriptDescriptor] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def fill_script_project_ids(cls, data: Any) -> Any:
        """Scripts nested in a project inherit its id."""
        if isinstance(data, dict) and "id" in data:
            scripts = []
            for script in data.get("scripts") or []:
                if isinstance(script, dict):
                    script = {"project_id": data["id"], **script}
                scripts.append(script)
            data = {**data, "scripts": scripts}
        return data

    def get_script(self, name: str) -> ScriptDescriptor | None:
        """Return the script with the given name, if declared."""
        for script in self.scripts:
            if script.name == name:
                return script
        return None


class EnvVar(BaseModel):
    """One environment variable of a profile."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str = ""
    secret: bool = False


class EnvProfile(BaseModel):
    """Named set of environment variables for a project."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    name: str
    is_default: bool = False
    vars: list[EnvVar] = Field(default_factory=list)

    def as_dict(self) -> dict[str, str]:
        """Variables as a mapping; a later duplicate key wins."""
        return {var.key: var.value for var in self.vars}


class WorkspaceItem(BaseModel):
    """One (project, script) entry of a workspace."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    script_name: str
    env_profile_id: str | None = None
    run_mode: RunMode = RunMode.PARALLEL
    order_index: int = 0


class Workspace(BaseModel):
    """Named, ordered collection of script runs.

    Raises:
        ValueError: If two items share an order index or an id.

    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None
    items: list[WorkspaceItem] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_items(self) -> Self:
        """Order indices and item ids must be unique within the workspace."""
        indices = [item.order_index for item in self.items]
        if len(indices) != len(set(indices)):
            raise ValueError(f"Workspace {self.id}: duplicate order_index among items")
        ids = [item.id for item in self.items]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Workspace {self.id}: duplicate item id")
        return self

    def ordered_items(self) -> list[WorkspaceItem]:
        """Items in display/execution order."""
        return sorted(self.items, key=lambda item: item.order_index)

    def get_item(self, item_id: str) -> WorkspaceItem | None:
        """Return the item with the given id."""
        for item in self.items:
            if item.id == item_id:
                return item
        return None


@dataclass(frozen=True)
class RunHandle:
    """Returned to callers of RunManager.start."""

    run_id: str
    pid: int
    started_at: datetime
    label: str = ""
    command: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "label": self.label,
            "command": self.command,
        }


@dataclass
class RunRecord:
    """Supervision state for one process lifetime.

    Mutated only by RunManager. Once the state is terminal the record is
    archived and never changes again.

    Attributes:
        run_id: Unique identifier, never reused.
        label: Display label (usually the script name).
        cwd: Working directory of the process.
        command: Resolved command as displayed.
        env: Environment snapshot the process was started with.
        descriptor: Script the run belongs to, None for ad hoc commands.
        pid: OS process id, None until spawned.
        state: Current lifecycle state.
        started_at: When start was called.
        stopped_at: When the process was observed to exit.
        exit_code: Process exit code (negative for signals on POSIX).
        stop_requested: Set by stop() before signalling the process.
        was_stopped: Final classification; True iff stop was requested.
        port: Primary bound port discovered by PortWatcher.
        workspace_id: Workspace the run was started for.
        workspace_item_id: Workspace item the run was started for.

    """

    run_id: str
    label: str
    cwd: Path
    command: str
    env: dict[str, str] = field(default_factory=dict, repr=False)
    descriptor: ScriptDescriptor | None = None
    pid: int | None = None
    state: RunState = RunState.STARTING
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stopped_at: datetime | None = None
    exit_code: int | None = None
    stop_requested: bool = False
    was_stopped: bool = False
    port: int | None = None
    workspace_id: str | None = None
    workspace_item_id: str | None = None

    def transition(self, target: RunState) -> None:
        """Move to a new state, enforcing the state machine.

        Raises:
            InvalidTransitionError: If the transition is not allowed.

        """
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(self.run_id, self.state.value, target.value)
        logger.debug("Run %s: %s -> %s", self.run_id[:8], self.state.value, target.value)
        self.state = target

    @property
    def is_active(self) -> bool:
        """True while the process may still be alive."""
        return not self.state.is_terminal

    def handle(self) -> RunHandle:
        """Build the caller-facing handle."""
        return RunHandle(
            run_id=self.run_id,
            pid=self.pid or 0,
            started_at=self.started_at,
            label=self.label,
            command=self.command,
        )

    def to_summary(self) -> dict[str, Any]:
        """Summary dict for API responses and history (environment omitted)."""
        return {
            "run_id": self.run_id,
            "label": self.label,
            "project_id": self.descriptor.project_id if self.descriptor else None,
            "script": self.descriptor.name if self.descriptor else None,
            "cwd": str(self.cwd),
            "command": self.command,
            "pid": self.pid,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "exit_code": self.exit_code,
            "was_stopped": self.was_stopped,
            "port": self.port,
            "workspace_id": self.workspace_id,
            "workspace_item_id": self.workspace_item_id,
        }


@dataclass
class WorkspaceRunState:
    """Transient view of a workspace's active runs, rebuilt on demand."""

    workspace_id: str
    run_ids: set[str] = field(default_factory=set)

    @property
    def active_run_count(self) -> int:
        """Number of active runs attributed to the workspace."""
        return len(self.run_ids)

    def to_summary(self) -> dict[str, Any]:
        """Summary dict for API responses."""
        return {
            "workspace_id": self.workspace_id,
            "active_run_count": self.active_run_count,
            "run_ids": sorted(self.run_ids),
        }
