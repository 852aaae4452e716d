"""Event types published by the orchestration engine.

Every event carries the run and/or workspace it belongs to so the
broadcaster can route it, plus a capture timestamp. Events serialise to
plain dicts (JSON responses, history) and to SSE frames.
"""

import json
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar


class EventKind(StrEnum):
    """Event type names as they appear on the wire."""

    LOG = "log"
    EXIT = "exit"
    SPAWN_ERROR = "spawn_error"
    STATUS = "status"
    PORT = "port"
    WORKSPACE_STATUS = "workspace_status"
    TRUNCATED = "truncated"


class Stream(StrEnum):
    """Origin of a captured output chunk."""

    STDOUT = "stdout"
    STDERR = "stderr"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, kw_only=True)
class Event:
    """Base class for all events."""

    kind: ClassVar[EventKind]

    run_id: str | None = None
    workspace_id: str | None = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict."""
        data: dict[str, Any] = {"type": self.kind.value}
        for f in fields(self):
            name = f.name
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, StrEnum):
                value = value.value
            elif isinstance(value, tuple):
                value = list(value)
            data[name] = value
        return data

    def format_sse(self, event_id: str | None = None) -> str:
        """Format event for the SSE protocol.

        Args:
            event_id: Optional id line for client reconnection.

        Returns:
            SSE-formatted string ready for transmission.

        """
        lines = []
        if event_id:
            lines.append(f"id: {event_id}")
        lines.append(f"event: {self.kind.value}")
        data_str = json.dumps(self.to_dict())
        for line in data_str.split("\n"):
            lines.append(f"data: {line}")
        lines.append("")  # Empty line terminates message
        return "\n".join(lines) + "\n"


@dataclass(frozen=True, kw_only=True)
class LogChunk(Event):
    """Captured output of a run."""

    kind: ClassVar[EventKind] = EventKind.LOG

    chunk: str
    stream: Stream = Stream.STDOUT


@dataclass(frozen=True, kw_only=True)
class ExitEvent(Event):
    """A run reached a terminal state after its process exited."""

    kind: ClassVar[EventKind] = EventKind.EXIT

    exit_code: int | None
    was_stopped: bool
    state: str
    started_at: datetime
    finished_at: datetime


@dataclass(frozen=True, kw_only=True)
class SpawnErrorEvent(Event):
    """A run could not be started."""

    kind: ClassVar[EventKind] = EventKind.SPAWN_ERROR

    message: str
    started_at: datetime


@dataclass(frozen=True, kw_only=True)
class RunStatusEvent(Event):
    """A run changed lifecycle state."""

    kind: ClassVar[EventKind] = EventKind.STATUS

    state: str
    pid: int | None = None


@dataclass(frozen=True, kw_only=True)
class PortEvent(Event):
    """PortWatcher's latest view of a run's listening sockets.

    Attributes:
        ports: All listening ports owned by the run's process tree.
        port: Primary port (expected port if bound, else the lowest).
        expected_port: Configured expected port, if any.
        matches: True/False against the expected port, None without one.

    """

    kind: ClassVar[EventKind] = EventKind.PORT

    ports: tuple[int, ...] = ()
    port: int | None = None
    expected_port: int | None = None
    matches: bool | None = None


@dataclass(frozen=True, kw_only=True)
class WorkspaceStatusEvent(Event):
    """Aggregate status of a workspace."""

    kind: ClassVar[EventKind] = EventKind.WORKSPACE_STATUS

    active_run_count: int
    error: str | None = None


@dataclass(frozen=True, kw_only=True)
class TruncationMarker(Event):
    """Stands in for events dropped from a bounded buffer."""

    kind: ClassVar[EventKind] = EventKind.TRUNCATED

    dropped: int
