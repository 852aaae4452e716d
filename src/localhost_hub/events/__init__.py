"""Event broadcasting for localhost-hub.

Provides run/workspace event types and the broadcaster that fans them out
to subscribers with bounded buffering.
"""

from .broadcaster import EventBroadcaster, RunBuffer, Subscription
from .events import (
    Event,
    EventKind,
    ExitEvent,
    LogChunk,
    PortEvent,
    RunStatusEvent,
    SpawnErrorEvent,
    Stream,
    TruncationMarker,
    WorkspaceStatusEvent,
)

__all__ = [
    "Event",
    "EventBroadcaster",
    "EventKind",
    "ExitEvent",
    "LogChunk",
    "PortEvent",
    "RunBuffer",
    "RunStatusEvent",
    "SpawnErrorEvent",
    "Stream",
    "Subscription",
    "TruncationMarker",
    "WorkspaceStatusEvent",
]
