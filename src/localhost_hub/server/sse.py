"""Server-sent event streaming of broadcaster subscriptions.

Each stream starts with a ``connected`` frame, then forwards events as they
are published and emits a ``heartbeat`` frame whenever the subscription has
been idle for the heartbeat interval.
"""

import itertools
import json
import logging
import time
from collections.abc import AsyncGenerator
from typing import Any

from localhost_hub.events import Subscription

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 15.0  # seconds
RETRY_MS = 3000


def format_frame(event: str, data: dict[str, Any], retry: int | None = None) -> str:
    """Format a control frame (not backed by an Event) for the SSE protocol."""
    lines = []
    if retry:
        lines.append(f"retry: {retry}")
    lines.append(f"event: {event}")
    for line in json.dumps(data).split("\n"):
        lines.append(f"data: {line}")
    lines.append("")
    return "\n".join(lines) + "\n"


async def event_stream(
    subscription: Subscription,
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for a subscription until it ends or the client leaves.

    Args:
        subscription: Open broadcaster subscription; closed on exit.
        heartbeat_interval: Idle seconds before a heartbeat frame.

    Yields:
        Formatted SSE messages as strings.

    """
    ids = itertools.count(1)
    scope = {"run_id": subscription.run_id, "workspace_id": subscription.workspace_id}
    logger.info("SSE client connected (run=%s, workspace=%s)", subscription.run_id, subscription.workspace_id)
    try:
        yield format_frame("connected", {**scope, "connected": True, "timestamp": time.time()}, retry=RETRY_MS)
        while True:
            try:
                event = await subscription.get(timeout=heartbeat_interval)
            except TimeoutError:
                yield format_frame("heartbeat", {**scope, "timestamp": time.time()})
                continue
            if event is None:
                break
            yield event.format_sse(str(next(ids)))
    finally:
        subscription.unsubscribe()
        logger.info("SSE client disconnected (run=%s, workspace=%s)", subscription.run_id, subscription.workspace_id)
