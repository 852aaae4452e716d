"""Global event stream.

Provides:
- GET /api/events - SSE stream of every event (``?kinds=log,exit`` filters)
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from localhost_hub.events import EventKind
from localhost_hub.server.responses import SSE_HEADERS, get_hub
from localhost_hub.server.sse import event_stream

logger = logging.getLogger(__name__)


async def all_events(request: Request) -> StreamingResponse | JSONResponse:
    """GET /api/events - SSE stream of all runs and workspaces."""
    hub = get_hub(request)
    kinds = None
    raw = request.query_params.get("kinds")
    if raw:
        try:
            kinds = [EventKind(kind.strip()) for kind in raw.split(",") if kind.strip()]
        except ValueError as e:
            return JSONResponse({"error": f"Unknown event kind: {e}"}, status_code=400)

    subscription = hub.broadcaster.subscribe(kinds=kinds, replay=False)
    return StreamingResponse(
        event_stream(subscription, hub.config.events.heartbeat_interval),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


routes = [
    Route("/api/events", all_events, methods=["GET"]),
]
