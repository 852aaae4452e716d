"""Starlette application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from localhost_hub import __version__
from localhost_hub.orchestrator import Hub
from localhost_hub.server.routes import API_ROUTES

logger = logging.getLogger(__name__)


async def health(request: Request) -> JSONResponse:
    """GET /api/health - Liveness and a few counters."""
    hub: Hub = request.app.state.hub
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "active_runs": len(hub.list_runs()),
        "subscribers": hub.broadcaster.subscriber_count,
    })


def create_app(hub: Hub, *, manage_lifecycle: bool = True) -> Starlette:
    """Create the HTTP application around a hub.

    Args:
        hub: Hub serving all requests.
        manage_lifecycle: Start the hub on startup and shut it down (stopping
            every run) on shutdown.

    Returns:
        Starlette application with the hub in ``app.state.hub``.

    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if manage_lifecycle:
            await hub.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await hub.shutdown()

    app = Starlette(
        routes=[Route("/api/health", health, methods=["GET"]), *API_ROUTES],
        lifespan=lifespan,
    )
    app.state.hub = hub
    return app
