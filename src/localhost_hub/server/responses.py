"""Shared helpers for route handlers."""

import json
import logging
from typing import Any

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from localhost_hub.core.exceptions import (
    LocalhostHubError,
    NotFoundError,
    RunNotFoundError,
    SpawnFailure,
    WorkspaceError,
    WorkspaceItemFailure,
)
from localhost_hub.orchestrator import Hub

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_hub(request: Request) -> Hub:
    """Get the hub from app state."""
    return request.app.state.hub


async def read_json_body(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object (empty body gives {}).

    Raises:
        ValueError: If the body is not a JSON object.

    """
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValueError("JSON body must be an object")
    return body


def error_response(exc: Exception) -> JSONResponse:
    """Map an exception to a JSON error response.

    404 for unknown entities, 409 for rejected workspace commands, 422 for
    spawn failures, 400 for bad input and 500 for anything else.
    """
    if isinstance(exc, NotFoundError | RunNotFoundError):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, WorkspaceItemFailure):
        return JSONResponse(
            {"error": str(exc), "item_id": exc.item_id, "run_id": exc.run_id, "reason": exc.reason},
            status_code=409,
        )
    if isinstance(exc, WorkspaceError):
        return JSONResponse({"error": str(exc)}, status_code=409)
    if isinstance(exc, SpawnFailure):
        return JSONResponse({"error": str(exc), "run_id": exc.run_id}, status_code=422)
    if isinstance(exc, ValidationError | ValueError | TypeError):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, LocalhostHubError):
        return JSONResponse({"error": str(exc)}, status_code=400)
    logger.exception("Unhandled error in route handler")
    return JSONResponse({"error": str(exc)}, status_code=500)
