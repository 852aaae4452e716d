"""Workspace route handlers.

Provides:
- GET  /api/workspaces - workspaces with their active run counts
- GET  /api/workspaces/{workspace_id} - one workspace and its state
- POST /api/workspaces/{workspace_id}/start
- POST /api/workspaces/{workspace_id}/stop
- POST /api/workspaces/{workspace_id}/restart
- POST /api/workspaces/{workspace_id}/items/{item_id}/restart
- GET  /api/workspaces/{workspace_id}/events - SSE stream of the workspace
"""

import logging
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from localhost_hub.orchestrator import Hub, Workspace
from localhost_hub.server.responses import SSE_HEADERS, error_response, get_hub
from localhost_hub.server.sse import event_stream

logger = logging.getLogger(__name__)


def _workspace_summary(hub: Hub, workspace: Workspace) -> dict[str, Any]:
    state = hub.workspaces.state(workspace.id)
    return {
        "id": workspace.id,
        "name": workspace.name,
        "description": workspace.description,
        "items": [item.model_dump(mode="json") for item in workspace.ordered_items()],
        "running": hub.workspaces.is_running(workspace.id),
        "error": hub.workspaces.last_error(workspace.id),
        **state.to_summary(),
    }


async def list_workspaces(request: Request) -> JSONResponse:
    """GET /api/workspaces - List workspaces."""
    hub = get_hub(request)
    return JSONResponse({"workspaces": [_workspace_summary(hub, ws) for ws in hub.list_workspaces()]})


async def get_workspace(request: Request) -> JSONResponse:
    """GET /api/workspaces/{workspace_id}."""
    hub = get_hub(request)
    try:
        workspace = hub.repository.get_workspace(request.path_params["workspace_id"])
    except Exception as e:
        return error_response(e)
    return JSONResponse(_workspace_summary(hub, workspace))


async def start_workspace(request: Request) -> JSONResponse:
    """POST /api/workspaces/{workspace_id}/start.

    Returns:
        200: State after parallel items launched (sequential chain continues).
        404: Unknown workspace.
        409: Workspace empty or already running.

    """
    hub = get_hub(request)
    try:
        state = await hub.start_workspace(request.path_params["workspace_id"])
    except Exception as e:
        return error_response(e)
    return JSONResponse(state.to_summary())


async def stop_workspace(request: Request) -> JSONResponse:
    """POST /api/workspaces/{workspace_id}/stop - Returns once all runs ended."""
    hub = get_hub(request)
    try:
        state = await hub.stop_workspace(request.path_params["workspace_id"])
    except Exception as e:
        return error_response(e)
    return JSONResponse(state.to_summary())


async def restart_workspace(request: Request) -> JSONResponse:
    """POST /api/workspaces/{workspace_id}/restart."""
    hub = get_hub(request)
    try:
        state = await hub.restart_workspace(request.path_params["workspace_id"])
    except Exception as e:
        return error_response(e)
    return JSONResponse(state.to_summary())


async def restart_workspace_item(request: Request) -> JSONResponse:
    """POST /api/workspaces/{workspace_id}/items/{item_id}/restart.

    Returns:
        200: Handle of the item's new run.
        404: Unknown workspace or item.
        409: Item failed to start.

    """
    hub = get_hub(request)
    try:
        handle = await hub.restart_workspace_item(
            request.path_params["workspace_id"],
            request.path_params["item_id"],
        )
    except Exception as e:
        return error_response(e)
    return JSONResponse(handle.to_dict())


async def workspace_events(request: Request) -> StreamingResponse | JSONResponse:
    """GET /api/workspaces/{workspace_id}/events - SSE stream of a workspace."""
    hub = get_hub(request)
    workspace_id = request.path_params["workspace_id"]
    try:
        hub.repository.get_workspace(workspace_id)
    except Exception as e:
        return error_response(e)

    subscription = hub.broadcaster.subscribe(workspace_id=workspace_id)
    return StreamingResponse(
        event_stream(subscription, hub.config.events.heartbeat_interval),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


routes = [
    Route("/api/workspaces", list_workspaces, methods=["GET"]),
    Route("/api/workspaces/{workspace_id}", get_workspace, methods=["GET"]),
    Route("/api/workspaces/{workspace_id}/start", start_workspace, methods=["POST"]),
    Route("/api/workspaces/{workspace_id}/stop", stop_workspace, methods=["POST"]),
    Route("/api/workspaces/{workspace_id}/restart", restart_workspace, methods=["POST"]),
    Route(
        "/api/workspaces/{workspace_id}/items/{item_id}/restart",
        restart_workspace_item,
        methods=["POST"],
    ),
    Route("/api/workspaces/{workspace_id}/events", workspace_events, methods=["GET"]),
]
