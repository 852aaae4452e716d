"""Run control route handlers.

Provides:
- GET  /api/runs - active runs (``?history=1`` adds archived runs)
- POST /api/runs - start a project script or an ad hoc command
- GET  /api/runs/{run_id} - one run
- POST /api/runs/{run_id}/stop - request termination
- POST /api/runs/{run_id}/restart - restart the run's script
- GET  /api/runs/{run_id}/events - SSE stream (buffer replay, then live)
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from localhost_hub.server.responses import SSE_HEADERS, error_response, get_hub, read_json_body
from localhost_hub.server.sse import event_stream

logger = logging.getLogger(__name__)


async def list_runs(request: Request) -> JSONResponse:
    """GET /api/runs - List active runs.

    Returns:
        200: {"runs": [...], "history": [...]} (history only when requested).

    """
    hub = get_hub(request)
    data = {"runs": [record.to_summary() for record in hub.list_runs()]}
    if request.query_params.get("history") in ("1", "true"):
        data["history"] = [record.to_summary() for record in hub.run_manager.history()]
    return JSONResponse(data)


async def start_run(request: Request) -> JSONResponse:
    """POST /api/runs - Start a run.

    Body (script): {"project_id", "script", "env"?, "profile_id"?}
    Body (ad hoc): {"command", "cwd", "env"?, "label"?}

    Returns:
        200: Run handle.
        400: Invalid body.
        404: Unknown project, script or profile.
        422: Process could not be spawned.

    """
    hub = get_hub(request)
    try:
        body = await read_json_body(request)
        env = body.get("env") or {}
        if not isinstance(env, dict):
            raise ValueError("env must be an object")

        if "project_id" in body:
            if not body.get("script"):
                raise ValueError("script is required")
            handle = await hub.run_script(
                str(body["project_id"]),
                str(body["script"]),
                env_overrides={str(k): str(v) for k, v in env.items()},
                profile_id=body.get("profile_id"),
            )
        elif "command" in body:
            if not body.get("cwd"):
                raise ValueError("cwd is required for ad hoc commands")
            handle = await hub.run_command(
                body["command"],
                body["cwd"],
                env_overrides={str(k): str(v) for k, v in env.items()},
                label=body.get("label"),
            )
        else:
            raise ValueError("Either project_id/script or command/cwd is required")
    except Exception as e:
        return error_response(e)

    return JSONResponse(handle.to_dict())


async def get_run(request: Request) -> JSONResponse:
    """GET /api/runs/{run_id} - Run details (active or archived)."""
    hub = get_hub(request)
    try:
        record = hub.get_run(request.path_params["run_id"])
    except Exception as e:
        return error_response(e)
    return JSONResponse(record.to_summary())


async def stop_run(request: Request) -> JSONResponse:
    """POST /api/runs/{run_id}/stop - Request termination.

    Body: {"force": bool}? Returns before the process has exited; the exit
    is reported on the event stream.

    Returns:
        200: Stop requested (or run already terminal).
        404: Unknown run.

    """
    hub = get_hub(request)
    run_id = request.path_params["run_id"]
    try:
        body = await read_json_body(request)
        await hub.stop_run(run_id, force=bool(body.get("force", False)))
        record = hub.get_run(run_id)
    except Exception as e:
        return error_response(e)
    return JSONResponse({"run_id": run_id, "state": record.state.value})


async def restart_run(request: Request) -> JSONResponse:
    """POST /api/runs/{run_id}/restart - Restart the script of a run.

    Returns:
        200: Handle of the new run.
        400: Ad hoc run (no script to restart).
        404: Unknown run.

    """
    hub = get_hub(request)
    try:
        record = hub.get_run(request.path_params["run_id"])
        if record.descriptor is None:
            raise ValueError("Only script runs can be restarted")
        handle = await hub.restart_script(record.descriptor.project_id, record.descriptor.name)
    except Exception as e:
        return error_response(e)
    return JSONResponse(handle.to_dict())


async def run_events(request: Request) -> StreamingResponse | JSONResponse:
    """GET /api/runs/{run_id}/events - SSE stream of one run."""
    hub = get_hub(request)
    run_id = request.path_params["run_id"]
    try:
        hub.get_run(run_id)
    except Exception as e:
        return error_response(e)

    subscription = hub.broadcaster.subscribe(run_id=run_id)
    return StreamingResponse(
        event_stream(subscription, hub.config.events.heartbeat_interval),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


routes = [
    Route("/api/runs", list_runs, methods=["GET"]),
    Route("/api/runs", start_run, methods=["POST"]),
    Route("/api/runs/{run_id}", get_run, methods=["GET"]),
    Route("/api/runs/{run_id}/stop", stop_run, methods=["POST"]),
    Route("/api/runs/{run_id}/restart", restart_run, methods=["POST"]),
    Route("/api/runs/{run_id}/events", run_events, methods=["GET"]),
]
