"""Project and script route handlers.

Provides:
- GET  /api/projects - projects with their scripts
- POST /api/projects/{project_id}/scripts/{script}/restart
- GET  /api/projects/{project_id}/scripts/{script}/expected-port
- PUT  /api/projects/{project_id}/scripts/{script}/expected-port
- POST /api/projects/{project_id}/install - install dependencies
- GET  /api/projects/{project_id}/package-manager - detected package manager
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from localhost_hub.server.responses import error_response, get_hub, read_json_body

logger = logging.getLogger(__name__)


async def list_projects(request: Request) -> JSONResponse:
    """GET /api/projects - List projects and scripts."""
    hub = get_hub(request)
    projects = [
        {
            "id": project.id,
            "name": project.name,
            "path": str(project.path),
            "scripts": [
                {
                    "name": script.name,
                    "command": script.command,
                    "runner": script.runner.value,
                    "expected_port": hub.repository.get_expected_port(project.id, script.name),
                }
                for script in project.scripts
            ],
        }
        for project in hub.repository.list_projects()
    ]
    return JSONResponse({"projects": projects})


async def restart_script(request: Request) -> JSONResponse:
    """POST /api/projects/{project_id}/scripts/{script}/restart.

    Body: {"env"?, "profile_id"?}

    Returns:
        200: Handle of the new run.
        404: Unknown project or script.
        422: Process could not be spawned.

    """
    hub = get_hub(request)
    try:
        body = await read_json_body(request)
        handle = await hub.restart_script(
            request.path_params["project_id"],
            request.path_params["script"],
            env_overrides={str(k): str(v) for k, v in (body.get("env") or {}).items()},
            profile_id=body.get("profile_id"),
        )
    except Exception as e:
        return error_response(e)
    return JSONResponse(handle.to_dict())


async def get_expected_port(request: Request) -> JSONResponse:
    """GET /api/projects/{project_id}/scripts/{script}/expected-port."""
    hub = get_hub(request)
    project_id = request.path_params["project_id"]
    script = request.path_params["script"]
    try:
        port = hub.get_expected_port(project_id, script)
    except Exception as e:
        return error_response(e)
    return JSONResponse({"project_id": project_id, "script": script, "port": port})


async def set_expected_port(request: Request) -> JSONResponse:
    """PUT /api/projects/{project_id}/scripts/{script}/expected-port.

    Body: {"port": int | null} (null clears the expectation)

    Returns:
        200: Updated value.
        400: Port missing or out of range.
        404: Unknown project or script.

    """
    hub = get_hub(request)
    project_id = request.path_params["project_id"]
    script = request.path_params["script"]
    try:
        body = await read_json_body(request)
        if "port" not in body:
            raise ValueError("port is required")
        port = body["port"]
        if port is not None:
            if isinstance(port, bool) or not isinstance(port, int):
                raise ValueError("port must be an integer or null")
        hub.set_expected_port(project_id, script, port)
    except Exception as e:
        return error_response(e)
    return JSONResponse({"project_id": project_id, "script": script, "port": port})


async def install_dependencies(request: Request) -> JSONResponse:
    """POST /api/projects/{project_id}/install - Run the install command."""
    hub = get_hub(request)
    try:
        handle = await hub.install_dependencies(request.path_params["project_id"])
    except Exception as e:
        return error_response(e)
    return JSONResponse(handle.to_dict())


async def detect_package_manager(request: Request) -> JSONResponse:
    """GET /api/projects/{project_id}/package-manager."""
    hub = get_hub(request)
    project_id = request.path_params["project_id"]
    try:
        manager = hub.detect_package_manager(project_id)
    except Exception as e:
        return error_response(e)
    return JSONResponse({"project_id": project_id, "package_manager": manager})


routes = [
    Route("/api/projects", list_projects, methods=["GET"]),
    Route("/api/projects/{project_id}/scripts/{script}/restart", restart_script, methods=["POST"]),
    Route("/api/projects/{project_id}/scripts/{script}/expected-port", get_expected_port, methods=["GET"]),
    Route("/api/projects/{project_id}/scripts/{script}/expected-port", set_expected_port, methods=["PUT"]),
    Route("/api/projects/{project_id}/install", install_dependencies, methods=["POST"]),
    Route("/api/projects/{project_id}/package-manager", detect_package_manager, methods=["GET"]),
]
