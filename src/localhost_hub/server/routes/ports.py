"""Port and external process route handlers.

Provides:
- GET  /api/ports - port status of runs plus unmanaged listening processes
- POST /api/processes/{pid}/kill - terminate a process tree by pid
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from localhost_hub.server.responses import error_response, get_hub

logger = logging.getLogger(__name__)


async def list_ports(request: Request) -> JSONResponse:
    """GET /api/ports - Latest port scan.

    ``?refresh=1`` runs a scan before answering.
    """
    hub = get_hub(request)
    if request.query_params.get("refresh") in ("1", "true"):
        await hub.port_watcher.poll_once()
    return JSONResponse(hub.list_ports())


async def kill_process(request: Request) -> JSONResponse:
    """POST /api/processes/{pid}/kill - Terminate a process.

    Returns:
        200: Termination done.
        404: No such process.

    """
    hub = get_hub(request)
    pid = request.path_params["pid"]
    try:
        await hub.kill_external(pid)
    except Exception as e:
        return error_response(e)
    logger.info("Killed process %d on request", pid)
    return JSONResponse({"pid": pid, "killed": True})


routes = [
    Route("/api/ports", list_ports, methods=["GET"]),
    Route("/api/processes/{pid:int}/kill", kill_process, methods=["POST"]),
]
