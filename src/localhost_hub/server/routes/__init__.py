"""HTTP API routes package.

Route handlers organized by domain:
- runs: Run start/stop/restart and per-run event streams
- projects: Scripts, expected ports, install and package manager detection
- ports: Listening ports and external process termination
- workspaces: Workspace start/stop/restart and workspace event streams
- events: Global event stream
"""

from .events import routes as events_routes
from .ports import routes as ports_routes
from .projects import routes as projects_routes
from .runs import routes as runs_routes
from .workspaces import routes as workspaces_routes

# Aggregate all routes
API_ROUTES = runs_routes + projects_routes + ports_routes + workspaces_routes + events_routes

__all__ = ["API_ROUTES"]
