"""CLI command groups for localhost-hub."""

from .workspace import workspace_app

__all__ = ["workspace_app"]
