"""HTTP API for localhost-hub (starlette + server-sent events)."""

from .app import create_app

__all__ = ["create_app"]
