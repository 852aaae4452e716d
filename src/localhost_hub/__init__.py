"""localhost-hub: process orchestration for local development scripts."""

__version__ = "0.1.0"
