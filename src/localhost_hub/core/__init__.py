"""Core utilities shared by the orchestration engine: config, errors, platform helpers."""
