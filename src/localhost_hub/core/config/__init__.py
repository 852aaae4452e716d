"""Configuration loading for localhost-hub.

The loaded configuration is kept in a module-level singleton so every
component reads the same settings. Tests reset it with _reset_config().

Public API:
    HubConfig: Root configuration model
    load_config: Validate a dict and install it as the active config
    load_config_file: Read a YAML file and install it
    get_config: Return the active config (defaults if none loaded)
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from localhost_hub.core.config.models import (
    DEFAULT_CONFIG_DIR,
    DEV_PORTS,
    EventsConfig,
    FailurePolicy,
    HubConfig,
    PortWatcherConfig,
    RunnerConfig,
    ServerConfig,
    SettleCondition,
    WorkspaceConfig,
)
from localhost_hub.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

_config: HubConfig | None = None

__all__ = [
    "CONFIG_FILENAME",
    "DEFAULT_CONFIG_DIR",
    "DEV_PORTS",
    "EventsConfig",
    "FailurePolicy",
    "HubConfig",
    "PortWatcherConfig",
    "RunnerConfig",
    "ServerConfig",
    "SettleCondition",
    "WorkspaceConfig",
    "get_config",
    "load_config",
    "load_config_file",
]


def load_config(data: dict[str, Any]) -> HubConfig:
    """Validate configuration data and make it the active config.

    Args:
        data: Raw configuration mapping (e.g. parsed YAML).

    Returns:
        Validated HubConfig.

    Raises:
        ConfigError: If validation fails.

    """
    global _config
    try:
        config = HubConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    _config = config
    logger.debug("Loaded configuration (config_dir=%s)", config.config_dir)
    return config


def load_config_file(path: Path | None = None) -> HubConfig:
    """Load configuration from a YAML file.

    A missing file is not an error: defaults are used, with config_dir set
    to the file's directory.

    Args:
        path: Path to config.yaml (default: ~/.config/localhost-hub/config.yaml).

    Returns:
        Validated HubConfig.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation.

    """
    config_path = path or DEFAULT_CONFIG_DIR / CONFIG_FILENAME
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open() as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        logger.info("Loaded config file %s", config_path)
    data.setdefault("config_dir", str(config_path.parent))
    return load_config(data)


def get_config() -> HubConfig:
    """Return the active configuration, creating defaults on first use."""
    global _config
    if _config is None:
        _config = HubConfig()
    return _config


def _reset_config() -> None:
    """Forget the active configuration (tests only)."""
    global _config
    _config = None
