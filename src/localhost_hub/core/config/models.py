"""Configuration models for localhost-hub."""

import logging
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "localhost-hub"

# Ports commonly used by frontend/backend dev servers
DEV_PORTS = [3000, 3001, 5173, 5174, 8080, 8081, 4200, 5000, 5001, 8000, 8001, 9000, 9001]

PackageManagerName = Literal["npm", "pnpm", "yarn", "bun"]


class SettleCondition(StrEnum):
    """When a sequential workspace item counts as settled.

    READY: the run bound a listening port, or exited with code 0.
    EXIT: the run reached a terminal state.
    """

    READY = "ready"
    EXIT = "exit"


class FailurePolicy(StrEnum):
    """What a sequential chain does when an item fails.

    ABORT: remaining items are not started; running items keep running.
    CONTINUE: the failed item is skipped and the chain moves on.
    """

    ABORT = "abort"
    CONTINUE = "continue"


class RunnerConfig(BaseModel):
    """Process supervision settings.

    Attributes:
        grace_period: Seconds between the graceful signal and the kill.
        restart_settle_delay: Seconds to wait between stop and start on
            restart, so the OS releases bound sockets.
        chunk_size: Maximum bytes read from a pipe per log chunk.
        inherit_host_env: Whether runs start from the host environment.
        default_package_manager: Package manager used when auto-detection
            is off or no lock file is present.
        auto_detect_package_manager: Detect the package manager from lock files.
        auto_restart_on_crash: Restart crashed standalone runs (opt-in).
        auto_restart_delay: Seconds to wait before an automatic restart.
        history_size: Number of terminal run records kept in memory.

    """

    model_config = ConfigDict(frozen=True)

    grace_period: float = Field(default=5.0, ge=0)
    restart_settle_delay: float = Field(default=0.4, ge=0)
    chunk_size: int = Field(default=4096, gt=0)
    inherit_host_env: bool = True
    default_package_manager: PackageManagerName | None = None
    auto_detect_package_manager: bool = True
    auto_restart_on_crash: bool = False
    auto_restart_delay: float = Field(default=2.0, ge=0)
    history_size: int = Field(default=200, gt=0)


class EventsConfig(BaseModel):
    """Event broadcaster buffering."""

    model_config = ConfigDict(frozen=True)

    run_buffer_size: int = Field(default=1000, gt=0)
    subscriber_queue_size: int = Field(default=1000, gt=0)
    heartbeat_interval: float = Field(default=15.0, gt=0)


class PortWatcherConfig(BaseModel):
    """Port discovery settings.

    Attributes:
        enabled: Start the background poller with the hub.
        interval: Seconds between polls.
        include_external: Report listening processes not started by the hub.
        external_ports: Ports considered for external processes. Empty list
            means every listening port.

    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    interval: float = Field(default=2.0, gt=0)
    include_external: bool = True
    external_ports: list[int] = Field(default_factory=lambda: list(DEV_PORTS))

    @field_validator("external_ports", mode="before")
    @classmethod
    def coerce_none_to_empty_list(cls, v: Any) -> list[int]:
        """YAML parses an empty key as None."""
        if v is None:
            return []
        return list(v)


class WorkspaceConfig(BaseModel):
    """Workspace sequencing policy."""

    model_config = ConfigDict(frozen=True)

    settle: SettleCondition = SettleCondition.READY
    settle_timeout: float | None = Field(default=60.0, gt=0)
    failure_policy: FailurePolicy = FailurePolicy.ABORT
    parallel_stagger: float = Field(default=0.05, ge=0)
    restart_settle_delay: float = Field(default=0.4, ge=0)


class ServerConfig(BaseModel):
    """HTTP API bind address."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(default=9600, ge=1, le=65535)


class HubConfig(BaseModel):
    """Root configuration.

    Example:
        >>> config = HubConfig.model_validate({"runner": {"grace_period": 2}})
        >>> config.runner.grace_period
        2.0

    """

    model_config = ConfigDict(frozen=True)

    config_dir: Path = DEFAULT_CONFIG_DIR
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    ports: PortWatcherConfig = Field(default_factory=PortWatcherConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("config_dir", mode="before")
    @classmethod
    def expand_user(cls, v: Any) -> Path:
        """Allow ~ in config_dir."""
        return Path(v).expanduser()
