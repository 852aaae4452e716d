"""Pytest configuration and fixtures for localhost-hub tests."""

import sys
from pathlib import Path

import pytest

from localhost_hub.core.config import HubConfig
from localhost_hub.events import EventBroadcaster
from localhost_hub.orchestrator import (
    EnvProfile,
    EnvVar,
    Hub,
    MemoryRepository,
    Project,
    RunManager,
)
from tests.fakes import FakeScanner


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Reset config singleton before and after each test."""
    from localhost_hub.core.config import _reset_config

    _reset_config()
    yield
    _reset_config()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    """Broadcaster with small buffers."""
    return EventBroadcaster(run_buffer_size=200, subscriber_queue_size=200)


@pytest.fixture
async def run_manager(broadcaster: EventBroadcaster):
    """RunManager with short timings; kills leftovers on teardown."""
    manager = RunManager(broadcaster, grace_period=1.0, restart_settle_delay=0.05)
    yield manager
    await manager.shutdown(force=True)


@pytest.fixture
def fake_scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "web"
    path.mkdir()
    return path


@pytest.fixture
def repository(project_dir: Path) -> MemoryRepository:
    """Repository with one project whose scripts are plain Python commands."""
    python = sys.executable
    project = Project.model_validate({
        "id": "web",
        "name": "Web",
        "path": project_dir,
        "scripts": [
            {
                "name": "serve",
                "runner": "shell",
                "command": f'"{python}" -c "import time; print(\'serving\', flush=True); time.sleep(60)"',
            },
            {
                "name": "build",
                "runner": "shell",
                "command": f'"{python}" -c "print(\'built\')"',
            },
            {
                "name": "broken",
                "runner": "shell",
                "command": f'"{python}" -c "import sys; sys.exit(3)"',
            },
            {
                "name": "env",
                "runner": "shell",
                "command": (
                    f'"{python}" -c "import os; '
                    "print(os.environ.get('API_URL'), os.environ.get('MODE'), flush=True)\""
                ),
            },
        ],
    })
    profiles = [
        EnvProfile(
            id="web-default",
            project_id="web",
            name="Default",
            is_default=True,
            vars=[EnvVar(key="API_URL", value="http://default"), EnvVar(key="MODE", value="dev")],
        ),
        EnvProfile(
            id="web-staging",
            project_id="web",
            name="Staging",
            vars=[EnvVar(key="API_URL", value="http://staging", secret=True)],
        ),
    ]
    return MemoryRepository(projects=[project], env_profiles=profiles)


@pytest.fixture
def hub_config(tmp_path: Path) -> HubConfig:
    """Fast timings, port polling off (tests poll explicitly)."""
    return HubConfig.model_validate({
        "config_dir": str(tmp_path / "config"),
        "runner": {"grace_period": 1.0, "restart_settle_delay": 0.05},
        "ports": {"enabled": False, "interval": 0.1},
        "workspace": {"parallel_stagger": 0.0, "restart_settle_delay": 0.05, "settle_timeout": 10},
    })


@pytest.fixture
async def make_hub(hub_config: HubConfig, fake_scanner: FakeScanner):
    """Factory for started hubs; workspace settings can be overridden."""
    hubs: list[Hub] = []

    async def _make(repository: MemoryRepository, **workspace_settings) -> Hub:
        config = hub_config
        if workspace_settings:
            workspace = hub_config.workspace.model_copy(update=workspace_settings)
            config = hub_config.model_copy(update={"workspace": workspace})
        hub = Hub(config, repository, scanner=fake_scanner)
        await hub.start()
        hubs.append(hub)
        return hub

    yield _make
    for hub in hubs:
        await hub.shutdown()


@pytest.fixture
async def hub(make_hub, repository: MemoryRepository) -> Hub:
    return await make_hub(repository)
