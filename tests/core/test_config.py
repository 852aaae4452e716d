"""Tests for configuration models and loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from localhost_hub.core.config import (
    DEV_PORTS,
    FailurePolicy,
    HubConfig,
    SettleCondition,
    get_config,
    load_config,
    load_config_file,
)
from localhost_hub.core.exceptions import ConfigError


class TestDefaults:
    """Default values mirror the documented behaviour."""

    def test_runner_defaults(self):
        """Grace period 5s, settle delay 0.4s, host env inherited."""
        config = HubConfig()

        assert config.runner.grace_period == 5.0
        assert config.runner.restart_settle_delay == 0.4
        assert config.runner.inherit_host_env is True
        assert config.runner.auto_restart_on_crash is False

    def test_workspace_defaults(self):
        """Sequential items settle on readiness and abort on failure."""
        config = HubConfig()

        assert config.workspace.settle is SettleCondition.READY
        assert config.workspace.failure_policy is FailurePolicy.ABORT
        assert config.workspace.settle_timeout == 60.0

    def test_external_ports_default_to_dev_ports(self):
        assert HubConfig().ports.external_ports == DEV_PORTS

    def test_models_are_frozen(self):
        """Config cannot be mutated after loading."""
        config = HubConfig()

        with pytest.raises(ValidationError):
            config.runner.grace_period = 1.0  # type: ignore[misc]


class TestLoadConfig:
    """Tests for load_config() and the singleton."""

    def test_load_sets_singleton(self):
        config = load_config({"runner": {"grace_period": 2}})

        assert config.runner.grace_period == 2.0
        assert get_config() is config

    def test_invalid_value_raises_config_error(self):
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config({"runner": {"grace_period": -1}})

    def test_unknown_policy_rejected(self):
        with pytest.raises(ConfigError):
            load_config({"workspace": {"failure_policy": "retry"}})

    def test_null_external_ports_means_any_port(self):
        """YAML 'external_ports:' with no value parses as None."""
        config = load_config({"ports": {"external_ports": None}})

        assert config.ports.external_ports == []

    def test_get_config_creates_defaults(self):
        assert get_config().server.port == 9600


class TestLoadConfigFile:
    """Tests for load_config_file()."""

    def test_missing_file_uses_defaults_in_its_directory(self, tmp_path: Path):
        config = load_config_file(tmp_path / "config.yaml")

        assert config.config_dir == tmp_path
        assert config.runner.grace_period == 5.0

    def test_reads_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("runner:\n  inherit_host_env: false\nworkspace:\n  settle: exit\n")

        config = load_config_file(path)

        assert config.runner.inherit_host_env is False
        assert config.workspace.settle is SettleCondition.EXIT

    def test_explicit_config_dir_wins(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(f"config_dir: {tmp_path / 'elsewhere'}\n")

        assert load_config_file(path).config_dir == tmp_path / "elsewhere"

    def test_non_mapping_rejected(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_config_file(path)

    def test_broken_yaml_rejected(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("runner: [unclosed\n")

        with pytest.raises(ConfigError, match="Cannot read"):
            load_config_file(path)
