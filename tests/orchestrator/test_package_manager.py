"""Tests for package manager detection."""

from pathlib import Path

import pytest

from localhost_hub.core.config import RunnerConfig
from localhost_hub.orchestrator.package_manager import detect_package_manager, select_package_manager


class TestDetectPackageManager:
    @pytest.mark.parametrize(
        ("lock_file", "expected"),
        [
            ("pnpm-lock.yaml", "pnpm"),
            ("yarn.lock", "yarn"),
            ("bun.lockb", "bun"),
            ("package-lock.json", "npm"),
        ],
    )
    def test_lock_file(self, tmp_path: Path, lock_file, expected):
        (tmp_path / lock_file).touch()

        assert detect_package_manager(tmp_path) == expected

    def test_no_lock_file_defaults_to_npm(self, tmp_path: Path):
        assert detect_package_manager(tmp_path) == "npm"

    def test_pnpm_wins_over_npm(self, tmp_path: Path):
        """Several lock files: first in precedence order wins."""
        (tmp_path / "package-lock.json").touch()
        (tmp_path / "pnpm-lock.yaml").touch()

        assert detect_package_manager(tmp_path) == "pnpm"

    @pytest.mark.parametrize(
        ("lock_files", "expected"),
        [
            (["yarn.lock", "bun.lockb", "package-lock.json"], "yarn"),
            (["bun.lockb", "package-lock.json"], "bun"),
        ],
    )
    def test_precedence_pnpm_yarn_bun_npm(self, tmp_path: Path, lock_files, expected):
        for name in lock_files:
            (tmp_path / name).touch()

        assert detect_package_manager(tmp_path) == expected


class TestSelectPackageManager:
    def test_default_used_when_detection_off(self, tmp_path: Path):
        (tmp_path / "yarn.lock").touch()
        runner = RunnerConfig(default_package_manager="bun", auto_detect_package_manager=False)

        assert select_package_manager(tmp_path, runner) == "bun"

    def test_detection_wins_when_enabled(self, tmp_path: Path):
        (tmp_path / "yarn.lock").touch()
        runner = RunnerConfig(default_package_manager="bun")

        assert select_package_manager(tmp_path, runner) == "yarn"

    def test_detection_used_without_default(self, tmp_path: Path):
        runner = RunnerConfig(auto_detect_package_manager=False)

        assert select_package_manager(tmp_path, runner) == "npm"
