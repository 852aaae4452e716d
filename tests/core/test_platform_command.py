"""Tests for cross-platform command construction."""

import pytest

from localhost_hub.core import platform_command
from localhost_hub.core.platform_command import (
    build_install_command,
    build_script_command,
    format_command,
    normalize_command,
)


class TestBuildScriptCommand:
    """Package-manager argv construction."""

    @pytest.mark.parametrize(
        ("manager", "expected"),
        [
            ("npm", ["npm", "run", "dev"]),
            ("pnpm", ["pnpm", "run", "dev"]),
            ("bun", ["bun", "run", "dev"]),
            ("yarn", ["yarn", "dev"]),
        ],
    )
    def test_script(self, manager, expected):
        assert build_script_command(manager, "dev") == expected

    def test_install(self):
        assert build_install_command("pnpm") == ["pnpm", "install"]
        assert build_install_command("yarn") == ["yarn"]


class TestNormalizeCommand:
    """normalize_command() decides argv vs shell."""

    def test_string_uses_shell(self):
        assert normalize_command("echo hi && echo there") == ("echo hi && echo there", True)

    def test_argv_direct_on_posix(self, monkeypatch):
        monkeypatch.setattr(platform_command, "IS_WINDOWS", False)

        assert normalize_command(["npm", "run", "dev"]) == (["npm", "run", "dev"], False)

    def test_argv_joined_on_windows(self, monkeypatch):
        """Windows shims (.cmd) need the shell, so argv is joined."""
        monkeypatch.setattr(platform_command, "IS_WINDOWS", True)

        command, shell = normalize_command(["npm", "run", "my script"])

        assert shell is True
        assert command == 'npm run "my script"'

    @pytest.mark.parametrize("command", ["", "   ", []])
    def test_empty_rejected(self, command):
        with pytest.raises(ValueError, match="empty"):
            normalize_command(command)


class TestFormatCommand:
    def test_string_unchanged(self):
        assert format_command("npm run dev") == "npm run dev"

    def test_argv_quoted(self, monkeypatch):
        monkeypatch.setattr(platform_command, "IS_WINDOWS", False)

        assert format_command(["echo", "two words"]) == "echo 'two words'"
