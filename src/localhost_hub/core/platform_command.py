"""Cross-platform command construction for script runs.

A script is executed either as an argv list (package-manager scripts) or as
a shell string (raw shell commands). The differences between platforms:

- POSIX: argv lists are exec'd directly; shell strings go to /bin/sh.
- Windows: package managers are .cmd shims that only resolve through the
  shell, so argv lists are joined into a shell command line.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import sys
from collections.abc import Sequence

from localhost_hub.core.config.models import PackageManagerName

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"
IS_POSIX = not IS_WINDOWS

Command = str | Sequence[str]


def build_script_command(package_manager: PackageManagerName, script: str) -> list[str]:
    """Build the argv that runs a package.json script.

    Args:
        package_manager: One of npm, pnpm, yarn, bun.
        script: Script name from the manifest.

    Returns:
        Argument list, e.g. ["pnpm", "run", "dev"].

    Examples:
        >>> build_script_command("yarn", "dev")
        ['yarn', 'dev']
        >>> build_script_command("npm", "build")
        ['npm', 'run', 'build']

    """
    if package_manager == "yarn":
        return ["yarn", script]
    return [package_manager, "run", script]


def build_install_command(package_manager: PackageManagerName) -> list[str]:
    """Build the argv that installs a project's dependencies."""
    if package_manager == "yarn":
        return ["yarn"]
    return [package_manager, "install"]


def normalize_command(command: Command) -> tuple[Command, bool]:
    """Decide how a command is spawned on this platform.

    Args:
        command: Shell string or argv sequence.

    Returns:
        Tuple of (command, use_shell). Strings always use the shell; argv
        lists use the shell only on Windows, joined with list2cmdline.

    Raises:
        ValueError: If the command is empty.

    """
    if isinstance(command, str):
        if not command.strip():
            raise ValueError("Command is empty")
        return command, True

    argv = [str(part) for part in command]
    if not argv:
        raise ValueError("Command is empty")
    if IS_WINDOWS:
        return subprocess.list2cmdline(argv), True
    return argv, False


def format_command(command: Command) -> str:
    """Render a command for display and history records."""
    if isinstance(command, str):
        return command
    return " ".join(_shell_quote(str(arg)) for arg in command)


def _shell_quote(arg: str) -> str:
    """Quote an argument for display as a POSIX shell word."""
    if IS_WINDOWS:
        return subprocess.list2cmdline([arg])
    return shlex.quote(arg)
