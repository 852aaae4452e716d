"""Package manager detection for JavaScript projects.

The lock file present in the project root decides which package manager
runs scripts and installs dependencies.
"""

import logging
from pathlib import Path

from localhost_hub.core.config.models import PackageManagerName, RunnerConfig

logger = logging.getLogger(__name__)

# Checked in order; first match wins
LOCK_FILES: tuple[tuple[str, PackageManagerName], ...] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
    ("package-lock.json", "npm"),
)

DEFAULT_PACKAGE_MANAGER: PackageManagerName = "npm"


def detect_package_manager(project_path: Path) -> PackageManagerName:
    """Detect the package manager from lock files.

    Args:
        project_path: Project root directory.

    Returns:
        Detected package manager, npm when no lock file is found.

    """
    for filename, manager in LOCK_FILES:
        if (project_path / filename).exists():
            logger.debug("Detected %s via %s in %s", manager, filename, project_path)
            return manager
    return DEFAULT_PACKAGE_MANAGER


def select_package_manager(project_path: Path, runner: RunnerConfig) -> PackageManagerName:
    """Pick the package manager for a project according to settings.

    A configured default wins unless auto-detection is switched on; with no
    default configured, detection is always used.
    """
    default = runner.default_package_manager
    if default and not runner.auto_detect_package_manager:
        return default
    return detect_package_manager(project_path)
