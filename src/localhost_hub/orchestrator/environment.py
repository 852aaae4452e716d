"""Effective environment resolution for runs.

Precedence, lowest to highest:
1. Host environment (only when inheritance is enabled)
2. The project's default profile
3. The profile selected for this run, if it is not the default
4. Per-run overrides supplied by the caller (never persisted)

A higher layer replaces a key outright. Secret variables are passed to the
process unchanged; redaction is left to whoever displays them.
"""

import logging
import os
from collections.abc import Callable, Mapping
from typing import Protocol

from localhost_hub.core.exceptions import ProfileNotFoundError
from localhost_hub.orchestrator.models import EnvProfile

logger = logging.getLogger(__name__)


class ProfileSource(Protocol):
    """Anything that can list a project's environment profiles."""

    def list_env_profiles(self, project_id: str) -> list[EnvProfile]: ...


class EnvironmentResolver:
    """Computes the variable set a run is spawned with.

    Attributes:
        inherit_host_env: Whether the host environment forms the base layer.
            Either a bool or a callable read on every resolve, so a settings
            change applies to the next run.

    """

    def __init__(
        self,
        profiles: ProfileSource,
        inherit_host_env: bool | Callable[[], bool] = True,
        host_env: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize resolver.

        Args:
            profiles: Source of environment profiles.
            inherit_host_env: Host inheritance flag or a callable returning it.
            host_env: Host environment (defaults to os.environ).

        """
        self._profiles = profiles
        self._inherit = inherit_host_env
        self._host_env = host_env

    @property
    def inherit_host_env(self) -> bool:
        """Current host inheritance setting."""
        if callable(self._inherit):
            return bool(self._inherit())
        return self._inherit

    def resolve(
        self,
        project_id: str,
        script_name: str,
        explicit_overrides: Mapping[str, str] | None = None,
        *,
        profile_id: str | None = None,
    ) -> dict[str, str]:
        """Compute the effective environment for one run.

        Args:
            project_id: Project the script belongs to.
            script_name: Script being started (for logging).
            explicit_overrides: Ephemeral variables for this run only.
            profile_id: Explicitly selected profile.

        Returns:
            Mapping of variable names to values.

        Raises:
            ProfileNotFoundError: If profile_id is not a profile of the project.

        """
        env: dict[str, str] = {}
        if self.inherit_host_env:
            host = self._host_env if self._host_env is not None else os.environ
            env.update(host)

        profiles = self._profiles.list_env_profiles(project_id)
        default = next((p for p in profiles if p.is_default), None)
        if default is not None:
            env.update(default.as_dict())

        selected = None
        if profile_id is not None:
            selected = next((p for p in profiles if p.id == profile_id), None)
            if selected is None:
                raise ProfileNotFoundError(project_id, profile_id)
            if default is None or selected.id != default.id:
                env.update(selected.as_dict())

        if explicit_overrides:
            env.update({str(k): str(v) for k, v in explicit_overrides.items()})

        logger.debug(
            "Resolved environment for %s:%s (host=%s, default=%s, profile=%s, overrides=%d)",
            project_id,
            script_name,
            self.inherit_host_env,
            default.name if default else None,
            selected.name if selected else None,
            len(explicit_overrides or {}),
        )
        return env
