"""Definition and history storage.

The orchestration core reads projects, env profiles and workspaces through
the narrow Repository protocol. Two implementations are provided:
- MemoryRepository: plain in-memory maps (embedding, tests)
- YamlRepository: definitions in hub.yaml, run history appended to
  history.jsonl, both in the config directory

hub.yaml layout::

    projects:
      - id: web
        name: Web
        path: ~/code/web
        scripts:
          - {name: dev, command: vite}
    env_profiles:
      - {id: web-dev, project_id: web, name: Dev, is_default: true,
         vars: [{key: API_URL, value: "http://localhost:8000"}]}
    workspaces:
      - id: stack
        name: Full stack
        items:
          - {id: api, project_id: api, script_name: dev, run_mode: sequential, order_index: 0}
    expected_ports:
      web:
        dev: 5173
"""

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from localhost_hub.core.exceptions import NotFoundError
from localhost_hub.orchestrator.models import (
    EnvProfile,
    Project,
    RunRecord,
    ScriptDescriptor,
    Workspace,
)

logger = logging.getLogger(__name__)

DEFINITIONS_FILE = "hub.yaml"
HISTORY_FILE = "history.jsonl"


class Repository(Protocol):
    """Persistence collaborator of the Hub."""

    def get_project(self, project_id: str) -> Project: ...

    def list_projects(self) -> list[Project]: ...

    def get_script(self, project_id: str, script_name: str) -> ScriptDescriptor: ...

    def list_env_profiles(self, project_id: str) -> list[EnvProfile]: ...

    def get_workspace(self, workspace_id: str) -> Workspace: ...

    def list_workspaces(self) -> list[Workspace]: ...

    def get_expected_port(self, project_id: str, script_name: str) -> int | None: ...

    def set_expected_port(self, project_id: str, script_name: str, port: int | None) -> None: ...

    def append_history(self, record: RunRecord) -> None: ...


class MemoryRepository:
    """Repository holding everything in memory."""

    def __init__(
        self,
        projects: Iterable[Project] = (),
        env_profiles: Iterable[EnvProfile] = (),
        workspaces: Iterable[Workspace] = (),
        expected_ports: dict[tuple[str, str], int] | None = None,
    ) -> None:
        self._projects: dict[str, Project] = {p.id: p for p in projects}
        self._profiles: dict[str, EnvProfile] = {p.id: p for p in env_profiles}
        self._workspaces: dict[str, Workspace] = {w.id: w for w in workspaces}
        self._expected_ports: dict[tuple[str, str], int] = dict(expected_ports or {})
        self.history: list[dict[str, Any]] = []

    def add_project(self, project: Project) -> None:
        self._projects[project.id] = project

    def add_env_profile(self, profile: EnvProfile) -> None:
        self._profiles[profile.id] = profile

    def add_workspace(self, workspace: Workspace) -> None:
        self._workspaces[workspace.id] = workspace

    def get_project(self, project_id: str) -> Project:
        """Get a project by id.

        Raises:
            NotFoundError: If the project is unknown.

        """
        project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    def get_script(self, project_id: str, script_name: str) -> ScriptDescriptor:
        """Get a script of a project.

        Raises:
            NotFoundError: If the project or script is unknown.

        """
        script = self.get_project(project_id).get_script(script_name)
        if script is None:
            raise NotFoundError("script", f"{project_id}:{script_name}")
        return script

    def list_env_profiles(self, project_id: str) -> list[EnvProfile]:
        return [p for p in self._profiles.values() if p.project_id == project_id]

    def get_workspace(self, workspace_id: str) -> Workspace:
        """Get a workspace by id.

        Raises:
            NotFoundError: If the workspace is unknown.

        """
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise NotFoundError("workspace", workspace_id)
        return workspace

    def list_workspaces(self) -> list[Workspace]:
        return list(self._workspaces.values())

    def get_expected_port(self, project_id: str, script_name: str) -> int | None:
        return self._expected_ports.get((project_id, script_name))

    def set_expected_port(self, project_id: str, script_name: str, port: int | None) -> None:
        """Set or clear (port=None) the expected port of a script.

        Raises:
            ValueError: If the port is outside 1-65535.

        """
        if port is None:
            self._expected_ports.pop((project_id, script_name), None)
            return
        if not 1 <= port <= 65535:
            raise ValueError(f"Port out of range: {port}")
        self._expected_ports[(project_id, script_name)] = port

    def append_history(self, record: RunRecord) -> None:
        self.history.append(record.to_summary())


class YamlRepository(MemoryRepository):
    """Repository backed by hub.yaml and history.jsonl.

    Definitions are read once at construction (and on reload()). Only
    expected ports are written back; history records are appended.

    Attributes:
        config_dir: Directory holding both files.

    """

    def __init__(self, config_dir: Path) -> None:
        """Initialize and load definitions.

        Args:
            config_dir: Directory holding hub.yaml and history.jsonl.

        """
        super().__init__()
        self.config_dir = Path(config_dir).expanduser()
        self.definitions_path = self.config_dir / DEFINITIONS_FILE
        self.history_path = self.config_dir / HISTORY_FILE
        self._raw: dict[str, Any] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read hub.yaml. Invalid entries are logged and skipped."""
        self._projects.clear()
        self._profiles.clear()
        self._workspaces.clear()
        self._expected_ports.clear()
        self._raw = {}

        if not self.definitions_path.exists():
            logger.debug("No definitions file at %s", self.definitions_path)
            return

        try:
            with self.definitions_path.open() as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            logger.exception("Failed to load definitions from %s", self.definitions_path)
            return

        if not isinstance(data, dict):
            logger.error("Definitions file %s is not a mapping", self.definitions_path)
            return
        self._raw = data

        for entry in data.get("projects") or []:
            try:
                if isinstance(entry, dict) and "path" in entry:
                    entry = {**entry, "path": Path(str(entry["path"])).expanduser()}
                self.add_project(Project.model_validate(entry))
            except ValidationError:
                logger.exception("Invalid project entry: %s", entry)

        for entry in data.get("env_profiles") or []:
            try:
                self.add_env_profile(EnvProfile.model_validate(entry))
            except ValidationError:
                logger.exception("Invalid env profile entry: %s", entry)

        for entry in data.get("workspaces") or []:
            try:
                self.add_workspace(Workspace.model_validate(entry))
            except ValidationError:
                logger.exception("Invalid workspace entry: %s", entry)

        for project_id, scripts in (data.get("expected_ports") or {}).items():
            for script_name, port in (scripts or {}).items():
                try:
                    MemoryRepository.set_expected_port(self, str(project_id), str(script_name), int(port))
                except (TypeError, ValueError):
                    logger.warning("Ignoring expected port %r for %s:%s", port, project_id, script_name)

        logger.info(
            "Loaded %d projects, %d env profiles, %d workspaces from %s",
            len(self._projects),
            len(self._profiles),
            len(self._workspaces),
            self.definitions_path,
        )

    def set_expected_port(self, project_id: str, script_name: str, port: int | None) -> None:
        """Set or clear the expected port and persist it to hub.yaml."""
        super().set_expected_port(project_id, script_name, port)
        self._save_expected_ports()

    def _save_expected_ports(self) -> None:
        ports: dict[str, dict[str, int]] = {}
        for (project_id, script_name), port in sorted(self._expected_ports.items()):
            ports.setdefault(project_id, {})[script_name] = port
        data = {**self._raw, "expected_ports": ports}

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with self.definitions_path.open("w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            self._raw = data
            logger.debug("Saved expected ports to %s", self.definitions_path)
        except OSError:
            logger.exception("Failed to save expected ports to %s", self.definitions_path)

    def append_history(self, record: RunRecord) -> None:
        """Append the record's summary as one JSON line."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with self.history_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_summary()) + "\n")
        except OSError:
            logger.exception("Failed to append run history to %s", self.history_path)

    def read_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recent history entries, oldest first."""
        if not self.history_path.exists():
            return []
        entries = []
        with self.history_path.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt history line in %s", self.history_path)
        return entries[-limit:] if limit else entries
