"""Tests for YAML-backed definitions and run history."""

import json
from pathlib import Path

import pytest
import yaml

from localhost_hub.core.exceptions import NotFoundError
from localhost_hub.orchestrator import RunMode, RunRecord, RunState, YamlRepository

HUB_YAML = """\
projects:
  - id: web
    name: Web
    path: {web}
    scripts:
      - {{name: dev, command: vite}}
      - {{name: lint, runner: shell, command: eslint .}}
  - id: broken
    name: Broken
env_profiles:
  - id: web-dev
    project_id: web
    name: Dev
    is_default: true
    vars:
      - {{key: API_URL, value: "http://localhost:8000"}}
workspaces:
  - id: stack
    name: Stack
    items:
      - {{id: web, project_id: web, script_name: dev, run_mode: sequential, order_index: 0}}
  - id: clash
    name: Clash
    items:
      - {{id: a, project_id: web, script_name: dev, order_index: 0}}
      - {{id: b, project_id: web, script_name: lint, order_index: 0}}
expected_ports:
  web:
    dev: 5173
"""


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    path = tmp_path / "config"
    path.mkdir()
    (path / "hub.yaml").write_text(HUB_YAML.format(web=tmp_path / "web"))
    return path


class TestLoad:
    """hub.yaml parsing."""

    def test_projects_and_scripts(self, config_dir: Path, tmp_path: Path):
        repo = YamlRepository(config_dir)

        project = repo.get_project("web")
        assert project.path == tmp_path / "web"
        assert [s.name for s in project.scripts] == ["dev", "lint"]
        assert repo.get_script("web", "lint").project_id == "web"

    def test_invalid_entries_skipped(self, config_dir: Path):
        """A project without a path and a workspace with clashing order are dropped."""
        repo = YamlRepository(config_dir)

        assert [p.id for p in repo.list_projects()] == ["web"]
        assert [w.id for w in repo.list_workspaces()] == ["stack"]

    def test_profiles_and_workspaces(self, config_dir: Path):
        repo = YamlRepository(config_dir)

        (profile,) = repo.list_env_profiles("web")
        assert profile.as_dict() == {"API_URL": "http://localhost:8000"}
        assert repo.get_workspace("stack").items[0].run_mode is RunMode.SEQUENTIAL

    def test_expected_ports(self, config_dir: Path):
        assert YamlRepository(config_dir).get_expected_port("web", "dev") == 5173

    def test_missing_file(self, tmp_path: Path):
        repo = YamlRepository(tmp_path / "nothing")

        assert repo.list_projects() == []
        with pytest.raises(NotFoundError):
            repo.get_workspace("stack")

    def test_unreadable_yaml_yields_empty(self, tmp_path: Path):
        (tmp_path / "hub.yaml").write_text("projects: [unclosed\n")

        assert YamlRepository(tmp_path).list_projects() == []


class TestExpectedPortPersistence:
    def test_set_written_back(self, config_dir: Path):
        repo = YamlRepository(config_dir)

        repo.set_expected_port("web", "lint", 4000)

        data = yaml.safe_load((config_dir / "hub.yaml").read_text())
        assert data["expected_ports"]["web"] == {"dev": 5173, "lint": 4000}
        assert data["projects"][0]["id"] == "web"
        assert YamlRepository(config_dir).get_expected_port("web", "lint") == 4000

    def test_clear_written_back(self, config_dir: Path):
        repo = YamlRepository(config_dir)

        repo.set_expected_port("web", "dev", None)

        assert YamlRepository(config_dir).get_expected_port("web", "dev") is None

    def test_reject_invalid_port(self, config_dir: Path):
        with pytest.raises(ValueError):
            YamlRepository(config_dir).set_expected_port("web", "dev", 0)


class TestHistory:
    """history.jsonl append and read."""

    def _record(self, run_id: str, tmp_path: Path) -> RunRecord:
        record = RunRecord(run_id=run_id, label="dev", cwd=tmp_path, command="vite", env={"SECRET": "x"})
        record.state = RunState.EXITED
        record.exit_code = 0
        return record

    def test_append_and_read(self, tmp_path: Path):
        repo = YamlRepository(tmp_path / "config")

        for run_id in ("a", "b", "c"):
            repo.append_history(self._record(run_id, tmp_path))

        assert [e["run_id"] for e in repo.read_history()] == ["a", "b", "c"]
        assert [e["run_id"] for e in repo.read_history(limit=2)] == ["b", "c"]

    def test_environment_not_written(self, tmp_path: Path):
        repo = YamlRepository(tmp_path / "config")

        repo.append_history(self._record("a", tmp_path))

        line = (tmp_path / "config" / "history.jsonl").read_text().strip()
        assert "SECRET" not in line
        assert json.loads(line)["state"] == "exited"

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        repo = YamlRepository(tmp_path)
        repo.append_history(self._record("a", tmp_path))
        with (tmp_path / "history.jsonl").open("a") as f:
            f.write("{not json\n")

        assert [e["run_id"] for e in repo.read_history()] == ["a"]

    def test_no_history_file(self, tmp_path: Path):
        assert YamlRepository(tmp_path).read_history() == []
