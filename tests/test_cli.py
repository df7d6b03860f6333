"""Tests for the offline CLI commands."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from wbs_orchestrator.cli import app
from wbs_orchestrator.models import Project, WbsItem
from wbs_orchestrator.store import CacheStore

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "smartsheet": {
                    "access_token": "test-token",
                    "portfolio_sheet_id": 100,
                    "wbs_parent_folder_id": 200,
                    "wbs_template_folder_id": 300,
                },
                "app": {"database_path": str(tmp_path / "cli.db")},
            }
        )
    )
    return path


@pytest.fixture
def cli_store(tmp_path: Path) -> CacheStore:
    store = CacheStore(tmp_path / "cli.db")
    project = store.save_project(Project(id="", code="P-0001", title="Pump Station"))
    store.apply_changes(inserts=[WbsItem(project_id=project.id, name="Phase", id="phase")])
    return store


class TestStatus:
    def test_lists_projects(self, config_file: Path, cli_store: CacheStore) -> None:
        result = runner.invoke(app, ["status", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "P-0001" in result.output
        assert "Never" in result.output

    def test_empty(self, config_file: Path) -> None:
        result = runner.invoke(app, ["status", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "No projects cached yet" in result.output


class TestClearCache:
    def test_one_project(self, config_file: Path, cli_store: CacheStore) -> None:
        result = runner.invoke(app, ["clear-cache", "P-0001", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "Cleared 1 cached item(s)" in result.output
        assert cli_store.get_item("phase") is None

    def test_all_requires_confirmation(self, config_file: Path, cli_store: CacheStore) -> None:
        result = runner.invoke(app, ["clear-cache", "-c", str(config_file)], input="n\n")

        assert result.exit_code == 1
        assert cli_store.get_item("phase") is not None

    def test_unknown_project(self, config_file: Path, cli_store: CacheStore) -> None:
        result = runner.invoke(app, ["clear-cache", "P-9999", "-c", str(config_file)])

        assert result.exit_code == 1
        assert "Project not found" in result.output
