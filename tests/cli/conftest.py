"""Fixtures for CLI interface tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from bugsync.cli import cli
from tests.conftest import BUG_DOCS, MEMBER_DOCS, SPRINT_DOCS


@pytest.fixture
def cli_in_project(
    tmp_path: Path, cli_runner: CliRunner, monkeypatch: pytest.MonkeyPatch
) -> tuple[CliRunner, Path]:
    """Initialize a bugsync project in tmp_path and return (runner, project_root)."""
    monkeypatch.chdir(tmp_path)
    result = cli_runner.invoke(cli, ["init", "--workspace", "ws1", "--organization", "org1"])
    assert result.exit_code == 0
    return cli_runner, tmp_path


@pytest.fixture
def export_file(tmp_path: Path) -> Path:
    """A JSON export holding the shared seed collections."""
    path = tmp_path / "bugs.json"
    path.write_text(json.dumps({"bugs": BUG_DOCS, "members": MEMBER_DOCS, "sprints": SPRINT_DOCS}))
    return path
