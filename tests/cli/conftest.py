"""Fixtures for CLI interface tests."""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from flowloop.cli import cli


@pytest.fixture
def cli_in_project(tmp_path: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
    """Initialize a flowloop project in tmp_path and return (runner, project_root)."""
    original_cwd = os.getcwd()
    os.chdir(str(tmp_path))
    result = cli_runner.invoke(cli, ["init", "--prefix", "test"])
    assert result.exit_code == 0
    yield cli_runner, tmp_path
    os.chdir(original_cwd)


@pytest.fixture
def make_task(cli_in_project: tuple[CliRunner, Path]) -> Callable[..., str]:
    """Factory creating a task through the CLI and returning its id."""
    runner, _ = cli_in_project

    def _make(title: str = "Task", *args: str) -> str:
        result = runner.invoke(cli, ["task", "create", title, *args])
        assert result.exit_code == 0, result.output
        return result.output.split(":")[0].replace("Created ", "").strip()

    return _make
