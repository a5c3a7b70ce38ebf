"""Shared pytest fixtures for flowloop tests."""

from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from flowloop.core import (
    DB_FILENAME,
    FLOWLOOP_DIR_NAME,
    WORKFLOW_FILENAME,
    FlowloopDB,
    write_config,
)
from flowloop.workflow import WorkflowConfigStore
from flowloop.workflow_data import DEFAULT_WORKFLOW


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db(tmp_path: Path) -> Generator[FlowloopDB, None, None]:
    """Fresh FlowloopDB for each test."""
    d = FlowloopDB(tmp_path / DB_FILENAME, prefix="test")
    d.initialize()
    yield d
    d.close()


@pytest.fixture
def workflow_path(tmp_path: Path) -> Path:
    """workflow.json holding the default process."""
    path = tmp_path / WORKFLOW_FILENAME
    path.write_text(json.dumps(DEFAULT_WORKFLOW, indent=2))
    return path


@pytest.fixture
def store(db: FlowloopDB, workflow_path: Path) -> WorkflowConfigStore:
    """Workflow store on the default process, auditing into ``db``."""
    return WorkflowConfigStore(workflow_path, audit=db.record_workflow_audit)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flowloop_project(tmp_path: Path) -> Path:
    """A tmp directory set up as a flowloop project (.flowloop/ with config, workflow and db).

    Returns the project root (parent of .flowloop/).
    """
    flowloop_dir = tmp_path / FLOWLOOP_DIR_NAME
    flowloop_dir.mkdir()
    write_config(flowloop_dir, {"prefix": "proj", "project": "alpha", "version": 1})
    (flowloop_dir / WORKFLOW_FILENAME).write_text(json.dumps(DEFAULT_WORKFLOW, indent=2))

    d = FlowloopDB(flowloop_dir / DB_FILENAME, prefix="proj", project="alpha")
    d.initialize()
    d.close()
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
