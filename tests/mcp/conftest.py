"""Fixtures for MCP server tests."""

from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path

import pytest

from flowloop.core import DB_FILENAME, FLOWLOOP_DIR_NAME, WORKFLOW_FILENAME, FlowloopDB, write_config
from flowloop.workflow_data import DEFAULT_WORKFLOW


@pytest.fixture
def mcp_db(tmp_path: Path) -> Generator[FlowloopDB, None, None]:
    """Set up a FlowloopDB in a .flowloop/ directory and patch the MCP module globals."""
    flowloop_dir = tmp_path / FLOWLOOP_DIR_NAME
    flowloop_dir.mkdir()
    write_config(flowloop_dir, {"prefix": "mcp", "project": "alpha", "version": 1})
    (flowloop_dir / WORKFLOW_FILENAME).write_text(json.dumps(DEFAULT_WORKFLOW, indent=2))

    d = FlowloopDB(flowloop_dir / DB_FILENAME, prefix="mcp", project="alpha")
    d.initialize()

    import flowloop.mcp_server as mcp_mod

    original_db = mcp_mod.db
    original_dir = mcp_mod._flowloop_dir
    mcp_mod.db = d
    mcp_mod._flowloop_dir = flowloop_dir

    yield d

    mcp_mod.db = original_db
    mcp_mod._flowloop_dir = original_dir
    d.close()
