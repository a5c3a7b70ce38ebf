"""Shared CLI helpers for cli.py and the cli_commands/*.py modules.

Provides ``get_db()`` and ``get_store()`` so command modules can reach the
project without importing cli.py (which would be circular).
"""

from __future__ import annotations

import json as json_mod
import sys
from typing import Any, NoReturn

import click

from flowloop.core import (
    DB_FILENAME,
    FLOWLOOP_DIR_NAME,
    FlowloopDB,
    find_flowloop_root,
    read_config,
)
from flowloop.logging import setup_logging
from flowloop.workflow import WorkflowConfigStore


def get_db() -> FlowloopDB:
    """Discover .flowloop/ and return an initialized FlowloopDB."""
    try:
        flowloop_dir = find_flowloop_root()
    except FileNotFoundError:
        click.echo(f"No {FLOWLOOP_DIR_NAME}/ found. Run 'flowloop init' first.", err=True)
        sys.exit(1)
    setup_logging(flowloop_dir)
    config = read_config(flowloop_dir)
    db = FlowloopDB(
        flowloop_dir / DB_FILENAME,
        prefix=config.get("prefix", "flowloop"),
        project=config.get("project"),
    )
    db.initialize()
    return db


def get_store(db: FlowloopDB) -> WorkflowConfigStore:
    """Workflow store for the project that owns *db*, auditing into it."""
    return WorkflowConfigStore.from_project(db.db_path.parent, audit=db.record_workflow_audit)


def echo_json(data: Any) -> None:
    click.echo(json_mod.dumps(data, indent=2, default=str))


def fail(message: str) -> NoReturn:
    click.echo(message, err=True)
    sys.exit(1)
