"""CLI for flowloop.

Convention-based: discovers .flowloop/ by walking up from cwd.

Usage:
    flowloop init                                  # Initialize .flowloop/ in cwd
    flowloop task create "Fix login" -p 2 --period P1
    flowloop task list --period P1                 # List tasks
    flowloop step <task> execution --rework        # Move a task to a step
    flowloop workflow show                         # Show the process definition
    flowloop metrics collect P1                    # Recompute period metrics
    flowloop analyze --apply                       # Mine patterns, apply suggestions
    flowloop alerts --period P1                    # Run threshold alerts
    flowloop retro process P1                      # Promote retro feedback
    flowloop feedback context dev                  # Lessons block for a worker
    flowloop proposals list                        # Cross-project proposals
"""

from __future__ import annotations

import json as json_mod
from pathlib import Path

import click

from flowloop import __version__
from flowloop.cli_commands import analytics, retro, server, tasks, workflow
from flowloop.core import (
    DB_FILENAME,
    FLOWLOOP_DIR_NAME,
    WORKFLOW_FILENAME,
    FlowloopDB,
    read_config,
    write_atomic,
    write_config,
)
from flowloop.workflow_data import DEFAULT_WORKFLOW

# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="flowloop")
@click.option("--actor", default="cli", help="Actor identity for the workflow audit trail (default: cli)")
@click.pass_context
def cli(ctx: click.Context, actor: str) -> None:
    """Flowloop: workflow state tracking and continuous improvement."""
    ctx.ensure_object(dict)
    ctx.obj["actor"] = actor


@cli.command()
@click.option("--prefix", default=None, help="ID prefix for tasks (default: directory name)")
@click.option("--project", default=None, help="Project name used when voting on proposals (default: prefix)")
def init(prefix: str | None, project: str | None) -> None:
    """Initialize .flowloop/ in the current directory."""
    cwd = Path.cwd()
    flowloop_dir = cwd / FLOWLOOP_DIR_NAME

    if flowloop_dir.exists():
        click.echo(f"{FLOWLOOP_DIR_NAME}/ already exists in {cwd}")
        config = read_config(flowloop_dir)
        with FlowloopDB(flowloop_dir / DB_FILENAME, prefix=config.get("prefix", "flowloop")) as db:
            db.initialize()
        return

    prefix = prefix or cwd.name
    flowloop_dir.mkdir()

    write_config(flowloop_dir, {"prefix": prefix, "project": project or prefix, "version": 1})
    write_atomic(flowloop_dir / WORKFLOW_FILENAME, json_mod.dumps(DEFAULT_WORKFLOW, indent=2) + "\n")

    with FlowloopDB(flowloop_dir / DB_FILENAME, prefix=prefix) as db:
        db.initialize()

    click.echo(f"Initialized {FLOWLOOP_DIR_NAME}/ in {cwd}")
    click.echo(f"  Prefix: {prefix}")
    click.echo(f"  Database: {flowloop_dir / DB_FILENAME}")
    click.echo(f"  Workflow: {flowloop_dir / WORKFLOW_FILENAME}")


tasks.register(cli)
workflow.register(cli)
analytics.register(cli)
retro.register(cli)
server.register(cli)


if __name__ == "__main__":
    cli()
