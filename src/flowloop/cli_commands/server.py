"""CLI command for the web API."""

from __future__ import annotations

import click

from flowloop.cli_common import fail
from flowloop.core import FLOWLOOP_DIR_NAME, find_flowloop_root


@click.command()
@click.option("--port", default=8390, type=int, help="Server port (default 8390)")
@click.option("--host", default="127.0.0.1", help="Bind address (default 127.0.0.1)")
def dashboard(port: int, host: str) -> None:
    """Serve the JSON API for the current project."""
    try:
        find_flowloop_root()
    except FileNotFoundError:
        fail(f"No {FLOWLOOP_DIR_NAME}/ found. Run 'flowloop init' first.")
    from flowloop.dashboard import main as dashboard_main

    dashboard_main(port=port, host=host)


def register(cli: click.Group) -> None:
    """Register server commands with the CLI group."""
    cli.add_command(dashboard)
