"""Fixtures for HTTP API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

import flowloop.dashboard as dash_module
from flowloop.core import FlowloopDB
from flowloop.dashboard import create_app


@pytest.fixture
def api_db(db: FlowloopDB, workflow_path: Path) -> FlowloopDB:
    """The shared DB, reconnected so handlers may run off the creating thread.

    ``workflow_path`` sits next to the DB file, where the API looks for it.
    """
    db.reconnect(check_same_thread=False)
    return db


@pytest.fixture
async def client(api_db: FlowloopDB) -> AsyncIterator[AsyncClient]:
    """Test client backed by a single-project DB."""
    dash_module._db = api_db
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    dash_module._db = None
