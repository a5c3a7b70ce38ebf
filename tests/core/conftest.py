"""Fixtures for core DB tests."""

from __future__ import annotations

import pytest

from flowloop.core import FlowloopDB, Task


@pytest.fixture
def period_tasks(db: FlowloopDB) -> list[Task]:
    """Three tasks planned in period P1, one of them done."""
    tasks = [db.create_task(f"Task {i}", priority=i + 1, period_id="P1") for i in range(3)]
    tasks[0] = db.update_task(tasks[0].id, status="done")
    return tasks
