"""TasksMixin: task registry, review quality scores, and worker runs.

All methods access ``self.conn`` via Python's MRO when composed into
``FlowloopDB``.
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from flowloop.db_base import DONE_STATUS, VALID_TASK_STATUSES, DBMixinProtocol, _now_iso
from flowloop.types.core import ISOTimestamp, TaskDict


@dataclass
class Task:
    id: str
    title: str
    status: str = "backlog"
    priority: int = 3
    period_id: str | None = None
    assignee: str = ""
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None

    def to_dict(self) -> TaskDict:
        return TaskDict(
            id=self.id,
            title=self.title,
            status=self.status,
            priority=self.priority,
            period_id=self.period_id,
            assignee=self.assignee,
            created_at=ISOTimestamp(self.created_at),
            updated_at=ISOTimestamp(self.updated_at),
            completed_at=ISOTimestamp(self.completed_at) if self.completed_at else None,
        )


def _validate_priority(priority: int) -> None:
    if not isinstance(priority, int) or isinstance(priority, bool) or not 1 <= priority <= 5:
        msg = f"Priority must be an integer between 1 and 5, got {priority!r}"
        raise ValueError(msg)


def _build_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        status=row["status"],
        priority=row["priority"],
        period_id=row["period_id"],
        assignee=row["assignee"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


class TasksMixin(DBMixinProtocol):
    """Task registry plus the quality and worker-run logs that feed alerts."""

    def _generate_task_id(self) -> str:
        for _ in range(10):
            candidate = f"{self.prefix}-{uuid.uuid4().hex[:10]}"
            if self.conn.execute("SELECT 1 FROM tasks WHERE id = ?", (candidate,)).fetchone() is None:
                return candidate
        return f"{self.prefix}-{uuid.uuid4().hex[:16]}"

    # -- Tasks ---------------------------------------------------------------

    def create_task(
        self,
        title: str,
        *,
        priority: int = 3,
        period_id: str | None = None,
        assignee: str = "",
    ) -> Task:
        if not title or not title.strip():
            msg = "Task title must not be empty"
            raise ValueError(msg)
        _validate_priority(priority)
        now = _now_iso()
        task_id = self._generate_task_id()
        self.conn.execute(
            "INSERT INTO tasks (id, title, status, priority, period_id, assignee, created_at, updated_at) "
            "VALUES (?, ?, 'backlog', ?, ?, ?, ?, ?)",
            (task_id, title.strip(), priority, period_id, assignee, now, now),
        )
        self.conn.commit()
        return self.get_task(task_id)

    def get_task(self, task_id: str) -> Task:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise KeyError(task_id)
        return _build_task(row)

    def update_task(
        self,
        task_id: str,
        *,
        status: str | None = None,
        priority: int | None = None,
        period_id: str | None = None,
        assignee: str | None = None,
    ) -> Task:
        """Update task fields. Moving to ``done`` stamps ``completed_at``."""
        current = self.get_task(task_id)
        updates: dict[str, Any] = {}
        if status is not None and status != current.status:
            if status not in VALID_TASK_STATUSES:
                msg = f"Invalid status '{status}'. Valid: {', '.join(sorted(VALID_TASK_STATUSES))}"
                raise ValueError(msg)
            updates["status"] = status
            if status == DONE_STATUS:
                updates["completed_at"] = _now_iso()
            elif current.status == DONE_STATUS:
                updates["completed_at"] = None
        if priority is not None:
            _validate_priority(priority)
            updates["priority"] = priority
        if period_id is not None:
            updates["period_id"] = period_id or None
        if assignee is not None:
            updates["assignee"] = assignee
        if not updates:
            return current

        updates["updated_at"] = _now_iso()
        columns = ", ".join(f"{col} = ?" for col in updates)
        self.conn.execute(f"UPDATE tasks SET {columns} WHERE id = ?", (*updates.values(), task_id))
        self.conn.commit()
        return self.get_task(task_id)

    def list_tasks(self, *, period_id: str | None = None, status: str | None = None) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if period_id is not None:
            clauses.append("period_id = ?")
            params.append(period_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(f"SELECT * FROM tasks{where} ORDER BY created_at, id", params).fetchall()
        return [_build_task(r) for r in rows]

    # -- Quality scores and worker runs --------------------------------------

    def record_quality_score(self, score: float, *, task_id: str | None = None, reviewer: str = "") -> int:
        if not 0 <= score <= 100:
            msg = f"Quality score must be between 0 and 100, got {score!r}"
            raise ValueError(msg)
        cursor = self.conn.execute(
            "INSERT INTO quality_scores (task_id, score, reviewer, created_at) VALUES (?, ?, ?, ?)",
            (task_id, score, reviewer, _now_iso()),
        )
        self.conn.commit()
        return int(cursor.lastrowid or 0)

    def get_recent_quality_scores(self, limit: int = 10) -> list[float]:
        """Scores newest-first."""
        rows = self.conn.execute(
            "SELECT score FROM quality_scores ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [float(r["score"]) for r in rows]

    def record_worker_run(self, agent: str, *, success: bool, task_id: str | None = None, error: str = "") -> int:
        if not agent:
            msg = "Worker run requires an agent name"
            raise ValueError(msg)
        cursor = self.conn.execute(
            "INSERT INTO worker_runs (agent, task_id, success, error, created_at) VALUES (?, ?, ?, ?, ?)",
            (agent, task_id, int(success), error, _now_iso()),
        )
        self.conn.commit()
        return int(cursor.lastrowid or 0)

    def get_recent_worker_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT agent, task_id, success, error, created_at FROM worker_runs ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [{**dict(r), "success": bool(r["success"])} for r in rows]
