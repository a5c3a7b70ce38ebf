"""EventsMixin: append-only transition event log.

Events are written once and never updated; the schema enforces this
with a BEFORE UPDATE trigger.
"""

from __future__ import annotations

import sqlite3
from typing import Any

from flowloop.db_base import DBMixinProtocol, _now_iso
from flowloop.types.core import ISOTimestamp
from flowloop.types.events import TransitionEventRecord

VALID_CHECKPOINT_RESULTS: frozenset[str] = frozenset({"pass", "fail", "skipped", "corrected"})


def _build_event(row: sqlite3.Row) -> TransitionEventRecord:
    return TransitionEventRecord(
        id=row["id"],
        task_id=row["task_id"],
        period_id=row["period_id"],
        step_from=row["step_from"],
        step_to=row["step_to"],
        duration_seconds=row["duration_seconds"],
        had_rework=bool(row["had_rework"]),
        checkpoint_mode=row["checkpoint_mode"],
        checkpoint_result=row["checkpoint_result"],
        notes=row["notes"] or "",
        created_at=ISOTimestamp(row["created_at"]),
    )


class EventsMixin(DBMixinProtocol):
    """Append and query methods for the transitions table."""

    def append_transition(
        self,
        step_from: str,
        step_to: str,
        *,
        task_id: str | None = None,
        period_id: str | None = None,
        duration_seconds: int = 0,
        had_rework: bool = False,
        checkpoint_mode: str | None = None,
        checkpoint_result: str | None = None,
        notes: str = "",
    ) -> int:
        """Append one event and return its row id.

        Raises ValueError for an unknown checkpoint result or a negative
        duration; sqlite3.Error propagates to the caller.
        """
        if checkpoint_result is not None and checkpoint_result not in VALID_CHECKPOINT_RESULTS:
            msg = f"Invalid checkpoint result '{checkpoint_result}'. Valid: {', '.join(sorted(VALID_CHECKPOINT_RESULTS))}"
            raise ValueError(msg)
        if duration_seconds < 0:
            msg = f"duration_seconds must be >= 0, got {duration_seconds}"
            raise ValueError(msg)
        cursor = self.conn.execute(
            "INSERT INTO transitions (task_id, period_id, step_from, step_to, duration_seconds, had_rework, "
            "checkpoint_mode, checkpoint_result, notes, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task_id,
                period_id,
                step_from,
                step_to,
                duration_seconds,
                int(had_rework),
                checkpoint_mode,
                checkpoint_result,
                notes,
                _now_iso(),
            ),
        )
        self.conn.commit()
        return int(cursor.lastrowid or 0)

    def query_transitions(
        self,
        *,
        task_id: str | None = None,
        period_id: str | None = None,
        task_ids: list[str] | None = None,
        step_to: str | None = None,
    ) -> list[TransitionEventRecord]:
        """Return matching events in insertion order."""
        clauses: list[str] = []
        params: list[Any] = []
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if period_id is not None:
            clauses.append("period_id = ?")
            params.append(period_id)
        if task_ids is not None:
            if not task_ids:
                return []
            clauses.append(f"task_id IN ({','.join('?' * len(task_ids))})")
            params.extend(task_ids)
        if step_to is not None:
            clauses.append("step_to = ?")
            params.append(step_to)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(f"SELECT * FROM transitions{where} ORDER BY id", params).fetchall()
        return [_build_event(r) for r in rows]

    def get_last_transition(self, task_id: str) -> TransitionEventRecord | None:
        row = self.conn.execute(
            "SELECT * FROM transitions WHERE task_id = ? ORDER BY id DESC LIMIT 1",
            (task_id,),
        ).fetchone()
        return _build_event(row) if row is not None else None

    def count_transitions(self, *, period_id: str | None = None) -> int:
        if period_id is None:
            return int(self.conn.execute("SELECT COUNT(*) FROM transitions").fetchone()[0])
        return int(self.conn.execute("SELECT COUNT(*) FROM transitions WHERE period_id = ?", (period_id,)).fetchone()[0])
