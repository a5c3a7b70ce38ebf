"""MetricsMixin: period metrics store and retrospective store."""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from flowloop.db_base import DBMixinProtocol, _json_list, _now_iso
from flowloop.types.analytics import PeriodMetricsRecord, RetroRecord
from flowloop.types.core import ISOTimestamp

_RETRO_LIST_FIELDS = ("what_worked", "what_didnt", "patterns_detected", "actions_proposed", "actions_accepted")


def _build_metrics(row: sqlite3.Row) -> PeriodMetricsRecord:
    return PeriodMetricsRecord(
        period_id=row["period_id"],
        tasks_planned=row["tasks_planned"],
        tasks_completed=row["tasks_completed"],
        avg_delivery_hours=row["avg_delivery_hours"],
        first_pass_rate=row["first_pass_rate"],
        rework_count=row["rework_count"],
        closed_at=ISOTimestamp(row["closed_at"]) if row["closed_at"] else None,
        updated_at=ISOTimestamp(row["updated_at"]),
    )


def _build_retro(row: sqlite3.Row) -> RetroRecord:
    return RetroRecord(
        period_id=row["period_id"],
        what_worked=_json_list(row["what_worked"]),
        what_didnt=_json_list(row["what_didnt"]),
        patterns_detected=_json_list(row["patterns_detected"]),
        actions_proposed=_json_list(row["actions_proposed"]),
        actions_accepted=_json_list(row["actions_accepted"]),
        created_at=ISOTimestamp(row["created_at"]),
        updated_at=ISOTimestamp(row["updated_at"]),
    )


def _validate_text_list(value: object, name: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"{name} must be a list of strings"
        raise ValueError(msg)
    return value


class MetricsMixin(DBMixinProtocol):
    """Upsert/read methods for ``period_metrics`` and ``retros``."""

    # -- Period metrics -------------------------------------------------------

    def upsert_period_metrics(
        self,
        period_id: str,
        *,
        tasks_planned: int,
        tasks_completed: int,
        avg_delivery_hours: float | None,
        first_pass_rate: float | None,
        rework_count: int,
    ) -> None:
        """Replace the whole metrics row for *period_id*."""
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO period_metrics (period_id, tasks_planned, tasks_completed, avg_delivery_hours, "
            "first_pass_rate, rework_count, closed_at, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(period_id) DO UPDATE SET tasks_planned = excluded.tasks_planned, "
            "tasks_completed = excluded.tasks_completed, avg_delivery_hours = excluded.avg_delivery_hours, "
            "first_pass_rate = excluded.first_pass_rate, rework_count = excluded.rework_count, "
            "closed_at = excluded.closed_at, updated_at = excluded.updated_at",
            (period_id, tasks_planned, tasks_completed, avg_delivery_hours, first_pass_rate, rework_count, now, now, now),
        )
        self.conn.commit()

    def get_period_metrics(self, period_id: str) -> PeriodMetricsRecord | None:
        row = self.conn.execute("SELECT * FROM period_metrics WHERE period_id = ?", (period_id,)).fetchone()
        return _build_metrics(row) if row is not None else None

    def list_period_metrics(self) -> list[PeriodMetricsRecord]:
        """All periods, newest-first by first collection."""
        rows = self.conn.execute("SELECT * FROM period_metrics ORDER BY created_at DESC, rowid DESC").fetchall()
        return [_build_metrics(r) for r in rows]

    # -- Retrospectives ------------------------------------------------------

    def save_retro(
        self,
        period_id: str,
        *,
        what_worked: list[str] | None = None,
        what_didnt: list[str] | None = None,
        patterns_detected: list[str] | None = None,
        actions_proposed: list[str] | None = None,
        actions_accepted: list[str] | None = None,
    ) -> RetroRecord:
        """Create or fully replace the retrospective for *period_id*."""
        values = {
            "what_worked": what_worked or [],
            "what_didnt": what_didnt or [],
            "patterns_detected": patterns_detected or [],
            "actions_proposed": actions_proposed or [],
            "actions_accepted": actions_accepted or [],
        }
        for name, value in values.items():
            _validate_text_list(value, name)
        now = _now_iso()
        self.conn.execute(
            "INSERT INTO retros (period_id, what_worked, what_didnt, patterns_detected, actions_proposed, "
            "actions_accepted, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(period_id) DO UPDATE SET what_worked = excluded.what_worked, "
            "what_didnt = excluded.what_didnt, patterns_detected = excluded.patterns_detected, "
            "actions_proposed = excluded.actions_proposed, actions_accepted = excluded.actions_accepted, "
            "updated_at = excluded.updated_at",
            (period_id, *(json.dumps(v) for v in values.values()), now, now),
        )
        self.conn.commit()
        retro = self.get_retro(period_id)
        assert retro is not None
        return retro

    def get_retro(self, period_id: str) -> RetroRecord | None:
        row = self.conn.execute("SELECT * FROM retros WHERE period_id = ?", (period_id,)).fetchone()
        return _build_retro(row) if row is not None else None

    def update_retro(self, period_id: str, **fields: list[str]) -> RetroRecord:
        """Replace selected list fields of an existing retro. Raises KeyError if absent."""
        if self.get_retro(period_id) is None:
            raise KeyError(period_id)
        unknown = set(fields) - set(_RETRO_LIST_FIELDS)
        if unknown:
            msg = f"Unknown retro fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        if fields:
            params: list[Any] = [json.dumps(_validate_text_list(v, k)) for k, v in fields.items()]
            columns = ", ".join(f"{k} = ?" for k in fields)
            self.conn.execute(
                f"UPDATE retros SET {columns}, updated_at = ? WHERE period_id = ?",
                (*params, _now_iso(), period_id),
            )
            self.conn.commit()
        retro = self.get_retro(period_id)
        assert retro is not None
        return retro

    def accept_retro_actions(self, period_id: str, actions: list[str]) -> RetroRecord:
        """Append *actions* to the retro's accepted list, skipping duplicates."""
        retro = self.get_retro(period_id)
        if retro is None:
            raise KeyError(period_id)
        accepted = list(retro["actions_accepted"])
        for action in _validate_text_list(actions, "actions"):
            if action not in accepted:
                accepted.append(action)
        return self.update_retro(period_id, actions_accepted=accepted)

    def list_accepted_actions(self) -> list[str]:
        rows = self.conn.execute("SELECT actions_accepted FROM retros ORDER BY created_at").fetchall()
        actions: list[str] = []
        for row in rows:
            actions.extend(a for a in _json_list(row["actions_accepted"]) if isinstance(a, str))
        return actions
