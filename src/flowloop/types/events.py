"""TypedDicts for db_events.py return types."""

from __future__ import annotations

from typing import TypedDict

from flowloop.types.core import ISOTimestamp


class TransitionEventRecord(TypedDict):
    """Row from the transitions table, with ``had_rework`` coerced to bool."""

    id: int
    task_id: str | None
    period_id: str | None
    step_from: str
    step_to: str
    duration_seconds: int
    had_rework: bool
    checkpoint_mode: str | None
    checkpoint_result: str | None
    notes: str
    created_at: ISOTimestamp
