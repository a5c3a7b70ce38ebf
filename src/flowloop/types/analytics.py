"""TypedDicts for period metrics and retrospective records."""

from __future__ import annotations

from typing import Any, TypedDict

from flowloop.types.core import ISOTimestamp


class PeriodMetricsRecord(TypedDict):
    period_id: str
    tasks_planned: int
    tasks_completed: int
    avg_delivery_hours: float | None
    first_pass_rate: float | None
    rework_count: int
    closed_at: ISOTimestamp | None
    updated_at: ISOTimestamp


class RetroRecord(TypedDict):
    """A retrospective for one period. List fields hold free text items."""

    period_id: str
    what_worked: list[str]
    what_didnt: list[str]
    patterns_detected: list[str]
    actions_proposed: list[str]
    actions_accepted: list[str]
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class RetroData(TypedDict):
    """Raw numbers for a period, returned by ``generate_retro_data()``."""

    period_id: str
    total_transitions: int
    rework_count: int
    avg_step_seconds: float | None
    checkpoint_results: dict[str, int]
    metrics: dict[str, Any] | None
