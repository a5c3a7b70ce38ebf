"""Period metrics for flowloop: delivery time, first-pass rate, rework.

Derives per-period summaries from the task registry and the transition
log. Each collection recomputes the whole row; nothing is patched
incrementally.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter

from flowloop.core import DONE_STATUS, FlowloopDB
from flowloop.db_base import _parse_iso
from flowloop.types.analytics import PeriodMetricsRecord, RetroData

logger = logging.getLogger(__name__)

REVIEW_STEP = "review"


def completion_rate(metrics: PeriodMetricsRecord) -> float:
    """Completed/planned as a 0..1 ratio; 0 when nothing was planned."""
    if metrics["tasks_planned"] <= 0:
        return 0.0
    return metrics["tasks_completed"] / metrics["tasks_planned"]


class MetricsAggregator:
    """Builds and reads PeriodMetrics rows."""

    def __init__(self, db: FlowloopDB, *, review_step: str = REVIEW_STEP) -> None:
        self.db = db
        self.review_step = review_step

    def collect_period_metrics(self, period_id: str) -> bool:
        """Recompute and upsert the metrics for *period_id*.

        Returns False, without writing, if the underlying stores fail.
        """
        try:
            tasks = self.db.list_tasks(period_id=period_id)
            events = self.db.query_transitions(period_id=period_id)
            review_events = self.db.query_transitions(task_ids=[t.id for t in tasks], step_to=self.review_step)
        except sqlite3.Error:
            logger.error("Failed to read tasks/events for period %s", period_id, exc_info=True)
            return False

        completed = [t for t in tasks if t.status == DONE_STATUS]
        delivery_hours: list[float] = []
        for task in completed:
            start = _parse_iso(task.created_at)
            end = _parse_iso(task.completed_at)
            if start is not None and end is not None:
                delivery_hours.append((end - start).total_seconds() / 3600)
        avg_delivery = round(sum(delivery_hours) / len(delivery_hours), 2) if delivery_hours else None

        # First entry into review per task decides first-pass.
        first_entry: dict[str, bool] = {}
        for event in review_events:
            task_id = event["task_id"]
            if task_id is not None and task_id not in first_entry:
                first_entry[task_id] = not event["had_rework"]
        first_pass_rate: float | None = None
        if first_entry:
            first_pass_rate = round(100 * sum(first_entry.values()) / len(first_entry), 1)

        rework_count = sum(1 for e in events if e["had_rework"])

        try:
            self.db.upsert_period_metrics(
                period_id,
                tasks_planned=len(tasks),
                tasks_completed=len(completed),
                avg_delivery_hours=avg_delivery,
                first_pass_rate=first_pass_rate,
                rework_count=rework_count,
            )
        except sqlite3.Error:
            logger.error("Failed to write metrics for period %s", period_id, exc_info=True)
            return False
        logger.info("Collected metrics for period %s", period_id)
        return True

    def get_period_metrics(self, period_id: str) -> PeriodMetricsRecord | None:
        try:
            return self.db.get_period_metrics(period_id)
        except sqlite3.Error:
            logger.error("Failed to read metrics for period %s", period_id, exc_info=True)
            return None

    def get_all_period_metrics(self) -> list[PeriodMetricsRecord]:
        """All stored periods, newest-first."""
        try:
            return self.db.list_period_metrics()
        except sqlite3.Error:
            logger.error("Failed to list period metrics", exc_info=True)
            return []

    def generate_retro_data(self, period_id: str) -> RetroData | None:
        """Raw numbers for a period's retrospective, or None on store failure."""
        try:
            events = self.db.query_transitions(period_id=period_id)
            metrics = self.db.get_period_metrics(period_id)
        except sqlite3.Error:
            logger.error("Failed to build retro data for period %s", period_id, exc_info=True)
            return None

        durations = [e["duration_seconds"] for e in events if e["duration_seconds"] and e["step_from"] != e["step_to"]]
        results = Counter(e["checkpoint_result"] for e in events if e["checkpoint_result"])
        return RetroData(
            period_id=period_id,
            total_transitions=len(events),
            rework_count=sum(1 for e in events if e["had_rework"]),
            avg_step_seconds=round(sum(durations) / len(durations), 1) if durations else None,
            checkpoint_results=dict(results),
            metrics=dict(metrics) if metrics is not None else None,
        )
