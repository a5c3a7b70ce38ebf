"""Real-time threshold alerts over current task, event and run state.

Independent from pattern mining: checks only look at live state, each
returns its own list, and ``run_all_checks`` concatenates them with no
deduplication.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from flowloop.core import DONE_STATUS, FlowloopDB
from flowloop.db_base import _parse_iso
from flowloop.types.core import AlertSettings

logger = logging.getLogger(__name__)

AlertType = Literal[
    "stuck_task",
    "high_rework",
    "behind_schedule",
    "review_score_drop",
    "agent_failure_pattern",
    "stale_task",
]
AlertSeverity = Literal["info", "warning", "critical"]

ACTIVE_STATUS = "in_progress"
BACKLOG_STATUS = "backlog"

REWORK_MIN_EVENTS = 5
REWORK_CRITICAL_PERCENT = 60
PERIOD_DAYS = 7
PACE_MIN_EXPECTED = 0.5
PACE_WARNING_FACTOR = 0.6
PACE_CRITICAL_FACTOR = 0.3
QUALITY_DROP_POINTS = 15
QUALITY_CRITICAL_DROP_POINTS = 25
QUALITY_FLOOR = 50
WORKER_RUN_WINDOW = 20
WORKER_MIN_RUNS = 3
WORKER_FAILURE_RATIO = 0.5
WORKER_CRITICAL_RATIO = 0.75
STALE_HOURS = 48
STALE_WARNING_HOURS = 96
STALE_LIMIT = 10


@dataclass
class Alert:
    type: AlertType
    severity: AlertSeverity
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AlertThresholds:
    stuck_hours: float = 24
    rework_percent: float = 40
    pace_enabled: bool = True
    quality_window: int = 5

    @classmethod
    def from_settings(cls, settings: AlertSettings) -> AlertThresholds:
        return cls(
            stuck_hours=float(settings.get("stuck_hours", 24)),
            rework_percent=float(settings.get("rework_percent", 40)),
            pace_enabled=bool(settings.get("pace_enabled", True)),
            quality_window=int(settings.get("quality_window", 5)),
        )


def _hours_since(ts: str | None, now: datetime) -> float | None:
    dt = _parse_iso(ts)
    if dt is None:
        return None
    return (now - dt).total_seconds() / 3600


class AlertEngine:
    """Threshold checks over live state. ``clock`` returns an aware datetime."""

    def __init__(
        self,
        db: FlowloopDB,
        thresholds: AlertThresholds | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.thresholds = thresholds or AlertThresholds()
        self._clock = clock or (lambda: datetime.now(UTC))

    def check_stuck_tasks(self) -> list[Alert]:
        try:
            tasks = self.db.list_tasks(status=ACTIVE_STATUS)
        except sqlite3.Error:
            logger.error("Stuck-task check failed", exc_info=True)
            return []
        now = self._clock()
        limit = self.thresholds.stuck_hours
        alerts: list[Alert] = []
        for task in tasks:
            hours = _hours_since(task.updated_at, now)
            if hours is None or hours <= limit:
                continue
            alerts.append(
                Alert(
                    type="stuck_task",
                    severity="critical" if hours > 2 * limit else "warning",
                    message=f"Task {task.id} ({task.title}) has not moved for {round(hours)}h",
                    data={"task_id": task.id, "hours_stuck": round(hours, 1)},
                )
            )
        return alerts

    def check_rework_rate(self, period_id: str) -> list[Alert]:
        try:
            events = self.db.query_transitions(period_id=period_id)
        except sqlite3.Error:
            logger.error("Rework check failed for period %s", period_id, exc_info=True)
            return []
        if len(events) < REWORK_MIN_EVENTS:
            return []
        rework = sum(1 for e in events if e["had_rework"])
        rate = rework / len(events) * 100
        if rate <= self.thresholds.rework_percent:
            return []
        return [
            Alert(
                type="high_rework",
                severity="critical" if rate > REWORK_CRITICAL_PERCENT else "warning",
                message=f"Rework rate in period {period_id} is {round(rate)}% ({rework}/{len(events)} transitions)",
                data={"period_id": period_id, "rework": rework, "total": len(events), "rate": round(rate, 1)},
            )
        ]

    def check_schedule_pace(self, period_id: str) -> list[Alert]:
        """Compare completion against a linear 7-day expectation."""
        try:
            tasks = self.db.list_tasks(period_id=period_id)
        except sqlite3.Error:
            logger.error("Pace check failed for period %s", period_id, exc_info=True)
            return []
        if not tasks:
            return []
        starts = [dt for dt in (_parse_iso(t.created_at) for t in tasks) if dt is not None]
        if not starts:
            return []
        age_days = (self._clock() - min(starts)).total_seconds() / 86400
        expected = min(age_days / PERIOD_DAYS, 1.0)
        if expected <= PACE_MIN_EXPECTED:
            return []
        actual = sum(1 for t in tasks if t.status == DONE_STATUS) / len(tasks)
        if actual >= expected * PACE_WARNING_FACTOR:
            return []
        return [
            Alert(
                type="behind_schedule",
                severity="critical" if actual < expected * PACE_CRITICAL_FACTOR else "warning",
                message=f"Period {period_id} is behind schedule: {round(actual * 100)}% done, {round(expected * 100)}% expected",
                data={"period_id": period_id, "actual": round(actual, 3), "expected": round(expected, 3)},
            )
        ]

    def check_quality_drift(self) -> list[Alert]:
        window = self.thresholds.quality_window
        try:
            scores = self.db.get_recent_quality_scores(limit=2 * window)
        except sqlite3.Error:
            logger.error("Quality drift check failed", exc_info=True)
            return []
        if window <= 0 or len(scores) < window:
            return []
        recent_avg = sum(scores[:window]) / window
        older = scores[window:]
        alerts: list[Alert] = []
        if older:
            older_avg = sum(older) / len(older)
            drop = older_avg - recent_avg
            if drop > QUALITY_DROP_POINTS:
                alerts.append(
                    Alert(
                        type="review_score_drop",
                        severity="critical" if drop > QUALITY_CRITICAL_DROP_POINTS else "warning",
                        message=f"Review scores dropped to {round(recent_avg)} (was {round(older_avg)}, -{round(drop)} pts)",
                        data={"recent_avg": round(recent_avg), "older_avg": round(older_avg), "drop": round(drop)},
                    )
                )
        if recent_avg < QUALITY_FLOOR:
            alerts.append(
                Alert(
                    type="review_score_drop",
                    severity="critical",
                    message=f"Average review score is {round(recent_avg)}/100 over the last {window} reviews",
                    data={"recent_avg": round(recent_avg), "window": window},
                )
            )
        return alerts

    def check_worker_failures(self) -> list[Alert]:
        try:
            runs = self.db.get_recent_worker_runs(limit=WORKER_RUN_WINDOW)
        except sqlite3.Error:
            logger.error("Worker failure check failed", exc_info=True)
            return []
        if len(runs) < WORKER_MIN_RUNS:
            return []
        totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for run in runs:
            bucket = totals[run["agent"]]
            bucket[0] += 1
            if not run["success"]:
                bucket[1] += 1
        alerts: list[Alert] = []
        for agent, (count, failures) in totals.items():
            if count < WORKER_MIN_RUNS:
                continue
            ratio = failures / count
            if ratio > WORKER_FAILURE_RATIO:
                alerts.append(
                    Alert(
                        type="agent_failure_pattern",
                        severity="critical" if ratio > WORKER_CRITICAL_RATIO else "warning",
                        message=f"Worker {agent} fails often: {failures}/{count} runs ({round(ratio * 100)}%)",
                        data={"agent": agent, "failures": failures, "runs": count, "failure_rate": round(ratio * 100)},
                    )
                )
        return alerts

    def check_stale_backlog(self) -> list[Alert]:
        try:
            tasks = self.db.list_tasks(status=BACKLOG_STATUS)
        except sqlite3.Error:
            logger.error("Stale backlog check failed", exc_info=True)
            return []
        now = self._clock()
        alerts: list[Alert] = []
        for task in tasks:
            if not task.period_id:
                continue
            hours = _hours_since(task.created_at, now)
            if hours is None or hours <= STALE_HOURS:
                continue
            alerts.append(
                Alert(
                    type="stale_task",
                    severity="warning" if hours > STALE_WARNING_HOURS else "info",
                    message=f"Task {task.id} ({task.title}) has waited {round(hours)}h in the backlog",
                    data={"task_id": task.id, "period_id": task.period_id, "hours_old": round(hours)},
                )
            )
            if len(alerts) >= STALE_LIMIT:
                break
        return alerts

    def run_all_checks(self, period_id: str | None = None) -> list[Alert]:
        """Concatenate every check. Period checks run only with a period."""
        alerts = self.check_stuck_tasks()
        if period_id:
            alerts.extend(self.check_rework_rate(period_id))
            if self.thresholds.pace_enabled:
                alerts.extend(self.check_schedule_pace(period_id))
        alerts.extend(self.check_quality_drift())
        alerts.extend(self.check_worker_failures())
        alerts.extend(self.check_stale_backlog())
        if alerts:
            logger.info("Alert run produced %d alert(s)", len(alerts))
        return alerts


_SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}
_SEVERITY_ICON = {"critical": "!!", "warning": "!", "info": "~"}


def format_alerts(alerts: list[Alert]) -> str:
    if not alerts:
        return "No active alerts."
    ordered = sorted(alerts, key=lambda a: _SEVERITY_ORDER.get(a.severity, 3))
    lines = [f"{len(alerts)} alert{'s' if len(alerts) > 1 else ''}:", ""]
    lines.extend(f"  {_SEVERITY_ICON.get(a.severity, '~')} {a.message}" for a in ordered)
    return "\n".join(lines)
