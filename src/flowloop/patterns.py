"""Multi-period pattern mining over the transition log and period metrics.

Every detector has a minimum sample size and stays silent below it.
Findings map deterministically to WorkflowSuggestions; the ones carrying
a ``change`` string can be fed to ``WorkflowConfigStore.apply_suggestion``.
"""

from __future__ import annotations

import logging
import sqlite3
import statistics
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from flowloop.core import FlowloopDB
from flowloop.metrics import completion_rate
from flowloop.types.analytics import PeriodMetricsRecord
from flowloop.types.events import TransitionEventRecord
from flowloop.workflow import WorkflowConfigStore

logger = logging.getLogger(__name__)

PatternType = Literal["slow_step", "useless_checkpoint", "critical_checkpoint", "high_rework", "improving", "degrading"]
Severity = Literal["info", "warning", "critical"]
Priority = Literal["high", "medium", "low"]

# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

SLOW_STEP_MIN_SAMPLES = 3
SLOW_STEP_MEAN_SECONDS = 3600
SLOW_STEP_MEDIAN_SECONDS = 2700
SLOW_STEP_WARNING_SECONDS = 7200

USELESS_CHECKPOINT_MIN_SAMPLES = 5
CRITICAL_CHECKPOINT_MIN_SAMPLES = 3
CRITICAL_CHECKPOINT_RATIO = 0.3
CRITICAL_CHECKPOINT_SEVERE_RATIO = 0.5

REWORK_MIN_TRANSITIONS = 3
REWORK_RATIO = 0.25
REWORK_SEVERE_RATIO = 0.5

TREND_MIN_PERIODS = 2
TREND_WINDOW = 3
TREND_SLOPE = 0.05


@dataclass
class DetectedPattern:
    type: PatternType
    severity: Severity
    description: str
    evidence: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowSuggestion:
    """A proposed process edit. ``change`` is machine-applicable when set."""

    action: str
    reason: str
    priority: Priority
    target_step: str | None = None
    change: str | None = None


@dataclass
class AnalysisResult:
    patterns: list[DetectedPattern]
    suggestions: list[WorkflowSuggestion]
    periods_analyzed: int
    analyzed_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def format_duration(seconds: float) -> str:
    """Render seconds as ``Ns``, ``Nmin``, ``Nh`` or ``NhMmin``."""
    total = round(seconds)
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{round(total / 60)}min"
    hours, rest = divmod(total, 3600)
    minutes = round(rest / 60)
    return f"{hours}h{minutes}min" if minutes else f"{hours}h"


def _linear_slope(values: list[float]) -> float:
    """Ordinary least-squares slope of *values* against 0..n-1."""
    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    num = sum((i - mean_x) * (y - mean_y) for i, y in enumerate(values))
    den = sum((i - mean_x) ** 2 for i in range(n))
    return num / den if den else 0.0


class PatternDetector:
    """Mines the whole history for durable patterns and suggests edits."""

    def __init__(self, db: FlowloopDB, store: WorkflowConfigStore, *, min_periods: int = TREND_MIN_PERIODS) -> None:
        self.db = db
        self.store = store
        self.min_periods = min_periods

    def analyze(self) -> AnalysisResult:
        """Run every detector over the full history.

        A store failure yields an empty result rather than an exception.
        """
        analyzed_at = datetime.now(UTC).isoformat()
        try:
            events = self.db.query_transitions()
            metrics = self.db.list_period_metrics()
            accepted = self.db.list_accepted_actions()
        except sqlite3.Error:
            logger.error("Pattern analysis failed to read history", exc_info=True)
            return AnalysisResult(patterns=[], suggestions=[], periods_analyzed=0, analyzed_at=analyzed_at)

        patterns = [
            *self.detect_slow_steps(events),
            *self.detect_checkpoint_utility(events),
            *self.detect_high_rework(events),
            *self.detect_trend(metrics),
        ]
        suggestions = self.generate_suggestions(patterns, accepted_actions=accepted)
        logger.info("Pattern analysis: %d pattern(s), %d suggestion(s)", len(patterns), len(suggestions))
        return AnalysisResult(
            patterns=patterns,
            suggestions=suggestions,
            periods_analyzed=len(metrics),
            analyzed_at=analyzed_at,
        )

    # -- Detectors ------------------------------------------------------------

    def detect_slow_steps(self, events: list[TransitionEventRecord]) -> list[DetectedPattern]:
        durations: dict[str, list[int]] = defaultdict(list)
        for e in events:
            if e["duration_seconds"] and e["step_from"] != e["step_to"]:
                durations[e["step_from"]].append(e["duration_seconds"])

        found: list[DetectedPattern] = []
        for step, samples in durations.items():
            if len(samples) < SLOW_STEP_MIN_SAMPLES:
                continue
            mean = sum(samples) / len(samples)
            median = statistics.median(samples)
            if mean > SLOW_STEP_MEAN_SECONDS and median > SLOW_STEP_MEDIAN_SECONDS:
                found.append(
                    DetectedPattern(
                        type="slow_step",
                        severity="warning" if mean > SLOW_STEP_WARNING_SECONDS else "info",
                        description=f"Step '{step}' is slow: {format_duration(mean)} on average",
                        evidence={
                            "step": step,
                            "avg_seconds": round(mean),
                            "median_seconds": round(median),
                            "samples": len(samples),
                        },
                    )
                )
        return found

    def detect_checkpoint_utility(self, events: list[TransitionEventRecord]) -> list[DetectedPattern]:
        tallies: dict[str, dict[str, int]] = defaultdict(lambda: {"total": 0, "pass": 0, "fail": 0, "corrected": 0, "skipped": 0})
        for e in events:
            result = e["checkpoint_result"]
            if not result:
                continue
            tally = tallies[e["step_from"]]
            tally["total"] += 1
            if result in tally:
                tally[result] += 1

        found: list[DetectedPattern] = []
        for step, t in tallies.items():
            total = t["total"]
            if total >= USELESS_CHECKPOINT_MIN_SAMPLES and (t["pass"] == total or t["skipped"] == total):
                outcome = "passes" if t["pass"] == total else "is skipped"
                found.append(
                    DetectedPattern(
                        type="useless_checkpoint",
                        severity="info",
                        description=f"Checkpoint on '{step}' always {outcome} ({total} evaluations)",
                        evidence={"step": step, **t},
                    )
                )
            if total >= CRITICAL_CHECKPOINT_MIN_SAMPLES:
                ratio = (t["fail"] + t["corrected"]) / total
                if ratio > CRITICAL_CHECKPOINT_RATIO:
                    found.append(
                        DetectedPattern(
                            type="critical_checkpoint",
                            severity="critical" if ratio > CRITICAL_CHECKPOINT_SEVERE_RATIO else "warning",
                            description=f"Checkpoint on '{step}' catches problems {round(ratio * 100)}% of the time",
                            evidence={"step": step, "catch_rate": round(ratio, 3), **t},
                        )
                    )
        return found

    def detect_high_rework(self, events: list[TransitionEventRecord]) -> list[DetectedPattern]:
        per_period: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        for e in events:
            if not e["period_id"]:
                continue
            bucket = per_period[e["period_id"]]
            bucket[0] += 1
            if e["had_rework"]:
                bucket[1] += 1

        found: list[DetectedPattern] = []
        for period, (total, rework) in per_period.items():
            if total < REWORK_MIN_TRANSITIONS:
                continue
            ratio = rework / total
            if ratio > REWORK_RATIO:
                found.append(
                    DetectedPattern(
                        type="high_rework",
                        severity="critical" if ratio > REWORK_SEVERE_RATIO else "warning",
                        description=f"Period '{period}' had {round(ratio * 100)}% rework ({rework}/{total} transitions)",
                        evidence={"period_id": period, "rework": rework, "total": total, "ratio": round(ratio, 3)},
                    )
                )
        return found

    def detect_trend(self, metrics: list[PeriodMetricsRecord]) -> list[DetectedPattern]:
        """Fit a slope over the latest completion rates. *metrics* is newest-first."""
        if len(metrics) < self.min_periods:
            return []
        rates = [completion_rate(m) for m in reversed(metrics) if m["tasks_planned"] > 0]
        if len(rates) < 2:
            return []
        recent = rates[-TREND_WINDOW:]
        slope = _linear_slope(recent)
        evidence = {"completion_rates": [round(r, 3) for r in recent], "slope": round(slope, 4)}
        if slope > TREND_SLOPE:
            return [
                DetectedPattern(
                    type="improving",
                    severity="info",
                    description=f"Completion rate is improving over the last {len(recent)} periods",
                    evidence=evidence,
                )
            ]
        if slope < -TREND_SLOPE:
            return [
                DetectedPattern(
                    type="degrading",
                    severity="warning",
                    description=f"Completion rate is degrading over the last {len(recent)} periods",
                    evidence=evidence,
                )
            ]
        return []

    # -- Suggestions ----------------------------------------------------------

    def generate_suggestions(
        self,
        patterns: list[DetectedPattern],
        *,
        accepted_actions: list[str] | None = None,
    ) -> list[WorkflowSuggestion]:
        """Map findings to suggestions, dropping ones already accepted in a retro."""
        suggestions: list[WorkflowSuggestion] = []
        for p in patterns:
            suggestion = self._suggest_for(p)
            if suggestion is not None and all(s.action != suggestion.action for s in suggestions):
                suggestions.append(suggestion)

        accepted_text = "\n".join(a.lower() for a in accepted_actions or [])
        if not accepted_text:
            return suggestions
        return [s for s in suggestions if s.action.lower() not in accepted_text]

    def _suggest_for(self, p: DetectedPattern) -> WorkflowSuggestion | None:
        step = p.evidence.get("step")
        # A step dropped from the config has no mode; checkpoint findings on it still suggest.
        step_config = self.store.get_step(step) if step else None
        mode = step_config.checkpoint.mode if step_config is not None else None
        match p.type:
            case "slow_step" if mode == "strict":
                return WorkflowSuggestion(
                    action=f"Lighten the '{step}' checkpoint from strict to light",
                    reason=p.description,
                    priority="medium",
                    target_step=step,
                    change="checkpoint.mode: light",
                )
            case "useless_checkpoint" if mode != "off":
                return WorkflowSuggestion(
                    action=f"Disable the '{step}' checkpoint",
                    reason=p.description,
                    priority="low",
                    target_step=step,
                    change="checkpoint.mode: off",
                )
            case "critical_checkpoint" if mode != "strict":
                return WorkflowSuggestion(
                    action=f"Make the '{step}' checkpoint strict",
                    reason=p.description,
                    priority="high",
                    target_step=step,
                    change="checkpoint.mode: strict",
                )
            case "high_rework":
                return WorkflowSuggestion(
                    action="Strengthen checkpoints before the review phase",
                    reason=p.description,
                    priority="high",
                )
            case "degrading":
                return WorkflowSuggestion(
                    action="Reduce period scope to improve the completion rate",
                    reason=p.description,
                    priority="medium",
                )
        return None


def format_analysis(result: AnalysisResult) -> str:
    """Human-readable report of an analysis run."""
    if not result.patterns:
        return f"No patterns detected ({result.periods_analyzed} period(s) analyzed)."
    lines = [f"PATTERNS ({result.periods_analyzed} period(s) analyzed)", ""]
    for p in result.patterns:
        lines.append(f"[{p.severity.upper()}] {p.type}: {p.description}")
    if result.suggestions:
        lines.append("")
        lines.append("SUGGESTIONS")
        for s in result.suggestions:
            change = f"  ({s.target_step}: {s.change})" if s.change else ""
            lines.append(f"  [{s.priority}] {s.action}{change}")
    return "\n".join(lines)
