"""Per-task transition tracker.

One tracker owns the step pointer for one task/period pair and appends a
TransitionEvent to the log on every move. The tracker does not enforce the
transition graph; ``WorkflowConfigStore.can_transition`` is advisory.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from datetime import UTC, datetime

from flowloop.core import FlowloopDB
from flowloop.db_base import _parse_iso
from flowloop.workflow import WorkflowConfigStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TransitionTracker:
    """Tracks the current step of a single work item.

    ``clock`` must be monotonic; it defaults to ``time.monotonic`` and is
    injectable for tests.
    """

    def __init__(
        self,
        db: FlowloopDB,
        store: WorkflowConfigStore,
        *,
        task_id: str | None = None,
        period_id: str | None = None,
        start_step: str | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.db = db
        self.store = store
        self.task_id = task_id
        self.period_id = period_id
        self._clock = clock
        self.current_step = start_step or store.first_step
        self.step_entered_at = clock()

    @classmethod
    def resume(
        cls,
        db: FlowloopDB,
        store: WorkflowConfigStore,
        task_id: str,
        *,
        period_id: str | None = None,
        clock: Clock = time.monotonic,
    ) -> TransitionTracker:
        """Rebuild a tracker for *task_id* from its last logged event.

        Time already spent in the current step is taken from the wall-clock
        age of that event, so durations survive a process restart.
        """
        try:
            last = db.get_last_transition(task_id)
        except sqlite3.Error:
            logger.error("Failed to read last transition for %s", task_id, exc_info=True)
            last = None
        tracker = cls(db, store, task_id=task_id, period_id=period_id, clock=clock)
        if last is not None:
            tracker.current_step = last["step_to"]
            tracker.period_id = period_id or last["period_id"]
            logged_at = _parse_iso(last["created_at"])
            if logged_at is not None:
                elapsed = (datetime.now(UTC) - logged_at).total_seconds()
                tracker.step_entered_at -= max(0.0, elapsed)
        return tracker

    def elapsed_seconds(self) -> int:
        return max(0, round(self._clock() - self.step_entered_at))

    def transition(
        self,
        to_step: str,
        *,
        had_rework: bool = False,
        checkpoint_result: str | None = None,
        notes: str = "",
    ) -> bool:
        """Move to *to_step* and log the event.

        The checkpoint snapshot comes from the step being left. Without an
        explicit result, a disabled checkpoint records ``"skipped"``.
        Returns False when the event could not be persisted; the local step
        pointer advances regardless.
        """
        duration = self.elapsed_seconds()
        policy = self.store.get_checkpoint_policy(self.current_step)
        if checkpoint_result is None and not policy.enabled:
            checkpoint_result = "skipped"

        step_from = self.current_step
        persisted = True
        try:
            self.db.append_transition(
                step_from,
                to_step,
                task_id=self.task_id,
                period_id=self.period_id,
                duration_seconds=duration,
                had_rework=had_rework,
                checkpoint_mode=policy.mode,
                checkpoint_result=checkpoint_result,
                notes=notes,
            )
        except (sqlite3.Error, ValueError):
            logger.error(
                "Failed to log transition %s -> %s for task %s",
                step_from,
                to_step,
                self.task_id,
                exc_info=True,
            )
            persisted = False

        self.current_step = to_step
        self.step_entered_at = self._clock()
        return persisted

    def log_checkpoint(self, result: str, notes: str = "") -> None:
        """Record a checkpoint outcome for the current step without moving."""
        policy = self.store.get_checkpoint_policy(self.current_step)
        try:
            self.db.append_transition(
                self.current_step,
                self.current_step,
                task_id=self.task_id,
                period_id=self.period_id,
                duration_seconds=0,
                checkpoint_mode=policy.mode,
                checkpoint_result=result,
                notes=notes,
            )
        except (sqlite3.Error, ValueError):
            logger.error("Failed to log checkpoint on %s for task %s", self.current_step, self.task_id, exc_info=True)
