"""Tests for the per-task transition tracker."""

from __future__ import annotations

import sqlite3
from typing import Any

import pytest

from flowloop.core import FlowloopDB
from flowloop.tracker import TransitionTracker
from flowloop.workflow import WorkflowConfigStore


@pytest.fixture
def tracker(db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> TransitionTracker:
    return TransitionTracker(db, store, task_id="test-aaaaaaaaaa", period_id="P1", clock=clock)


class TestTransition:
    def test_starts_at_first_step(self, tracker: TransitionTracker) -> None:
        assert tracker.current_step == "request"
        assert tracker.elapsed_seconds() == 0

    def test_explicit_start_step(self, db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> None:
        t = TransitionTracker(db, store, start_step="execution", clock=clock)
        assert t.current_step == "execution"

    def test_logs_durations(self, tracker: TransitionTracker, db: FlowloopDB, clock: Any) -> None:
        clock.advance(60)
        assert tracker.transition("decomposition") is True
        clock.advance(300)
        assert tracker.transition("execution", checkpoint_result="pass") is True
        clock.advance(7200)
        assert tracker.transition("review", checkpoint_result="corrected", notes="fixed lint") is True

        events = db.query_transitions(task_id="test-aaaaaaaaaa")
        assert [(e["step_from"], e["step_to"]) for e in events] == [
            ("request", "decomposition"),
            ("decomposition", "execution"),
            ("execution", "review"),
        ]
        assert [e["duration_seconds"] for e in events] == [60, 300, 7200]
        assert all(e["period_id"] == "P1" for e in events)
        assert events[2]["notes"] == "fixed lint"
        assert tracker.current_step == "review"

    def test_checkpoint_snapshot_from_step_left(self, tracker: TransitionTracker, db: FlowloopDB) -> None:
        tracker.transition("decomposition")
        tracker.transition("execution")
        first, second = db.query_transitions()
        assert first["checkpoint_mode"] == "off"
        assert first["checkpoint_result"] == "skipped"
        assert second["checkpoint_mode"] == "light"
        assert second["checkpoint_result"] is None

    def test_explicit_result_on_disabled_checkpoint(self, tracker: TransitionTracker, db: FlowloopDB) -> None:
        tracker.transition("decomposition", checkpoint_result="pass")
        [event] = db.query_transitions()
        assert event["checkpoint_result"] == "pass"

    def test_rework_flag(self, db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> None:
        t = TransitionTracker(db, store, task_id="t", start_step="review", clock=clock)
        t.transition("execution", had_rework=True, checkpoint_result="fail")
        [event] = db.query_transitions()
        assert event["had_rework"] is True
        assert event["checkpoint_result"] == "fail"

    def test_undeclared_transition_still_logged(self, tracker: TransitionTracker, db: FlowloopDB) -> None:
        assert tracker.transition("closure") is True
        assert db.count_transitions() == 1

    def test_timer_resets_after_move(self, tracker: TransitionTracker, clock: Any) -> None:
        clock.advance(100)
        tracker.transition("decomposition")
        assert tracker.elapsed_seconds() == 0
        clock.advance(5)
        assert tracker.elapsed_seconds() == 5


class TestPersistenceFailure:
    def test_store_error_returns_false_but_advances(
        self, tracker: TransitionTracker, db: FlowloopDB, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args: Any, **kwargs: Any) -> int:
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(db, "append_transition", boom)
        assert tracker.transition("decomposition") is False
        assert tracker.current_step == "decomposition"

    def test_invalid_result_returns_false(self, tracker: TransitionTracker, db: FlowloopDB) -> None:
        assert tracker.transition("decomposition", checkpoint_result="maybe") is False
        assert tracker.current_step == "decomposition"
        assert db.count_transitions() == 0


class TestLogCheckpoint:
    def test_self_loop_event(self, db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> None:
        t = TransitionTracker(db, store, task_id="t", period_id="P1", start_step="execution", clock=clock)
        clock.advance(500)
        t.log_checkpoint("fail", notes="tests red")
        [event] = db.query_transitions()
        assert event["step_from"] == event["step_to"] == "execution"
        assert event["duration_seconds"] == 0
        assert event["checkpoint_mode"] == "strict"
        assert event["checkpoint_result"] == "fail"
        assert t.current_step == "execution"
        assert t.elapsed_seconds() == 500

    def test_bad_result_is_not_raised(self, tracker: TransitionTracker, db: FlowloopDB) -> None:
        tracker.log_checkpoint("unsure")
        assert db.count_transitions() == 0


class TestResume:
    def test_resume_from_last_event(self, tracker: TransitionTracker, db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> None:
        tracker.transition("decomposition")
        tracker.transition("execution")
        resumed = TransitionTracker.resume(db, store, "test-aaaaaaaaaa", clock=clock)
        assert resumed.current_step == "execution"
        assert resumed.period_id == "P1"
        assert resumed.elapsed_seconds() >= 0

    def test_resume_without_history(self, db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> None:
        resumed = TransitionTracker.resume(db, store, "test-new", period_id="P2", clock=clock)
        assert resumed.current_step == "request"
        assert resumed.period_id == "P2"

    def test_explicit_period_wins(self, tracker: TransitionTracker, db: FlowloopDB, store: WorkflowConfigStore, clock: Any) -> None:
        tracker.transition("decomposition")
        resumed = TransitionTracker.resume(db, store, "test-aaaaaaaaaa", period_id="P9", clock=clock)
        assert resumed.period_id == "P9"
