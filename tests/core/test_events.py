"""Tests for the append-only transition event log."""

from __future__ import annotations

import sqlite3

import pytest

from flowloop.core import FlowloopDB


class TestAppend:
    def test_append_and_query(self, db: FlowloopDB) -> None:
        event_id = db.append_transition(
            "request",
            "decomposition",
            task_id="t-1",
            period_id="P1",
            duration_seconds=120,
            checkpoint_mode="auto",
            checkpoint_result="pass",
            notes="ok",
        )
        assert event_id > 0
        [event] = db.query_transitions(task_id="t-1")
        assert event["step_from"] == "request"
        assert event["step_to"] == "decomposition"
        assert event["duration_seconds"] == 120
        assert event["had_rework"] is False
        assert event["checkpoint_result"] == "pass"
        assert event["notes"] == "ok"

    def test_invalid_result_rejected(self, db: FlowloopDB) -> None:
        with pytest.raises(ValueError, match="Invalid checkpoint result"):
            db.append_transition("a", "b", checkpoint_result="maybe")
        assert db.count_transitions() == 0

    def test_negative_duration_rejected(self, db: FlowloopDB) -> None:
        with pytest.raises(ValueError, match="duration_seconds"):
            db.append_transition("a", "b", duration_seconds=-1)

    def test_events_are_append_only(self, db: FlowloopDB) -> None:
        db.append_transition("a", "b", task_id="t-1")
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            db.conn.execute("UPDATE transitions SET notes = 'rewritten'")
        db.conn.rollback()


class TestQuery:
    @pytest.fixture
    def seeded(self, db: FlowloopDB) -> FlowloopDB:
        db.append_transition("request", "decomposition", task_id="t-1", period_id="P1")
        db.append_transition("decomposition", "execution", task_id="t-1", period_id="P1")
        db.append_transition("request", "decomposition", task_id="t-2", period_id="P2")
        db.append_transition("review", "execution", task_id="t-2", period_id="P2", had_rework=True)
        return db

    def test_insertion_order(self, seeded: FlowloopDB) -> None:
        events = seeded.query_transitions()
        assert [e["id"] for e in events] == sorted(e["id"] for e in events)

    def test_filter_by_period(self, seeded: FlowloopDB) -> None:
        assert len(seeded.query_transitions(period_id="P1")) == 2

    def test_filter_by_task_ids(self, seeded: FlowloopDB) -> None:
        assert len(seeded.query_transitions(task_ids=["t-1", "t-2"])) == 4
        assert seeded.query_transitions(task_ids=[]) == []

    def test_filter_by_step_to(self, seeded: FlowloopDB) -> None:
        assert len(seeded.query_transitions(step_to="decomposition")) == 2

    def test_last_transition(self, seeded: FlowloopDB) -> None:
        last = seeded.get_last_transition("t-2")
        assert last is not None
        assert last["step_to"] == "execution"
        assert last["had_rework"] is True
        assert seeded.get_last_transition("t-9") is None

    def test_count(self, seeded: FlowloopDB) -> None:
        assert seeded.count_transitions() == 4
        assert seeded.count_transitions(period_id="P2") == 2
