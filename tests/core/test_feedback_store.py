"""Tests for feedback rule, workflow audit and proposal storage."""

from __future__ import annotations

import pytest

from flowloop.core import FlowloopDB


class TestFeedbackRules:
    def test_insert_starts_inactive(self, db: FlowloopDB) -> None:
        rule = db.insert_feedback_rule("dev", "missing tests", "Write tests first", period_id="P1")
        assert rule["occurrences"] == 1
        assert rule["periods"] == ["P1"]
        assert rule["active"] is False

    def test_update_and_filter(self, db: FlowloopDB) -> None:
        rule = db.insert_feedback_rule("dev", "missing tests", "Write tests first", period_id="P1")
        db.insert_feedback_rule("qa", "flaky", "Quarantine flaky tests", period_id="P1")
        db.update_feedback_rule(rule["id"], occurrences=2, periods=["P1", "P2"], active=True)

        active = db.list_feedback_rules(active_only=True)
        assert [r["id"] for r in active] == [rule["id"]]
        assert active[0]["periods"] == ["P1", "P2"]
        assert len(db.list_feedback_rules(target="qa")) == 1

    def test_ordered_by_occurrences(self, db: FlowloopDB) -> None:
        first = db.insert_feedback_rule("dev", "a", "A", period_id="P1")
        second = db.insert_feedback_rule("dev", "b", "B", period_id="P1")
        db.update_feedback_rule(second["id"], occurrences=3, periods=["P1", "P2", "P3"], active=True)
        assert [r["id"] for r in db.list_feedback_rules()] == [second["id"], first["id"]]

    def test_update_missing_raises(self, db: FlowloopDB) -> None:
        with pytest.raises(KeyError):
            db.update_feedback_rule(99, occurrences=1, periods=[], active=False)


class TestWorkflowAudit:
    def test_record_and_read_newest_first(self, db: FlowloopDB) -> None:
        db.record_workflow_audit(author="a", action="apply", reason="r1", changes=["x"], config_version=2, snapshot={"v": 2})
        db.record_workflow_audit(author="b", action="apply", reason="r2", changes=["y"], config_version=3, snapshot={"v": 3})
        records = db.get_workflow_audit()
        assert [r["config_version"] for r in records] == [3, 2]
        assert records[0]["author"] == "b"
        assert records[0]["changes"] == ["y"]
        assert records[0]["snapshot"] == {"v": 3}
        assert len(db.get_workflow_audit(limit=1)) == 1


class TestProposals:
    def _insert(self, db: FlowloopDB) -> int:
        proposal = db.insert_proposal(
            proposal_type="checkpoint_change",
            target="validation",
            description="Validation never fails",
            suggested_value="disabled",
            source_project="alpha",
            source_period="P1",
        )
        return proposal["id"]

    def test_insert(self, db: FlowloopDB) -> None:
        proposal = db.get_proposal(self._insert(db))
        assert proposal["votes"] == ["alpha"]
        assert proposal["status"] == "pending"
        assert proposal["promoted_at"] is None

    def test_find_pending(self, db: FlowloopDB) -> None:
        proposal_id = self._insert(db)
        found = db.find_pending_proposal("checkpoint_change", "validation", "disabled")
        assert found is not None
        assert found["id"] == proposal_id
        assert db.find_pending_proposal("checkpoint_change", "validation", "required") is None

    def test_promotion_stamps_time(self, db: FlowloopDB) -> None:
        proposal_id = self._insert(db)
        promoted = db.update_proposal(proposal_id, votes=["alpha", "beta"], status="promoted")
        assert promoted["promoted_at"] is not None
        assert promoted["votes"] == ["alpha", "beta"]
        assert db.find_pending_proposal("checkpoint_change", "validation", "disabled") is None

    def test_invalid_status(self, db: FlowloopDB) -> None:
        proposal_id = self._insert(db)
        with pytest.raises(ValueError, match="Invalid proposal status"):
            db.update_proposal(proposal_id, status="merged")

    def test_list_by_status(self, db: FlowloopDB) -> None:
        first = self._insert(db)
        self._insert(db)
        db.update_proposal(first, status="rejected")
        assert len(db.list_proposals()) == 2
        assert [p["id"] for p in db.list_proposals(status="rejected")] == [first]

    def test_get_missing_raises(self, db: FlowloopDB) -> None:
        with pytest.raises(KeyError):
            db.get_proposal(42)
