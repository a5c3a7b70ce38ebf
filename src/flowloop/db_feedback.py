"""FeedbackMixin: feedback rules, workflow audit trail, and proposals."""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from flowloop.db_base import DBMixinProtocol, _json_list, _now_iso
from flowloop.types.core import ISOTimestamp
from flowloop.types.feedback import AuditRecord, FeedbackRuleRecord, ProposalRecord

VALID_PROPOSAL_STATUSES: frozenset[str] = frozenset({"pending", "promoted", "rejected"})


def _build_rule(row: sqlite3.Row) -> FeedbackRuleRecord:
    return FeedbackRuleRecord(
        id=row["id"],
        target=row["target"],
        pattern=row["pattern"],
        instruction=row["instruction"],
        occurrences=row["occurrences"],
        periods=_json_list(row["periods"]),
        active=bool(row["active"]),
        created_at=ISOTimestamp(row["created_at"]),
    )


def _build_proposal(row: sqlite3.Row) -> ProposalRecord:
    return ProposalRecord(
        id=row["id"],
        proposal_type=row["proposal_type"],
        target=row["target"],
        description=row["description"] or "",
        suggested_value=row["suggested_value"],
        source_project=row["source_project"],
        source_period=row["source_period"] or "",
        votes=_json_list(row["votes"]),
        status=row["status"],
        created_at=ISOTimestamp(row["created_at"]),
        promoted_at=ISOTimestamp(row["promoted_at"]) if row["promoted_at"] else None,
    )


class FeedbackMixin(DBMixinProtocol):
    """Stores for the feedback promoter, config audit and proposal board."""

    # -- Feedback rules ------------------------------------------------------

    def list_feedback_rules(self, *, target: str | None = None, active_only: bool = False) -> list[FeedbackRuleRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if target is not None:
            clauses.append("target = ?")
            params.append(target)
        if active_only:
            clauses.append("active = 1")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM feedback_rules{where} ORDER BY occurrences DESC, id",
            params,
        ).fetchall()
        return [_build_rule(r) for r in rows]

    def get_feedback_rule(self, rule_id: int) -> FeedbackRuleRecord:
        row = self.conn.execute("SELECT * FROM feedback_rules WHERE id = ?", (rule_id,)).fetchone()
        if row is None:
            raise KeyError(rule_id)
        return _build_rule(row)

    def insert_feedback_rule(self, target: str, pattern: str, instruction: str, *, period_id: str) -> FeedbackRuleRecord:
        cursor = self.conn.execute(
            "INSERT INTO feedback_rules (target, pattern, instruction, occurrences, periods, active, created_at) "
            "VALUES (?, ?, ?, 1, ?, 0, ?)",
            (target, pattern, instruction, json.dumps([period_id]), _now_iso()),
        )
        self.conn.commit()
        return self.get_feedback_rule(int(cursor.lastrowid or 0))

    def update_feedback_rule(self, rule_id: int, *, occurrences: int, periods: list[str], active: bool) -> None:
        cursor = self.conn.execute(
            "UPDATE feedback_rules SET occurrences = ?, periods = ?, active = ? WHERE id = ?",
            (occurrences, json.dumps(periods), int(active), rule_id),
        )
        if cursor.rowcount == 0:
            raise KeyError(rule_id)
        self.conn.commit()

    # -- Workflow audit ------------------------------------------------------

    def record_workflow_audit(
        self,
        *,
        author: str,
        action: str,
        reason: str,
        changes: list[str],
        config_version: int,
        snapshot: dict[str, Any],
    ) -> int:
        cursor = self.conn.execute(
            "INSERT INTO workflow_audit (author, action, reason, changes, config_version, snapshot, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (author, action, reason, json.dumps(changes), config_version, json.dumps(snapshot), _now_iso()),
        )
        self.conn.commit()
        return int(cursor.lastrowid or 0)

    def get_workflow_audit(self, limit: int = 20) -> list[AuditRecord]:
        rows = self.conn.execute(
            "SELECT * FROM workflow_audit ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        records: list[AuditRecord] = []
        for r in rows:
            try:
                snapshot = json.loads(r["snapshot"] or "{}")
            except json.JSONDecodeError:
                snapshot = {}
            records.append(
                AuditRecord(
                    id=r["id"],
                    author=r["author"] or "",
                    action=r["action"],
                    reason=r["reason"] or "",
                    changes=_json_list(r["changes"]),
                    config_version=r["config_version"],
                    snapshot=snapshot,
                    created_at=ISOTimestamp(r["created_at"]),
                )
            )
        return records

    # -- Workflow proposals --------------------------------------------------

    def find_pending_proposal(self, proposal_type: str, target: str, suggested_value: str) -> ProposalRecord | None:
        row = self.conn.execute(
            "SELECT * FROM workflow_proposals WHERE proposal_type = ? AND target = ? AND suggested_value = ? "
            "AND status = 'pending' ORDER BY id LIMIT 1",
            (proposal_type, target, suggested_value),
        ).fetchone()
        return _build_proposal(row) if row is not None else None

    def get_proposal(self, proposal_id: int) -> ProposalRecord:
        row = self.conn.execute("SELECT * FROM workflow_proposals WHERE id = ?", (proposal_id,)).fetchone()
        if row is None:
            raise KeyError(proposal_id)
        return _build_proposal(row)

    def insert_proposal(
        self,
        *,
        proposal_type: str,
        target: str,
        description: str,
        suggested_value: str,
        source_project: str,
        source_period: str,
    ) -> ProposalRecord:
        cursor = self.conn.execute(
            "INSERT INTO workflow_proposals (proposal_type, target, description, suggested_value, source_project, "
            "source_period, votes, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)",
            (
                proposal_type,
                target,
                description,
                suggested_value,
                source_project,
                source_period,
                json.dumps([source_project]),
                _now_iso(),
            ),
        )
        self.conn.commit()
        return self.get_proposal(int(cursor.lastrowid or 0))

    def update_proposal(self, proposal_id: int, *, votes: list[str] | None = None, status: str | None = None) -> ProposalRecord:
        current = self.get_proposal(proposal_id)
        if status is not None and status not in VALID_PROPOSAL_STATUSES:
            msg = f"Invalid proposal status '{status}'"
            raise ValueError(msg)
        new_votes = votes if votes is not None else current["votes"]
        new_status = status or current["status"]
        promoted_at = current["promoted_at"]
        if new_status == "promoted" and promoted_at is None:
            promoted_at = ISOTimestamp(_now_iso())
        self.conn.execute(
            "UPDATE workflow_proposals SET votes = ?, status = ?, promoted_at = ? WHERE id = ?",
            (json.dumps(new_votes), new_status, promoted_at, proposal_id),
        )
        self.conn.commit()
        return self.get_proposal(proposal_id)

    def list_proposals(self, *, status: str | None = None) -> list[ProposalRecord]:
        if status is None:
            rows = self.conn.execute("SELECT * FROM workflow_proposals ORDER BY id DESC").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM workflow_proposals WHERE status = ? ORDER BY id DESC",
                (status,),
            ).fetchall()
        return [_build_proposal(r) for r in rows]
