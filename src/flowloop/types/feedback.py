"""TypedDicts for feedback rules, audit records and proposals."""

from __future__ import annotations

from typing import Any, Literal, TypedDict

from flowloop.types.core import ISOTimestamp

ProposalType = Literal["gate_change", "checkpoint_change", "workflow_adjustment"]
ProposalStatus = Literal["pending", "promoted", "rejected"]


class FeedbackRuleRecord(TypedDict):
    id: int
    target: str
    pattern: str
    instruction: str
    occurrences: int
    periods: list[str]
    active: bool
    created_at: ISOTimestamp


class ProcessResult(TypedDict):
    """Counts returned by ``FeedbackPromoter.process_retrospective()``."""

    new_rules: int
    updated_rules: int


class AuditRecord(TypedDict):
    id: int
    author: str
    action: str
    reason: str
    changes: list[str]
    config_version: int
    snapshot: dict[str, Any]
    created_at: ISOTimestamp


class ProposalRecord(TypedDict):
    id: int
    proposal_type: ProposalType
    target: str
    description: str
    suggested_value: str
    source_project: str
    source_period: str
    votes: list[str]
    status: ProposalStatus
    created_at: ISOTimestamp
    promoted_at: ISOTimestamp | None
