"""Cross-project workflow proposals with vote-based promotion.

A retrospective that asks to relax a gate or checkpoint, or to skip steps
for low-priority work, becomes a proposal. The same proposal raised by a
second, distinct project counts as a vote; at VOTE_THRESHOLD votes it is
promoted.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from flowloop.core import FlowloopDB
from flowloop.types.feedback import ProposalRecord, ProposalType

logger = logging.getLogger(__name__)

VOTE_THRESHOLD = 2

_GATE_RE = re.compile(r"(?:relax|lighten|loosen|disable)\s+(?:the\s+)?gate\s*(\d)")
_CHECKPOINT_RE = re.compile(r"(?:relax|lighten|loosen|switch to light)\s+(?:the\s+)?checkpoint\s+(?:on\s+)?(\w+)")
_SKIP_RE = re.compile(
    r"skip\s+(?:for\s+)?(?:the\s+)?(?:low[- ]priority\s+tasks?|(?:tasks?\s+)?(?:p([3-5])|priority\s*<=?\s*(\d)))"
)


@dataclass(frozen=True)
class ProposalDraft:
    proposal_type: ProposalType
    target: str
    description: str
    suggested_value: str


@dataclass(frozen=True)
class VoteResult:
    proposal_id: int
    is_new: bool
    votes: int
    promoted: bool


def extract_proposals(retro: Mapping[str, Any]) -> list[ProposalDraft]:
    """Find workflow change requests in accepted actions and what-didn't text."""
    drafts: list[ProposalDraft] = []
    for text in [*retro.get("actions_accepted", []), *retro.get("what_didnt", [])]:
        lower = text.lower()
        gate = _GATE_RE.search(lower)
        if gate:
            drafts.append(ProposalDraft("gate_change", f"gate_{gate.group(1)}", text, "mode: light"))
            continue
        checkpoint = _CHECKPOINT_RE.search(lower)
        if checkpoint:
            drafts.append(ProposalDraft("checkpoint_change", f"checkpoint_{checkpoint.group(1)}", text, "mode: light"))
            continue
        skip = _SKIP_RE.search(lower)
        if skip:
            priority = skip.group(1) or skip.group(2) or "3"
            drafts.append(ProposalDraft("workflow_adjustment", "skip_condition", text, f"priority_lte: {priority}"))
    return drafts


class ProposalBoard:
    """Proposal creation, voting and review on top of FlowloopDB."""

    def __init__(self, db: FlowloopDB, *, threshold: int = VOTE_THRESHOLD) -> None:
        self.db = db
        self.threshold = threshold

    def propose(self, draft: ProposalDraft, *, project: str, period_id: str = "") -> VoteResult:
        """Create a proposal or vote on an identical pending one.

        A project never votes twice on the same proposal.
        """
        existing = self.db.find_pending_proposal(draft.proposal_type, draft.target, draft.suggested_value)
        if existing is None:
            record = self.db.insert_proposal(
                proposal_type=draft.proposal_type,
                target=draft.target,
                description=draft.description,
                suggested_value=draft.suggested_value,
                source_project=project,
                source_period=period_id,
            )
            promoted = len(record["votes"]) >= self.threshold
            if promoted:
                record = self.db.update_proposal(record["id"], status="promoted")
            logger.info("New workflow proposal %s on %s from %s", record["id"], draft.target, project)
            return VoteResult(record["id"], True, len(record["votes"]), promoted)

        if project in existing["votes"]:
            return VoteResult(existing["id"], False, len(existing["votes"]), False)

        votes = [*existing["votes"], project]
        promoted = len(votes) >= self.threshold
        self.db.update_proposal(existing["id"], votes=votes, status="promoted" if promoted else None)
        if promoted:
            logger.info("Workflow proposal %s promoted with %d votes", existing["id"], len(votes))
        return VoteResult(existing["id"], False, len(votes), promoted)

    def propose_from_retro(self, retro: Mapping[str, Any], *, project: str) -> list[VoteResult]:
        period_id = retro.get("period_id", "")
        return [self.propose(d, project=project, period_id=period_id) for d in extract_proposals(retro)]

    def vote(self, proposal_id: int, *, project: str) -> VoteResult:
        """Vote directly on a pending proposal by id. Raises KeyError/ValueError."""
        proposal = self.db.get_proposal(proposal_id)
        if proposal["status"] != "pending":
            msg = f"Proposal {proposal_id} is {proposal['status']}, not pending"
            raise ValueError(msg)
        draft = ProposalDraft(
            proposal["proposal_type"],
            proposal["target"],
            proposal["description"],
            proposal["suggested_value"],
        )
        return self.propose(draft, project=project)

    def reject(self, proposal_id: int) -> ProposalRecord:
        return self.db.update_proposal(proposal_id, status="rejected")

    def list_pending(self) -> list[ProposalRecord]:
        return self.db.list_proposals(status="pending")

    def list_promoted(self) -> list[ProposalRecord]:
        return self.db.list_proposals(status="promoted")

    def format_proposals(self, proposals: list[ProposalRecord]) -> str:
        if not proposals:
            return "No proposals."
        lines = ["CROSS-PROJECT WORKFLOW PROPOSALS", ""]
        for p in proposals:
            votes = len(p["votes"])
            bar = "o" * votes + "." * max(0, self.threshold - votes)
            lines.append(f"#{p['id']} [{bar}] {p['target']}: {p['description']}")
            lines.append(f"  Value: {p['suggested_value']}")
            lines.append(f"  Votes: {votes}/{self.threshold} | Source: {p['source_project']} {p['source_period']}".rstrip())
            lines.append(f"  Status: {p['status'].upper()}")
        return "\n".join(lines)
