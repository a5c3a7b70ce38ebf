"""Feedback promoter: recurring retrospective findings become standing rules.

A phrase from a retrospective maps to a target behaviour owner through an
ordered keyword table. A rule is stored on first sight and becomes active
once it has been seen in two distinct periods. Active rules render into a
context block that downstream workers prepend to their own instructions.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from flowloop.core import FlowloopDB
from flowloop.types.feedback import FeedbackRuleRecord, ProcessResult

logger = logging.getLogger(__name__)

PROMOTION_THRESHOLD = 2
_PATTERN_KEY_LENGTH = 20


@dataclass(frozen=True)
class KeywordMapping:
    keywords: tuple[str, ...]
    target: str
    instruction: str


# Order matters: the first mapping whose keywords hit wins for a text item.
KEYWORD_MAP: tuple[KeywordMapping, ...] = (
    KeywordMapping(
        ("test", "tests", "coverage", "testing"),
        "dev",
        "Pay close attention to test coverage. Missing tests were flagged in previous retrospectives.",
    ),
    KeywordMapping(
        ("test", "tests", "coverage", "testing", "regression"),
        "qa",
        "Check test coverage systematically. Gaps have been found before.",
    ),
    KeywordMapping(
        ("security", "injection", "xss", "rls", "secret"),
        "dev",
        "Be especially careful about security. Vulnerabilities were found in previous retrospectives.",
    ),
    KeywordMapping(
        ("architecture", "design", "pattern", "structure"),
        "architect",
        "Review architecture decisions carefully. Design problems were raised in previous retrospectives.",
    ),
    KeywordMapping(
        ("scope", "creep", "complexity", "perimeter"),
        "pm",
        "Check task scope. Scope drift was observed in previous periods.",
    ),
    KeywordMapping(
        ("performance", "slow", "timeout", "memory", "latency"),
        "dev",
        "Watch performance. Performance problems were found in previous retrospectives.",
    ),
    KeywordMapping(
        ("documentation", "docs", "readme", "comment"),
        "dev",
        "Do not skip documentation. Missing documentation was flagged in previous retrospectives.",
    ),
    KeywordMapping(
        ("blocked", "blocker", "blocking", "dependency"),
        "sm",
        "Watch for blockers proactively. Blocked tasks have been a recurring problem.",
    ),
)


@dataclass(frozen=True)
class FeedbackItem:
    target: str
    pattern: str
    instruction: str


def _match_mapping(text: str) -> KeywordMapping | None:
    lower = text.lower()
    for mapping in KEYWORD_MAP:
        if any(kw in lower for kw in mapping.keywords):
            return mapping
    return None


class FeedbackPromoter:
    """Turns retrospectives into feedback rules and serves active ones.

    Active rules are cached per target; ``refresh()`` reloads the whole
    cache and runs after every ``process_retrospective``.
    """

    def __init__(self, db: FlowloopDB) -> None:
        self.db = db
        self._active: dict[str, list[FeedbackRuleRecord]] | None = None

    @staticmethod
    def extract_from_retrospective(retro: Mapping[str, Any]) -> list[FeedbackItem]:
        """Map retro text to targets; each text item yields at most one item."""
        items: list[FeedbackItem] = []
        for text in [*retro.get("what_didnt", []), *retro.get("patterns_detected", [])]:
            mapping = _match_mapping(text)
            if mapping is not None:
                items.append(FeedbackItem(mapping.target, text, mapping.instruction))
        for action in retro.get("actions_accepted", []):
            mapping = _match_mapping(action)
            if mapping is not None:
                items.append(FeedbackItem(mapping.target, action, f"Retro action: {action}"))
        return items

    def process_retrospective(self, retro: Mapping[str, Any]) -> ProcessResult:
        """Insert or bump rules for every item extracted from *retro*."""
        period_id = retro["period_id"]
        result = ProcessResult(new_rules=0, updated_rules=0)
        items = self.extract_from_retrospective(retro)
        if not items:
            return result
        try:
            rules = self.db.list_feedback_rules()
        except sqlite3.Error:
            logger.error("Failed to read feedback rules", exc_info=True)
            return result

        for item in items:
            key = item.pattern.lower()[:_PATTERN_KEY_LENGTH]
            existing = next((r for r in rules if r["target"] == item.target and key in r["pattern"].lower()), None)
            try:
                if existing is None:
                    rules.append(self.db.insert_feedback_rule(item.target, item.pattern, item.instruction, period_id=period_id))
                    result["new_rules"] += 1
                elif period_id not in existing["periods"]:
                    occurrences = existing["occurrences"] + 1
                    periods = [*existing["periods"], period_id]
                    active = existing["active"] or occurrences >= PROMOTION_THRESHOLD
                    self.db.update_feedback_rule(existing["id"], occurrences=occurrences, periods=periods, active=active)
                    existing["occurrences"] = occurrences
                    existing["periods"] = periods
                    existing["active"] = active
                    result["updated_rules"] += 1
            except sqlite3.Error:
                logger.error("Failed to store feedback rule for %s", item.target, exc_info=True)

        logger.info(
            "Processed retro %s: %d new rule(s), %d updated",
            period_id,
            result["new_rules"],
            result["updated_rules"],
        )
        self.refresh()
        return result

    def refresh(self) -> None:
        """Reload the active-rule cache from the store."""
        try:
            active = self.db.list_feedback_rules(active_only=True)
        except sqlite3.Error:
            logger.error("Failed to refresh feedback rules", exc_info=True)
            self._active = {}
            return
        grouped: dict[str, list[FeedbackRuleRecord]] = {}
        for rule in active:
            grouped.setdefault(rule["target"], []).append(rule)
        self._active = grouped

    def active_rules(self, target: str) -> list[FeedbackRuleRecord]:
        if self._active is None:
            self.refresh()
        assert self._active is not None
        return list(self._active.get(target, []))

    def build_context_block(self, target: str) -> str:
        """Active rules for *target* as instruction lines, or '' when none."""
        rules = self.active_rules(target)
        if not rules:
            return ""
        lines = [
            "",
            "LESSONS FROM PREVIOUS RETROSPECTIVES:",
            f"(these patterns were seen in {PROMOTION_THRESHOLD}+ periods, pay particular attention)",
            "",
        ]
        lines.extend(f"- [{r['occurrences']}x] {r['instruction']}" for r in rules)
        return "\n".join(lines)

    def format_rules(self) -> str:
        try:
            rules = self.db.list_feedback_rules()
        except sqlite3.Error:
            logger.error("Failed to read feedback rules", exc_info=True)
            rules = []
        if not rules:
            return "No active feedback rules."
        active = [r for r in rules if r["active"]]
        pending = [r for r in rules if not r["active"]]
        lines = ["FEEDBACK RULES", ""]
        if active:
            lines.append(f"Active ({len(active)}):")
            for r in active:
                lines.append(f"  {r['target']} [{r['occurrences']}x]: {r['instruction']}")
                lines.append(f"    Pattern: {r['pattern'][:80]}")
                lines.append(f"    Periods: {', '.join(r['periods'])}")
            lines.append("")
        if pending:
            lines.append(f"Pending ({len(pending)}, need {PROMOTION_THRESHOLD}+ occurrences):")
            for r in pending:
                lines.append(f"  {r['target']} [{r['occurrences']}x]: {r['pattern'][:60]}")
        return "\n".join(lines).strip()
