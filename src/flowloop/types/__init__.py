# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, db_base.py, or any mixin.
"""Typed return-value contracts for flowloop stores and adapters."""

from __future__ import annotations

from flowloop.types.analytics import PeriodMetricsRecord, RetroData, RetroRecord
from flowloop.types.core import AlertSettings, ISOTimestamp, ProjectConfig, TaskDict
from flowloop.types.events import TransitionEventRecord
from flowloop.types.feedback import AuditRecord, FeedbackRuleRecord, ProcessResult, ProposalRecord

__all__ = [
    "AlertSettings",
    "AuditRecord",
    "FeedbackRuleRecord",
    "ISOTimestamp",
    "PeriodMetricsRecord",
    "ProcessResult",
    "ProjectConfig",
    "ProposalRecord",
    "RetroData",
    "RetroRecord",
    "TaskDict",
    "TransitionEventRecord",
]
