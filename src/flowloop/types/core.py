"""Foundational TypedDicts for project config and task rows."""

from __future__ import annotations

from typing import NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class AlertSettings(TypedDict, total=False):
    """Optional ``alerts`` object inside config.json."""

    stuck_hours: float
    rework_percent: float
    pace_enabled: bool
    quality_window: int


class ProjectConfig(TypedDict, total=False):
    """Shape of .flowloop/config.json."""

    prefix: str
    project: str
    version: int
    alerts: AlertSettings


class TaskDict(TypedDict):
    id: str
    title: str
    status: str
    priority: int
    period_id: str | None
    assignee: str
    created_at: ISOTimestamp
    updated_at: ISOTimestamp
    completed_at: ISOTimestamp | None
