"""Shared utilities, types, and Protocol for DB mixins."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol

TaskStatus = Literal["backlog", "in_progress", "review", "done", "cancelled"]
VALID_TASK_STATUSES: frozenset[str] = frozenset({"backlog", "in_progress", "review", "done", "cancelled"})
DONE_STATUS = "done"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_iso(ts: str | None) -> datetime | None:
    """Parse an ISO timestamp, handling timezone-aware and naive formats.

    Naive values are taken as UTC. Returns None for anything unparseable.
    """
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _json_list(raw: str | None) -> list[Any]:
    """Decode a JSON array column, tolerating NULL and corrupt values."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return value if isinstance(value, list) else []


class DBMixinProtocol(Protocol):
    """Shared attributes that DB mixins access via self.

    Mixins inherit this Protocol so mypy can type-check ``self.conn``
    without ``type: ignore`` on every call. Actual implementations are
    provided by FlowloopDB at composition time.
    """

    db_path: Path
    prefix: str
    _conn: sqlite3.Connection | None

    @property
    def conn(self) -> sqlite3.Connection: ...
