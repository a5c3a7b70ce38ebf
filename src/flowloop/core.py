"""Core database and project discovery for flowloop.

Single source of truth for SQLite operations. The CLI, the dashboard and
the MCP server all import from this module. Direct SQLite with WAL mode.

Convention-based discovery: each project has a `.flowloop/` directory containing
`flowloop.db` (SQLite), `config.json` (project settings) and `workflow.json`
(the declarative process definition).
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any

from flowloop.db_base import DONE_STATUS, VALID_TASK_STATUSES
from flowloop.db_events import VALID_CHECKPOINT_RESULTS, EventsMixin
from flowloop.db_feedback import FeedbackMixin
from flowloop.db_metrics import MetricsMixin
from flowloop.db_schema import CURRENT_SCHEMA_VERSION, SCHEMA_SQL
from flowloop.db_tasks import Task, TasksMixin
from flowloop.types.core import AlertSettings, ProjectConfig

logger = logging.getLogger(__name__)

__all__ = [
    "CONFIG_FILENAME",
    "DB_FILENAME",
    "DONE_STATUS",
    "FLOWLOOP_DIR_NAME",
    "VALID_CHECKPOINT_RESULTS",
    "VALID_TASK_STATUSES",
    "WORKFLOW_FILENAME",
    "FlowloopDB",
    "Task",
    "alert_settings",
    "find_flowloop_root",
    "read_config",
    "write_atomic",
    "write_config",
]

# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

FLOWLOOP_DIR_NAME = ".flowloop"
DB_FILENAME = "flowloop.db"
CONFIG_FILENAME = "config.json"
WORKFLOW_FILENAME = "workflow.json"

DEFAULT_ALERT_SETTINGS = AlertSettings(stuck_hours=24, rework_percent=40, pace_enabled=True, quality_window=5)


def find_flowloop_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .flowloop/ directory.

    Returns the .flowloop/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / FLOWLOOP_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {FLOWLOOP_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(flowloop_dir: Path) -> ProjectConfig:
    """Read .flowloop/config.json. Returns defaults if missing or corrupt."""
    defaults = ProjectConfig(prefix="flowloop", project="flowloop", version=1)
    config_path = flowloop_dir / CONFIG_FILENAME
    if not config_path.exists():
        return defaults
    try:
        result = json.loads(config_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return defaults
    if not isinstance(result, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return defaults
    config: ProjectConfig = result  # type: ignore[assignment]
    return config


def write_config(flowloop_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .flowloop/config.json."""
    config_path = flowloop_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(config, indent=2) + "\n")


def alert_settings(config: ProjectConfig) -> AlertSettings:
    """Merge the config's ``alerts`` object over the default thresholds."""
    merged = AlertSettings(**DEFAULT_ALERT_SETTINGS)
    overrides = config.get("alerts")
    if isinstance(overrides, dict):
        for key in DEFAULT_ALERT_SETTINGS:
            if key in overrides:
                merged[key] = overrides[key]  # type: ignore[literal-required]
    return merged


def write_atomic(path: Path, content: str) -> None:
    """Write content to path atomically via temp file + os.replace()."""
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


# ---------------------------------------------------------------------------
# FlowloopDB
# ---------------------------------------------------------------------------


class FlowloopDB(TasksMixin, EventsMixin, MetricsMixin, FeedbackMixin):
    """Direct SQLite operations backing every flowloop store."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        prefix: str = "flowloop",
        project: str | None = None,
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.prefix = prefix
        self.project = project or prefix
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread

    @classmethod
    def from_project(cls, project_path: Path | None = None) -> FlowloopDB:
        """Create a FlowloopDB by discovering .flowloop/ from project_path (or cwd)."""
        flowloop_dir = find_flowloop_root(project_path)
        config = read_config(flowloop_dir)
        db = cls(
            flowloop_dir / DB_FILENAME,
            prefix=config.get("prefix", "flowloop"),
            project=config.get("project"),
        )
        db.initialize()
        return db

    def __enter__(self) -> FlowloopDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables on a fresh database and stamp the schema version."""
        current_version = self.get_schema_version()
        if current_version == 0:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        elif current_version > CURRENT_SCHEMA_VERSION:
            msg = f"Database schema v{current_version} is newer than this flowloop (v{CURRENT_SCHEMA_VERSION})"
            raise ValueError(msg)
        self.conn.commit()

    def get_schema_version(self) -> int:
        """Return the current schema version from PRAGMA user_version."""
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def reconnect(self, *, check_same_thread: bool) -> None:
        """Close and reopen the connection with a different thread policy."""
        self.close()
        self._check_same_thread = check_same_thread

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
