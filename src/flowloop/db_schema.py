"""Database schema definitions for flowloop.

Contains the canonical SQL schema and the current schema version constant.
"""

from __future__ import annotations

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS tasks (
    id           TEXT PRIMARY KEY,
    title        TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'backlog',
    priority     INTEGER NOT NULL DEFAULT 3,
    period_id    TEXT,
    assignee     TEXT DEFAULT '',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    completed_at TEXT,

    CHECK (priority BETWEEN 1 AND 5)
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_period ON tasks(period_id);

CREATE TABLE IF NOT EXISTS transitions (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id           TEXT,
    period_id         TEXT,
    step_from         TEXT NOT NULL,
    step_to           TEXT NOT NULL,
    duration_seconds  INTEGER NOT NULL DEFAULT 0,
    had_rework        BOOLEAN NOT NULL DEFAULT 0,
    checkpoint_mode   TEXT,
    checkpoint_result TEXT,
    notes             TEXT DEFAULT '',
    created_at        TEXT NOT NULL,

    CHECK (checkpoint_result IS NULL OR checkpoint_result IN ('pass', 'fail', 'skipped', 'corrected'))
);

CREATE INDEX IF NOT EXISTS idx_transitions_task ON transitions(task_id, id);
CREATE INDEX IF NOT EXISTS idx_transitions_period ON transitions(period_id);

-- Append-only: events are never rewritten once logged
CREATE TRIGGER IF NOT EXISTS transitions_no_update BEFORE UPDATE ON transitions BEGIN
    SELECT RAISE(ABORT, 'transitions are append-only');
END;

CREATE TABLE IF NOT EXISTS period_metrics (
    period_id          TEXT PRIMARY KEY,
    tasks_planned      INTEGER NOT NULL DEFAULT 0,
    tasks_completed    INTEGER NOT NULL DEFAULT 0,
    avg_delivery_hours REAL,
    first_pass_rate    REAL,
    rework_count       INTEGER NOT NULL DEFAULT 0,
    closed_at          TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS retros (
    period_id         TEXT PRIMARY KEY,
    what_worked       TEXT DEFAULT '[]',
    what_didnt        TEXT DEFAULT '[]',
    patterns_detected TEXT DEFAULT '[]',
    actions_proposed  TEXT DEFAULT '[]',
    actions_accepted  TEXT DEFAULT '[]',
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feedback_rules (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    target      TEXT NOT NULL,
    pattern     TEXT NOT NULL,
    instruction TEXT NOT NULL,
    occurrences INTEGER NOT NULL DEFAULT 1,
    periods     TEXT DEFAULT '[]',
    active      BOOLEAN NOT NULL DEFAULT 0,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_feedback_target ON feedback_rules(target, active);

CREATE TABLE IF NOT EXISTS quality_scores (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id    TEXT,
    score      REAL NOT NULL,
    reviewer   TEXT DEFAULT '',
    created_at TEXT NOT NULL,

    CHECK (score BETWEEN 0 AND 100)
);

CREATE TABLE IF NOT EXISTS worker_runs (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    agent      TEXT NOT NULL,
    task_id    TEXT,
    success    BOOLEAN NOT NULL,
    error      TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_audit (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    author         TEXT DEFAULT '',
    action         TEXT NOT NULL,
    reason         TEXT DEFAULT '',
    changes        TEXT DEFAULT '[]',
    config_version INTEGER NOT NULL,
    snapshot       TEXT DEFAULT '{}',
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_proposals (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    proposal_type   TEXT NOT NULL,
    target          TEXT NOT NULL,
    description     TEXT DEFAULT '',
    suggested_value TEXT NOT NULL,
    source_project  TEXT NOT NULL,
    source_period   TEXT DEFAULT '',
    votes           TEXT DEFAULT '[]',
    status          TEXT NOT NULL DEFAULT 'pending',
    created_at      TEXT NOT NULL,
    promoted_at     TEXT,

    CHECK (status IN ('pending', 'promoted', 'rejected'))
);
"""

CURRENT_SCHEMA_VERSION = 1
