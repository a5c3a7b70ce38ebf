"""Built-in process definition used when workflow.json is missing or unparseable.

Pure data: a JSON-compatible dict in the same shape as .flowloop/workflow.json.
"""

from __future__ import annotations

from typing import Any

CHECKPOINT_MODES: dict[str, dict[str, Any]] = {
    "off": {
        "description": "No evaluation; the checkpoint always records 'skipped'.",
        "auto_pass": True,
    },
    "light": {
        "description": "Quick review against the step criteria, one retry allowed.",
        "max_retries": 1,
    },
    "strict": {
        "description": "Full review against every criterion, up to three retries.",
        "max_retries": 3,
    },
}

DEFAULT_WORKFLOW: dict[str, Any] = {
    "version": 1,
    "steps": [
        {
            "id": "request",
            "label": "Request intake",
            "checkpoint": {"enabled": False, "mode": "off", "criteria": []},
        },
        {
            "id": "decomposition",
            "label": "Decomposition into deliverables",
            "checkpoint": {
                "enabled": True,
                "mode": "light",
                "criteria": ["Each deliverable has acceptance criteria", "Dependencies are listed"],
            },
        },
        {
            "id": "validation",
            "label": "Plan validation",
            "checkpoint": {"enabled": False, "mode": "off", "criteria": []},
            "skip_if": {"priority_lte": 2},
        },
        {
            "id": "execution",
            "label": "Execution",
            "checkpoint": {
                "enabled": True,
                "mode": "strict",
                "criteria": ["Tests pass", "No regression on existing behaviour", "Change matches the plan"],
            },
        },
        {
            "id": "review",
            "label": "Review",
            "checkpoint": {
                "enabled": True,
                "mode": "light",
                "criteria": ["Reviewer sign-off"],
            },
        },
        {
            "id": "closure",
            "label": "Closure",
            "checkpoint": {"enabled": False, "mode": "off", "criteria": []},
        },
    ],
    "transitions": [
        {"from": "request", "to": "decomposition"},
        {"from": "decomposition", "to": "validation"},
        {"from": "decomposition", "to": "execution", "condition": "auto_validated"},
        {"from": "validation", "to": "execution"},
        {"from": "execution", "to": "review"},
        {"from": "review", "to": "execution", "condition": "rework"},
        {"from": "review", "to": "closure"},
    ],
    "checkpoint_modes": CHECKPOINT_MODES,
}
