# src/flowloop/workflow.py
"""Process definition store -- loading, caching, and checkpoint policy edits.

Provides WorkflowConfigStore for the step graph that tasks move through.
Steps carry a checkpoint policy (enabled flag, mode, criteria); transitions
are directed edges between steps. The parsed config is an immutable value:
reload and apply_suggestion swap the whole object, never patch it.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import sqlite3
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from dataclasses import replace as _dc_replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from flowloop.core import WORKFLOW_FILENAME, write_atomic
from flowloop.workflow_data import DEFAULT_WORKFLOW

if TYPE_CHECKING:
    from flowloop.patterns import WorkflowSuggestion

logger = logging.getLogger(__name__)

# Step ids end up in SQL rows and CLI arguments; keep them simple.
_STEP_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
_CHANGE_PATTERN = re.compile(r"^\s*checkpoint\.mode\s*:\s*([a-z]+)\s*$")

CheckpointMode = Literal["off", "light", "strict"]
VALID_CHECKPOINT_MODES: frozenset[str] = frozenset({"off", "light", "strict"})

AuditCallback = Callable[..., Any]

# ---------------------------------------------------------------------------
# Frozen dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CheckpointPolicy:
    """Quality gate attached to a step."""

    enabled: bool = False
    mode: CheckpointMode = "off"
    criteria: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.mode not in VALID_CHECKPOINT_MODES:
            allowed = sorted(VALID_CHECKPOINT_MODES)
            msg = f"Invalid checkpoint mode '{self.mode}': must be one of {allowed}"
            raise ValueError(msg)


DISABLED_CHECKPOINT = CheckpointPolicy(enabled=False, mode="off")


@dataclass(frozen=True)
class ProcessStep:
    id: str
    label: str
    checkpoint: CheckpointPolicy = DISABLED_CHECKPOINT
    skip_if_priority_lte: int | None = None

    def __post_init__(self) -> None:
        if not _STEP_ID_PATTERN.match(self.id):
            msg = f"Invalid step id '{self.id}': must match ^[a-z][a-z0-9_]{{0,63}}$"
            raise ValueError(msg)


@dataclass(frozen=True)
class Transition:
    """A directed edge between two steps, optionally guarded."""

    from_step: str
    to_step: str
    condition: str | None = None


@dataclass(frozen=True)
class CheckpointModePolicy:
    mode: str
    description: str = ""
    auto_pass: bool = False
    max_retries: int = 0


@dataclass(frozen=True)
class WorkflowConfig:
    """A complete, validated process definition."""

    steps: tuple[ProcessStep, ...]
    transitions: tuple[Transition, ...]
    checkpoint_modes: dict[str, CheckpointModePolicy] = field(default_factory=dict)
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the workflow.json document shape."""
        steps: list[dict[str, Any]] = []
        for s in self.steps:
            entry: dict[str, Any] = {
                "id": s.id,
                "label": s.label,
                "checkpoint": {
                    "enabled": s.checkpoint.enabled,
                    "mode": s.checkpoint.mode,
                    "criteria": list(s.checkpoint.criteria),
                },
            }
            if s.skip_if_priority_lte is not None:
                entry["skip_if"] = {"priority_lte": s.skip_if_priority_lte}
            steps.append(entry)
        transitions: list[dict[str, Any]] = []
        for t in self.transitions:
            edge: dict[str, Any] = {"from": t.from_step, "to": t.to_step}
            if t.condition:
                edge["condition"] = t.condition
            transitions.append(edge)
        modes: dict[str, Any] = {}
        for name, policy in self.checkpoint_modes.items():
            mode_entry: dict[str, Any] = {"description": policy.description}
            if policy.auto_pass:
                mode_entry["auto_pass"] = True
            if policy.max_retries:
                mode_entry["max_retries"] = policy.max_retries
            modes[name] = mode_entry
        return {"version": self.version, "steps": steps, "transitions": transitions, "checkpoint_modes": modes}


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of ``apply_suggestion``. ``description`` reads '<old> -> <new>' when applied."""

    applied: bool
    description: str = ""


class WorkflowParseError(ValueError):
    """Raised when a workflow document is malformed or inconsistent."""


# ---------------------------------------------------------------------------
# WorkflowConfigStore
# ---------------------------------------------------------------------------


class WorkflowConfigStore:
    """Loads, caches, and queries the process definition.

    The config is parsed once and cached until ``reload()``. Lookup tables
    for steps and outgoing edges are rebuilt whenever the config object is
    replaced, so queries are O(1) dict hits.
    """

    MAX_STEPS = 50
    MAX_TRANSITIONS = 200

    def __init__(self, path: Path | None = None, *, audit: AuditCallback | None = None) -> None:
        self.path = path
        self._audit = audit
        self._config: WorkflowConfig | None = None
        self._steps: dict[str, ProcessStep] = {}
        self._outgoing: dict[str, tuple[Transition, ...]] = {}
        self._write_lock = threading.Lock()
        self.used_fallback = False

    @classmethod
    def from_project(cls, flowloop_dir: Path, *, audit: AuditCallback | None = None) -> WorkflowConfigStore:
        return cls(flowloop_dir / WORKFLOW_FILENAME, audit=audit)

    # -- Parsing (from dict/JSON) -------------------------------------------

    @staticmethod
    def parse_workflow(raw: dict[str, Any]) -> WorkflowConfig:
        """Parse a workflow document into a frozen WorkflowConfig.

        Raises:
            WorkflowParseError: If the document shape is wrong or references
                unknown steps.
        """
        if not isinstance(raw, dict):
            msg = f"Workflow document must be an object, got {type(raw).__name__}"
            raise WorkflowParseError(msg)
        raw_steps = raw.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            msg = "Workflow 'steps' must be a non-empty list"
            raise WorkflowParseError(msg)
        raw_transitions = raw.get("transitions") or []
        if not isinstance(raw_transitions, list):
            msg = f"Workflow 'transitions' must be a list, got {type(raw_transitions).__name__}"
            raise WorkflowParseError(msg)
        if len(raw_steps) > WorkflowConfigStore.MAX_STEPS:
            msg = f"Workflow has {len(raw_steps)} steps (max {WorkflowConfigStore.MAX_STEPS})"
            raise WorkflowParseError(msg)
        if len(raw_transitions) > WorkflowConfigStore.MAX_TRANSITIONS:
            msg = f"Workflow has {len(raw_transitions)} transitions (max {WorkflowConfigStore.MAX_TRANSITIONS})"
            raise WorkflowParseError(msg)

        try:
            steps = tuple(WorkflowConfigStore._parse_step(i, s) for i, s in enumerate(raw_steps))
            transitions = tuple(WorkflowConfigStore._parse_transition(i, t) for i, t in enumerate(raw_transitions))
            modes = WorkflowConfigStore._parse_modes(raw.get("checkpoint_modes") or {})
            version = int(raw.get("version", 1))
        except WorkflowParseError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise WorkflowParseError(str(exc)) from exc

        config = WorkflowConfig(steps=steps, transitions=transitions, checkpoint_modes=modes, version=version)
        errors = WorkflowConfigStore.validate_workflow(config)
        if errors:
            raise WorkflowParseError("; ".join(errors))
        return config

    @staticmethod
    def _parse_step(index: int, raw: Any) -> ProcessStep:
        if not isinstance(raw, dict) or "id" not in raw:
            msg = f"Step at index {index} must be an object with an 'id'"
            raise WorkflowParseError(msg)
        raw_cp = raw.get("checkpoint") or {}
        if not isinstance(raw_cp, dict):
            msg = f"Step '{raw['id']}': 'checkpoint' must be an object"
            raise WorkflowParseError(msg)
        criteria = raw_cp.get("criteria") or []
        if not isinstance(criteria, list):
            msg = f"Step '{raw['id']}': checkpoint 'criteria' must be a list"
            raise WorkflowParseError(msg)
        checkpoint = CheckpointPolicy(
            enabled=bool(raw_cp.get("enabled", False)),
            mode=raw_cp.get("mode", "off"),
            criteria=tuple(str(c) for c in criteria),
        )
        skip_lte: int | None = None
        skip_if = raw.get("skip_if")
        if isinstance(skip_if, dict) and "priority_lte" in skip_if:
            skip_lte = int(skip_if["priority_lte"])
        return ProcessStep(
            id=raw["id"],
            label=raw.get("label", raw["id"]),
            checkpoint=checkpoint,
            skip_if_priority_lte=skip_lte,
        )

    @staticmethod
    def _parse_transition(index: int, raw: Any) -> Transition:
        if not isinstance(raw, dict) or "from" not in raw or "to" not in raw:
            msg = f"Transition at index {index} must be an object with 'from' and 'to'"
            raise WorkflowParseError(msg)
        return Transition(from_step=raw["from"], to_step=raw["to"], condition=raw.get("condition") or None)

    @staticmethod
    def _parse_modes(raw: Any) -> dict[str, CheckpointModePolicy]:
        if not isinstance(raw, dict):
            msg = "'checkpoint_modes' must be an object"
            raise WorkflowParseError(msg)
        modes: dict[str, CheckpointModePolicy] = {}
        for name, spec in raw.items():
            if not isinstance(spec, dict):
                msg = f"Checkpoint mode '{name}' must be an object"
                raise WorkflowParseError(msg)
            modes[name] = CheckpointModePolicy(
                mode=name,
                description=spec.get("description", ""),
                auto_pass=bool(spec.get("auto_pass", False)),
                max_retries=int(spec.get("max_retries", 0)),
            )
        return modes

    @staticmethod
    def validate_workflow(config: WorkflowConfig) -> list[str]:
        """Check internal consistency. Returns error messages; empty means valid."""
        errors: list[str] = []
        step_ids = [s.id for s in config.steps]
        seen: set[str] = set()
        for sid in step_ids:
            if sid in seen:
                errors.append(f"duplicate step id '{sid}'")
            seen.add(sid)
        for t in config.transitions:
            if t.from_step not in seen:
                errors.append(f"transition from '{t.from_step}' references an unknown step")
            if t.to_step not in seen:
                errors.append(f"transition to '{t.to_step}' references an unknown step")
        return errors

    # -- Loading --------------------------------------------------------------

    def load(self) -> WorkflowConfig:
        """Return the cached config, parsing the backing document on first use.

        A missing or unparseable document falls back to the built-in default
        process rather than failing.
        """
        if self._config is not None:
            return self._config
        with self._write_lock:
            if self._config is None:
                self._install(self._read_document())
        assert self._config is not None
        return self._config

    def reload(self) -> WorkflowConfig:
        """Drop the cache and reparse."""
        with self._write_lock:
            self._config = None
        return self.load()

    def _read_document(self) -> WorkflowConfig:
        self.used_fallback = False
        if self.path is not None and self.path.exists():
            try:
                return self.parse_workflow(json.loads(self.path.read_text(encoding="utf-8")))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError, WorkflowParseError) as exc:
                logger.warning("Failed to load workflow from %s, using default process: %s", self.path, exc)
        elif self.path is not None:
            logger.debug("No workflow document at %s, using default process", self.path)
        self.used_fallback = True
        return self.parse_workflow(copy.deepcopy(DEFAULT_WORKFLOW))

    def _install(self, config: WorkflowConfig) -> None:
        steps = {s.id: s for s in config.steps}
        outgoing: dict[str, list[Transition]] = {}
        for t in config.transitions:
            outgoing.setdefault(t.from_step, []).append(t)
        self._steps = steps
        self._outgoing = {k: tuple(v) for k, v in outgoing.items()}
        self._config = config

    def save(self) -> None:
        """Write the current config to the backing document."""
        if self.path is None:
            return
        write_atomic(self.path, json.dumps(self.load().to_dict(), indent=2) + "\n")

    # -- Queries --------------------------------------------------------------

    @property
    def first_step(self) -> str:
        return self.load().steps[0].id

    def get_step(self, step_id: str) -> ProcessStep | None:
        self.load()
        return self._steps.get(step_id)

    def get_step_ids(self) -> list[str]:
        return [s.id for s in self.load().steps]

    def get_valid_transitions(self, from_step: str) -> list[Transition]:
        self.load()
        return list(self._outgoing.get(from_step, ()))

    def can_transition(self, from_step: str, to_step: str) -> bool:
        return any(t.to_step == to_step for t in self.get_valid_transitions(from_step))

    def get_checkpoint_policy(self, step_id: str) -> CheckpointPolicy:
        """Checkpoint policy for a step; unknown steps get a disabled 'off' policy."""
        step = self.get_step(step_id)
        return step.checkpoint if step is not None else DISABLED_CHECKPOINT

    def get_mode_policy(self, mode: str) -> CheckpointModePolicy | None:
        return self.load().checkpoint_modes.get(mode)

    def terminal_steps(self) -> list[str]:
        """Steps with no outgoing transitions."""
        self.load()
        return [sid for sid in self._steps if sid not in self._outgoing]

    def should_skip(self, step_id: str, *, priority: int) -> bool:
        step = self.get_step(step_id)
        if step is None or step.skip_if_priority_lte is None:
            return False
        return priority <= step.skip_if_priority_lte

    # -- Mutation -------------------------------------------------------------

    def apply_suggestion(
        self,
        target_step: str | None,
        change: str | None,
        *,
        author: str = "",
        reason: str = "",
    ) -> ApplyResult:
        """Apply a ``checkpoint.mode: <mode>`` change to one step.

        Unknown steps, unparseable change strings, unknown modes and no-op
        changes are rejected without raising. While the default process is
        standing in for an unparseable document, nothing is written.
        """
        with self._write_lock:
            result, new_config = self._prepare_change(target_step, change)
            if new_config is None:
                return result
            if not self._commit(new_config):
                return ApplyResult(applied=False, description="failed to persist workflow")
        logger.info("Applied workflow change: %s", result.description)
        self._record_audit("apply_suggestion", author, reason, [result.description])
        return result

    def apply_suggestions(
        self,
        suggestions: Iterable[WorkflowSuggestion],
        *,
        author: str = "",
        reason: str = "",
    ) -> list[str]:
        """Apply every machine-applicable suggestion; return the change descriptions."""
        applied: list[str] = []
        with self._write_lock:
            for suggestion in suggestions:
                if not suggestion.target_step or not suggestion.change:
                    continue
                result, new_config = self._prepare_change(suggestion.target_step, suggestion.change)
                if new_config is None:
                    continue
                if not self._commit(new_config):
                    break
                applied.append(result.description)
        if applied:
            logger.info("Applied %d workflow change(s)", len(applied))
            self._record_audit("apply_suggestions", author, reason, applied)
        return applied

    def _prepare_change(self, target_step: str | None, change: str | None) -> tuple[ApplyResult, WorkflowConfig | None]:
        if not target_step or not change:
            return ApplyResult(applied=False), None
        match = _CHANGE_PATTERN.match(change)
        if match is None:
            return ApplyResult(applied=False), None
        new_mode = match.group(1)
        if new_mode not in VALID_CHECKPOINT_MODES:
            return ApplyResult(applied=False), None

        config = self._config if self._config is not None else self._load_unlocked()
        if self.used_fallback and self.path is not None and self.path.exists():
            logger.warning("Refusing workflow change: %s could not be parsed", self.path)
            return ApplyResult(applied=False, description="workflow document is unparseable"), None
        step = self._steps.get(target_step)
        if step is None or step.checkpoint.mode == new_mode:
            return ApplyResult(applied=False), None

        old_mode = step.checkpoint.mode
        new_step = _dc_replace(
            step,
            checkpoint=_dc_replace(step.checkpoint, mode=new_mode, enabled=new_mode != "off"),
        )
        new_config = _dc_replace(
            config,
            steps=tuple(new_step if s.id == target_step else s for s in config.steps),
            version=config.version + 1,
        )
        return ApplyResult(applied=True, description=f"{target_step}: {old_mode} -> {new_mode}"), new_config

    def _load_unlocked(self) -> WorkflowConfig:
        self._install(self._read_document())
        assert self._config is not None
        return self._config

    def _commit(self, new_config: WorkflowConfig) -> bool:
        if self.path is not None:
            try:
                write_atomic(self.path, json.dumps(new_config.to_dict(), indent=2) + "\n")
            except OSError:
                logger.error("Failed to persist workflow to %s", self.path, exc_info=True)
                return False
        self._install(new_config)
        return True

    def _record_audit(self, action: str, author: str, reason: str, changes: list[str]) -> None:
        if self._audit is None:
            return
        config = self.load()
        try:
            self._audit(
                author=author,
                action=action,
                reason=reason,
                changes=changes,
                config_version=config.version,
                snapshot=config.to_dict(),
            )
        except sqlite3.Error:
            logger.error("Failed to record workflow audit for %s", action, exc_info=True)
