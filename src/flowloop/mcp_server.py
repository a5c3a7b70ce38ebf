"""MCP server for flowloop.

Agent-facing interface over the same SQLite store the CLI uses. Exposes
step tracking, metrics, pattern analysis, alerts and the feedback loop as
MCP tools.

Usage:
    flowloop-mcp                              # Auto-discover .flowloop/ from cwd
    flowloop-mcp --project /path/to/project   # Explicit project root
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from flowloop.alerts import AlertEngine, AlertThresholds
from flowloop.core import (
    DB_FILENAME,
    FLOWLOOP_DIR_NAME,
    VALID_CHECKPOINT_RESULTS,
    FlowloopDB,
    alert_settings,
    find_flowloop_root,
    read_config,
)
from flowloop.feedback import FeedbackPromoter
from flowloop.metrics import MetricsAggregator
from flowloop.patterns import PatternDetector
from flowloop.proposals import ProposalBoard, ProposalDraft
from flowloop.tracker import TransitionTracker
from flowloop.workflow import WorkflowConfigStore

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

server = Server("flowloop")
db: FlowloopDB | None = None
_flowloop_dir: Path | None = None
_logger: logging.Logger | None = None

_PROPOSAL_TYPES = ("gate_change", "checkpoint_change", "workflow_adjustment")


def _get_db() -> FlowloopDB:
    if db is None:
        msg = "Database not initialized"
        raise RuntimeError(msg)
    return db


def _get_store(tracker: FlowloopDB) -> WorkflowConfigStore:
    return WorkflowConfigStore.from_project(_flowloop_dir or tracker.db_path.parent, audit=tracker.record_workflow_audit)


def _text(content: Any) -> list[TextContent]:
    if isinstance(content, str):
        return [TextContent(type="text", text=content)]
    return [TextContent(type="text", text=json.dumps(content, indent=2, default=str))]


def _not_found(what: str) -> list[TextContent]:
    return _text({"error": f"{what} not found", "code": "not_found"})


def _invalid(message: str) -> list[TextContent]:
    return _text({"error": message, "code": "invalid"})


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@server.list_tools()  # type: ignore[untyped-decorator,no-untyped-call]
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="get_workflow",
            description="Get the process definition: steps with checkpoint policies, transitions, checkpoint modes. Pass from_step to get only its valid next steps.",
            inputSchema={
                "type": "object",
                "properties": {
                    "from_step": {"type": "string", "description": "Only list transitions leaving this step"},
                },
            },
        ),
        Tool(
            name="log_transition",
            description="Move a task to a new step and log the transition. The duration in the previous step is measured automatically. Illegal moves are logged with a warning, not rejected.",
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Task ID"},
                    "to_step": {"type": "string", "description": "Target step ID"},
                    "had_rework": {"type": "boolean", "default": False, "description": "This move sends work back"},
                    "checkpoint_result": {
                        "type": "string",
                        "enum": sorted(VALID_CHECKPOINT_RESULTS),
                        "description": "Checkpoint outcome for the step being left",
                    },
                    "notes": {"type": "string", "description": "Free-text notes"},
                },
                "required": ["task_id", "to_step"],
            },
        ),
        Tool(
            name="log_checkpoint",
            description="Record a checkpoint outcome on a task's current step without moving it.",
            inputSchema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Task ID"},
                    "result": {"type": "string", "enum": sorted(VALID_CHECKPOINT_RESULTS)},
                    "notes": {"type": "string", "description": "Free-text notes"},
                },
                "required": ["task_id", "result"],
            },
        ),
        Tool(
            name="collect_metrics",
            description="Recompute delivery time, first-pass rate and rework count for a period.",
            inputSchema={
                "type": "object",
                "properties": {"period_id": {"type": "string", "description": "Period ID"}},
                "required": ["period_id"],
            },
        ),
        Tool(
            name="get_metrics",
            description="Get stored metrics for one period, or for all periods newest-first when period_id is omitted.",
            inputSchema={
                "type": "object",
                "properties": {"period_id": {"type": "string", "description": "Period ID"}},
            },
        ),
        Tool(
            name="analyze_patterns",
            description="Mine the full history for slow steps, checkpoint utility, rework and completion trends, with workflow suggestions.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="apply_suggestion",
            description="Apply a checkpoint change such as 'checkpoint.mode: light' to one step of workflow.json.",
            inputSchema={
                "type": "object",
                "properties": {
                    "step": {"type": "string", "description": "Target step ID"},
                    "change": {"type": "string", "description": "Change string, e.g. 'checkpoint.mode: strict'"},
                    "reason": {"type": "string", "description": "Why (stored in the audit trail)"},
                    "actor": {"type": "string", "default": "mcp", "description": "Author recorded in the audit trail"},
                },
                "required": ["step", "change"],
            },
        ),
        Tool(
            name="run_alerts",
            description="Run threshold alerts: stuck tasks, rework rate, schedule pace, review scores, worker failures, stale backlog.",
            inputSchema={
                "type": "object",
                "properties": {
                    "period_id": {"type": "string", "description": "Enables the rework and pace checks for this period"},
                },
            },
        ),
        Tool(
            name="process_retro",
            description="Turn a stored retrospective into feedback rules and cross-project workflow proposals.",
            inputSchema={
                "type": "object",
                "properties": {"period_id": {"type": "string", "description": "Period whose retro to process"}},
                "required": ["period_id"],
            },
        ),
        Tool(
            name="get_feedback_context",
            description="Get the 'lessons from previous retrospectives' block for a worker role. Empty when no rule is active.",
            inputSchema={
                "type": "object",
                "properties": {"target": {"type": "string", "description": "Worker role, e.g. dev, qa, pm"}},
                "required": ["target"],
            },
        ),
        Tool(
            name="propose_workflow_change",
            description="Propose a workflow change shared across projects, or vote on an identical pending one.",
            inputSchema={
                "type": "object",
                "properties": {
                    "proposal_type": {"type": "string", "enum": list(_PROPOSAL_TYPES)},
                    "target": {"type": "string", "description": "What to change, e.g. checkpoint_execution"},
                    "description": {"type": "string"},
                    "suggested_value": {"type": "string", "description": "e.g. 'mode: light'"},
                    "project": {"type": "string", "description": "Voting project (default: this project)"},
                },
                "required": ["proposal_type", "target", "description", "suggested_value"],
            },
        ),
    ]


@server.call_tool()  # type: ignore[untyped-decorator]
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    tracker = _get_db()
    t0 = time.monotonic()

    try:
        result = await _dispatch(name, arguments, tracker)
    except Exception:
        if _logger:
            _logger.error("tool_error", extra={"tool": name, "args_data": arguments}, exc_info=True)
        raise
    else:
        duration_ms = round((time.monotonic() - t0) * 1000, 1)
        if _logger:
            _logger.info("tool_call", extra={"tool": name, "args_data": arguments, "duration_ms": duration_ms})
        return result
    finally:
        if tracker.conn.in_transaction:
            tracker.conn.rollback()


async def _dispatch(name: str, arguments: dict[str, Any], tracker: FlowloopDB) -> list[TextContent]:
    match name:
        case "get_workflow":
            store = _get_store(tracker)
            from_step = arguments.get("from_step")
            if from_step:
                if store.get_step(from_step) is None:
                    return _not_found(f"Step {from_step}")
                return _text(
                    {
                        "from": from_step,
                        "transitions": [
                            {"to": t.to_step, "condition": t.condition} for t in store.get_valid_transitions(from_step)
                        ],
                    }
                )
            data = store.load().to_dict()
            data["used_fallback"] = store.used_fallback
            return _text(data)

        case "log_transition":
            try:
                task = tracker.get_task(arguments["task_id"])
            except KeyError:
                return _not_found(f"Task {arguments['task_id']}")
            store = _get_store(tracker)
            to_step = arguments["to_step"]
            if store.get_step(to_step) is None:
                return _invalid(f"Unknown step '{to_step}'. Valid: {', '.join(store.get_step_ids())}")
            result_arg = arguments.get("checkpoint_result")
            if result_arg is not None and result_arg not in VALID_CHECKPOINT_RESULTS:
                return _invalid(f"Invalid checkpoint_result '{result_arg}'")
            step_tracker = TransitionTracker.resume(tracker, store, task.id, period_id=task.period_id)
            step_from = step_tracker.current_step
            allowed = store.can_transition(step_from, to_step)
            logged = step_tracker.transition(
                to_step,
                had_rework=bool(arguments.get("had_rework", False)),
                checkpoint_result=result_arg,
                notes=arguments.get("notes", ""),
            )
            payload: dict[str, Any] = {"task_id": task.id, "from": step_from, "to": to_step, "logged": logged}
            if not allowed:
                payload["warning"] = f"{step_from} -> {to_step} is not a declared transition"
            return _text(payload)

        case "log_checkpoint":
            try:
                task = tracker.get_task(arguments["task_id"])
            except KeyError:
                return _not_found(f"Task {arguments['task_id']}")
            if arguments["result"] not in VALID_CHECKPOINT_RESULTS:
                return _invalid(f"Invalid result '{arguments['result']}'")
            step_tracker = TransitionTracker.resume(tracker, _get_store(tracker), task.id, period_id=task.period_id)
            step_tracker.log_checkpoint(arguments["result"], arguments.get("notes", ""))
            return _text({"task_id": task.id, "step": step_tracker.current_step, "result": arguments["result"]})

        case "collect_metrics":
            aggregator = MetricsAggregator(tracker)
            period_id = arguments["period_id"]
            if not aggregator.collect_period_metrics(period_id):
                return _text({"error": f"Failed to collect metrics for {period_id}", "code": "store_error"})
            return _text(aggregator.get_period_metrics(period_id))

        case "get_metrics":
            aggregator = MetricsAggregator(tracker)
            period_id = arguments.get("period_id")
            if period_id:
                row = aggregator.get_period_metrics(period_id)
                if row is None:
                    return _not_found(f"Metrics for period {period_id}")
                return _text(row)
            return _text(aggregator.get_all_period_metrics())

        case "analyze_patterns":
            return _text(PatternDetector(tracker, _get_store(tracker)).analyze().to_dict())

        case "apply_suggestion":
            store = _get_store(tracker)
            applied = store.apply_suggestion(
                arguments["step"],
                arguments["change"],
                author=arguments.get("actor", "mcp"),
                reason=arguments.get("reason", ""),
            )
            if not applied.applied:
                return _invalid(f"Change {arguments['change']!r} not applied to '{arguments['step']}'")
            return _text({"applied": True, "description": applied.description, "version": store.load().version})

        case "run_alerts":
            thresholds = AlertThresholds.from_settings(alert_settings(read_config(tracker.db_path.parent)))
            alerts = AlertEngine(tracker, thresholds).run_all_checks(arguments.get("period_id") or None)
            return _text([a.to_dict() for a in alerts])

        case "process_retro":
            period_id = arguments["period_id"]
            retro = tracker.get_retro(period_id)
            if retro is None:
                return _not_found(f"Retrospective for period {period_id}")
            counts = FeedbackPromoter(tracker).process_retrospective(retro)
            votes = ProposalBoard(tracker).propose_from_retro(retro, project=tracker.project)
            return _text(
                {
                    **counts,
                    "proposals": [
                        {"id": v.proposal_id, "is_new": v.is_new, "votes": v.votes, "promoted": v.promoted}
                        for v in votes
                    ],
                }
            )

        case "get_feedback_context":
            return _text(FeedbackPromoter(tracker).build_context_block(arguments["target"]))

        case "propose_workflow_change":
            if arguments["proposal_type"] not in _PROPOSAL_TYPES:
                return _invalid(f"Invalid proposal_type '{arguments['proposal_type']}'")
            draft = ProposalDraft(
                arguments["proposal_type"],
                arguments["target"],
                arguments["description"],
                arguments["suggested_value"],
            )
            vote = ProposalBoard(tracker).propose(draft, project=arguments.get("project") or tracker.project)
            return _text({"id": vote.proposal_id, "is_new": vote.is_new, "votes": vote.votes, "promoted": vote.promoted})

        case _:
            return _text({"error": f"Unknown tool: {name}", "code": "unknown_tool"})


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def _run(project_path: Path | None) -> None:
    global db, _flowloop_dir, _logger

    if project_path:
        flowloop_dir = project_path / FLOWLOOP_DIR_NAME
        if not flowloop_dir.is_dir():
            print(f"Error: {flowloop_dir} not found. Run 'flowloop init' first.", file=sys.stderr)
            sys.exit(1)
    else:
        try:
            flowloop_dir = find_flowloop_root()
        except FileNotFoundError:
            print(f"Error: No {FLOWLOOP_DIR_NAME}/ found. Run 'flowloop init' first.", file=sys.stderr)
            sys.exit(1)

    _flowloop_dir = flowloop_dir
    config = read_config(flowloop_dir)
    db = FlowloopDB(flowloop_dir / DB_FILENAME, prefix=config.get("prefix", "flowloop"), project=config.get("project"))
    db.initialize()

    from flowloop.logging import setup_logging

    _logger = setup_logging(flowloop_dir)
    _logger.info("mcp_server_start", extra={"tool": "server", "args_data": {"project": str(flowloop_dir.parent)}})

    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    import asyncio

    parser = argparse.ArgumentParser(description="Flowloop MCP server")
    parser.add_argument("--project", type=Path, default=None, help="Project root (auto-discovers .flowloop/ if omitted)")
    args = parser.parse_args()

    asyncio.run(_run(args.project))


if __name__ == "__main__":
    main()
