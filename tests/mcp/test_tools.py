"""MCP server contract tests, exercised through call_tool()."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

import flowloop.mcp_server as mcp_mod
from flowloop.core import FlowloopDB
from flowloop.mcp_server import call_tool, list_tools


def _parse(result: list[Any]) -> Any:
    """Extract text content from an MCP response and parse it as JSON if possible."""
    text = result[0].text
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class TestListTools:
    async def test_all_tools_listed(self) -> None:
        names = {t.name for t in await list_tools()}
        assert names == {
            "get_workflow",
            "log_transition",
            "log_checkpoint",
            "collect_metrics",
            "get_metrics",
            "analyze_patterns",
            "apply_suggestion",
            "run_alerts",
            "process_retro",
            "get_feedback_context",
            "propose_workflow_change",
        }


class TestWorkflowTools:
    async def test_get_workflow(self, mcp_db: FlowloopDB) -> None:
        data = _parse(await call_tool("get_workflow", {}))
        assert data["used_fallback"] is False
        assert len(data["steps"]) == 6

    async def test_get_workflow_from_step(self, mcp_db: FlowloopDB) -> None:
        data = _parse(await call_tool("get_workflow", {"from_step": "decomposition"}))
        assert data["from"] == "decomposition"
        assert [t["to"] for t in data["transitions"]] == ["validation", "execution"]
        assert data["transitions"][1]["condition"] == "auto_validated"

    async def test_get_workflow_unknown_step(self, mcp_db: FlowloopDB) -> None:
        data = _parse(await call_tool("get_workflow", {"from_step": "ghost"}))
        assert data["code"] == "not_found"

    async def test_apply_suggestion(self, mcp_db: FlowloopDB) -> None:
        data = _parse(
            await call_tool(
                "apply_suggestion",
                {"step": "review", "change": "checkpoint.mode: strict", "reason": "bugs slip through", "actor": "agent-7"},
            )
        )
        assert data == {"applied": True, "description": "review: light -> strict", "version": 2}
        [record] = mcp_db.get_workflow_audit()
        assert record["author"] == "agent-7"
        on_disk = json.loads((mcp_db.db_path.parent / "workflow.json").read_text())
        assert on_disk["version"] == 2

    async def test_apply_suggestion_rejected(self, mcp_db: FlowloopDB) -> None:
        data = _parse(await call_tool("apply_suggestion", {"step": "review", "change": "checkpoint.mode: light"}))
        assert data["code"] == "invalid"


class TestTrackingTools:
    async def test_log_transition(self, mcp_db: FlowloopDB) -> None:
        task = mcp_db.create_task("Agent task", period_id="P1")
        data = _parse(await call_tool("log_transition", {"task_id": task.id, "to_step": "decomposition"}))
        assert data == {"task_id": task.id, "from": "request", "to": "decomposition", "logged": True}

        data = _parse(
            await call_tool(
                "log_transition",
                {"task_id": task.id, "to_step": "execution", "checkpoint_result": "pass", "notes": "plan ok"},
            )
        )
        assert data["from"] == "decomposition"
        events = mcp_db.query_transitions(task_id=task.id)
        assert [e["step_to"] for e in events] == ["decomposition", "execution"]
        assert events[1]["checkpoint_result"] == "pass"
        assert events[1]["period_id"] == "P1"

    async def test_log_transition_warns_on_undeclared(self, mcp_db: FlowloopDB) -> None:
        task = mcp_db.create_task("Jumper")
        data = _parse(await call_tool("log_transition", {"task_id": task.id, "to_step": "closure", "had_rework": True}))
        assert data["logged"] is True
        assert data["warning"] == "request -> closure is not a declared transition"
        [event] = mcp_db.query_transitions(task_id=task.id)
        assert event["had_rework"] is True

    async def test_log_transition_errors(self, mcp_db: FlowloopDB) -> None:
        missing = _parse(await call_tool("log_transition", {"task_id": "mcp-nope", "to_step": "review"}))
        assert missing["code"] == "not_found"
        assert "mcp-nope" in missing["error"]

        task = mcp_db.create_task("Valid")
        bad_step = _parse(await call_tool("log_transition", {"task_id": task.id, "to_step": "deploy"}))
        assert bad_step["code"] == "invalid"
        bad_result = _parse(
            await call_tool("log_transition", {"task_id": task.id, "to_step": "decomposition", "checkpoint_result": "ok"})
        )
        assert bad_result["code"] == "invalid"
        assert mcp_db.count_transitions() == 0

    async def test_log_checkpoint(self, mcp_db: FlowloopDB) -> None:
        task = mcp_db.create_task("Checked")
        await call_tool("log_transition", {"task_id": task.id, "to_step": "decomposition"})
        data = _parse(await call_tool("log_checkpoint", {"task_id": task.id, "result": "fail", "notes": "no criteria"}))
        assert data == {"task_id": task.id, "step": "decomposition", "result": "fail"}
        last = mcp_db.get_last_transition(task.id)
        assert last is not None
        assert last["step_from"] == last["step_to"] == "decomposition"

    async def test_log_checkpoint_errors(self, mcp_db: FlowloopDB) -> None:
        assert _parse(await call_tool("log_checkpoint", {"task_id": "mcp-nope", "result": "pass"}))["code"] == "not_found"
        task = mcp_db.create_task("Checked")
        assert _parse(await call_tool("log_checkpoint", {"task_id": task.id, "result": "meh"}))["code"] == "invalid"


class TestAnalyticsTools:
    async def test_collect_and_get_metrics(self, mcp_db: FlowloopDB) -> None:
        task = mcp_db.create_task("Done", period_id="P1")
        mcp_db.update_task(task.id, status="done")
        collected = _parse(await call_tool("collect_metrics", {"period_id": "P1"}))
        assert collected["tasks_completed"] == 1

        one = _parse(await call_tool("get_metrics", {"period_id": "P1"}))
        assert one["period_id"] == "P1"
        every = _parse(await call_tool("get_metrics", {}))
        assert [m["period_id"] for m in every] == ["P1"]

    async def test_get_metrics_missing(self, mcp_db: FlowloopDB) -> None:
        assert _parse(await call_tool("get_metrics", {"period_id": "P9"}))["code"] == "not_found"

    async def test_analyze_patterns(self, mcp_db: FlowloopDB) -> None:
        for _ in range(5):
            mcp_db.append_transition("decomposition", "decomposition", checkpoint_result="pass")
        data = _parse(await call_tool("analyze_patterns", {}))
        assert [p["type"] for p in data["patterns"]] == ["useless_checkpoint"]
        assert data["suggestions"][0]["change"] == "checkpoint.mode: off"

    async def test_run_alerts(self, mcp_db: FlowloopDB) -> None:
        for _ in range(5):
            mcp_db.append_transition("review", "execution", period_id="P1", had_rework=True)
        assert _parse(await call_tool("run_alerts", {})) == []
        data = _parse(await call_tool("run_alerts", {"period_id": "P1"}))
        assert [a["type"] for a in data] == ["high_rework"]


class TestLearningTools:
    async def test_process_retro_and_context(self, mcp_db: FlowloopDB) -> None:
        for period in ("P1", "P2"):
            mcp_db.save_retro(period, what_didnt=["Missing tests on the auth module"])
        first = _parse(await call_tool("process_retro", {"period_id": "P1"}))
        assert first == {"new_rules": 1, "updated_rules": 0, "proposals": []}
        assert _parse(await call_tool("get_feedback_context", {"target": "dev"})) == ""

        await call_tool("process_retro", {"period_id": "P2"})
        context = _parse(await call_tool("get_feedback_context", {"target": "dev"}))
        assert "LESSONS FROM PREVIOUS RETROSPECTIVES:" in context
        assert "[2x]" in context

    async def test_process_retro_proposals(self, mcp_db: FlowloopDB) -> None:
        mcp_db.save_retro("P1", actions_accepted=["Relax gate 2"])
        data = _parse(await call_tool("process_retro", {"period_id": "P1"}))
        [proposal] = data["proposals"]
        assert proposal["is_new"] is True
        assert mcp_db.get_proposal(proposal["id"])["source_project"] == "alpha"

    async def test_process_retro_missing(self, mcp_db: FlowloopDB) -> None:
        assert _parse(await call_tool("process_retro", {"period_id": "P3"}))["code"] == "not_found"

    async def test_propose_and_vote(self, mcp_db: FlowloopDB) -> None:
        args = {
            "proposal_type": "checkpoint_change",
            "target": "checkpoint_execution",
            "description": "Execution checkpoint is too heavy",
            "suggested_value": "mode: light",
        }
        first = _parse(await call_tool("propose_workflow_change", args))
        assert first["is_new"] is True
        assert first["votes"] == 1
        second = _parse(await call_tool("propose_workflow_change", {**args, "project": "beta"}))
        assert second == {"id": first["id"], "is_new": False, "votes": 2, "promoted": True}

    async def test_propose_bad_type(self, mcp_db: FlowloopDB) -> None:
        args = {"proposal_type": "rewrite", "target": "x", "description": "y", "suggested_value": "z"}
        assert _parse(await call_tool("propose_workflow_change", args))["code"] == "invalid"


class TestDispatch:
    async def test_unknown_tool(self, mcp_db: FlowloopDB) -> None:
        assert _parse(await call_tool("reticulate_splines", {}))["code"] == "unknown_tool"

    async def test_uninitialized(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(mcp_mod, "db", None)
        with pytest.raises(RuntimeError, match="not initialized"):
            await call_tool("get_workflow", {})

    async def test_calls_are_logged(self, mcp_db: FlowloopDB, tmp_path: Path) -> None:
        from flowloop.logging import setup_logging

        logger = setup_logging(tmp_path)
        original = mcp_mod._logger
        mcp_mod._logger = logger
        try:
            await call_tool("get_metrics", {})
        finally:
            mcp_mod._logger = original
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
        record = json.loads((tmp_path / "flowloop.log").read_text().splitlines()[-1])
        assert record["msg"] == "tool_call"
        assert record["tool"] == "get_metrics"
        assert "duration_ms" in record
