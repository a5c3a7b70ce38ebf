"""Tests for the JSON API endpoints."""

from __future__ import annotations

import sqlite3
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

import flowloop.dashboard as dash_module
from flowloop.core import FlowloopDB
from flowloop.dashboard import create_app


class TestHealth:
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "project": "test"}

    async def test_uninitialized_db(self) -> None:
        dash_module._db = None
        transport = ASGITransport(app=create_app())
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            resp = await c.get("/api/metrics")
        assert resp.status_code == 500


class TestWorkflow:
    async def test_workflow(self, client: AsyncClient) -> None:
        resp = await client.get("/api/workflow")
        assert resp.status_code == 200
        data = resp.json()
        assert data["version"] == 1
        assert data["used_fallback"] is False
        assert data["terminal_steps"] == ["closure"]
        assert [s["id"] for s in data["steps"]][:2] == ["request", "decomposition"]


class TestTransitions:
    async def test_filters(self, client: AsyncClient, api_db: FlowloopDB) -> None:
        api_db.append_transition("request", "decomposition", task_id="t-1", period_id="P1")
        api_db.append_transition("request", "decomposition", task_id="t-2", period_id="P2")
        resp = await client.get("/api/transitions", params={"period_id": "P2"})
        assert resp.status_code == 200
        assert [e["task_id"] for e in resp.json()] == ["t-2"]
        resp = await client.get("/api/transitions")
        assert len(resp.json()) == 2


class TestMetrics:
    async def test_collect_then_read(self, client: AsyncClient, api_db: FlowloopDB) -> None:
        task = api_db.create_task("Ship it", period_id="P1")
        api_db.update_task(task.id, status="done")
        resp = await client.post("/api/metrics/P1/collect")
        assert resp.status_code == 200
        assert resp.json()["tasks_completed"] == 1

        resp = await client.get("/api/metrics/P1")
        assert resp.json()["tasks_planned"] == 1
        resp = await client.get("/api/metrics")
        assert [m["period_id"] for m in resp.json()] == ["P1"]

    async def test_missing_period(self, client: AsyncClient) -> None:
        resp = await client.get("/api/metrics/P9")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    async def test_collect_failure(self, client: AsyncClient, api_db: FlowloopDB, monkeypatch: pytest.MonkeyPatch) -> None:
        def boom(**kwargs: Any) -> list[Any]:
            raise sqlite3.OperationalError("locked")

        monkeypatch.setattr(api_db, "list_tasks", boom)
        resp = await client.post("/api/metrics/P1/collect")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "COLLECT_FAILED"


class TestAnalysisAndAlerts:
    async def test_analysis(self, client: AsyncClient, api_db: FlowloopDB) -> None:
        for seconds in (4000, 5000, 9000):
            api_db.append_transition("execution", "review", duration_seconds=seconds)
        data = (await client.get("/api/analysis")).json()
        assert [p["type"] for p in data["patterns"]] == ["slow_step"]
        assert data["suggestions"][0]["change"] == "checkpoint.mode: light"

    async def test_alerts(self, client: AsyncClient, api_db: FlowloopDB) -> None:
        for _ in range(5):
            api_db.append_transition("review", "execution", period_id="P1", had_rework=True)
        assert (await client.get("/api/alerts")).json() == []
        data = (await client.get("/api/alerts", params={"period_id": "P1"})).json()
        assert [a["type"] for a in data] == ["high_rework"]
        assert data[0]["severity"] == "critical"


class TestFeedbackAndProposals:
    async def test_feedback(self, client: AsyncClient, api_db: FlowloopDB) -> None:
        rule = api_db.insert_feedback_rule("dev", "missing tests", "Write tests first", period_id="P1")
        api_db.update_feedback_rule(rule["id"], occurrences=2, periods=["P1", "P2"], active=True)
        data = (await client.get("/api/feedback/dev")).json()
        assert data["target"] == "dev"
        assert [r["instruction"] for r in data["rules"]] == ["Write tests first"]
        assert "- [2x] Write tests first" in data["context"]

        empty = (await client.get("/api/feedback/qa")).json()
        assert empty["rules"] == []
        assert empty["context"] == ""

    async def test_proposals(self, client: AsyncClient, api_db: FlowloopDB) -> None:
        api_db.insert_proposal(
            proposal_type="gate_change",
            target="gate_2",
            description="Relax gate 2",
            suggested_value="mode: light",
            source_project="test",
            source_period="P1",
        )
        data = (await client.get("/api/proposals", params={"status": "pending"})).json()
        assert data["threshold"] == 2
        assert [p["target"] for p in data["proposals"]] == ["gate_2"]
        assert (await client.get("/api/proposals", params={"status": "promoted"})).json()["proposals"] == []

    async def test_proposals_bad_status(self, client: AsyncClient) -> None:
        resp = await client.get("/api/proposals", params={"status": "merged"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"]["valid"] == ["pending", "promoted", "rejected"]
