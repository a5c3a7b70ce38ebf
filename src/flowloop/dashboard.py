"""JSON web API for flowloop.

Single-project local server. A module-level ``_db`` is set at startup (or
by test fixtures) and injected into handlers via ``Depends(_get_db)``.

Usage:
    flowloop dashboard                    # Serves http://127.0.0.1:8390/api
    flowloop dashboard --port 9000        # Custom port
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from flowloop.alerts import AlertEngine, AlertThresholds
from flowloop.core import (
    DB_FILENAME,
    FlowloopDB,
    alert_settings,
    find_flowloop_root,
    read_config,
)
from flowloop.feedback import FeedbackPromoter
from flowloop.logging import setup_logging
from flowloop.metrics import MetricsAggregator
from flowloop.patterns import PatternDetector
from flowloop.proposals import ProposalBoard
from flowloop.workflow import WorkflowConfigStore

DEFAULT_PORT = 8390

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level state, set by main() or test fixtures
# ---------------------------------------------------------------------------

_db: FlowloopDB | None = None

_PROPOSAL_STATUSES = frozenset({"pending", "promoted", "rejected"})


def _error_response(
    message: str,
    code: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Return a structured error response and log the error."""
    logger.warning("API error [%s] %s: %s", status_code, code, message)
    return JSONResponse(
        {"error": {"message": message, "code": code, "details": details or {}}},
        status_code=status_code,
    )


def _get_db() -> FlowloopDB:
    """Return the active database connection."""
    if _db is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return _db


def _store_for(db: FlowloopDB) -> WorkflowConfigStore:
    return WorkflowConfigStore.from_project(db.db_path.parent, audit=db.record_workflow_audit)


# ---------------------------------------------------------------------------
# Project router
# ---------------------------------------------------------------------------


def _create_project_router() -> APIRouter:
    """Build the APIRouter containing all project endpoints."""
    router = APIRouter()

    # Handlers are async on purpose: the shared SQLite connection is only
    # touched from the event loop thread.

    @router.get("/workflow")
    async def api_workflow(db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        store = _store_for(db)
        config = store.load()
        data = config.to_dict()
        data["used_fallback"] = store.used_fallback
        data["terminal_steps"] = store.terminal_steps()
        return JSONResponse(data)

    @router.get("/transitions")
    async def api_transitions(
        task_id: str | None = None,
        period_id: str | None = None,
        db: FlowloopDB = Depends(_get_db),
    ) -> JSONResponse:
        events = db.query_transitions(task_id=task_id or None, period_id=period_id or None)
        return JSONResponse(events)

    @router.get("/metrics")
    async def api_metrics(db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        return JSONResponse(MetricsAggregator(db).get_all_period_metrics())

    @router.get("/metrics/{period_id}")
    async def api_period_metrics(period_id: str, db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        row = MetricsAggregator(db).get_period_metrics(period_id)
        if row is None:
            return _error_response(f"No metrics for period {period_id}", "NOT_FOUND", 404)
        return JSONResponse(row)

    @router.post("/metrics/{period_id}/collect")
    async def api_collect_metrics(period_id: str, db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        aggregator = MetricsAggregator(db)
        if not aggregator.collect_period_metrics(period_id):
            return _error_response(f"Failed to collect metrics for {period_id}", "COLLECT_FAILED", 500)
        return JSONResponse(aggregator.get_period_metrics(period_id))

    @router.get("/analysis")
    async def api_analysis(db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        result = PatternDetector(db, _store_for(db)).analyze()
        return JSONResponse(result.to_dict())

    @router.get("/alerts")
    async def api_alerts(period_id: str | None = None, db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        thresholds = AlertThresholds.from_settings(alert_settings(read_config(db.db_path.parent)))
        found = AlertEngine(db, thresholds).run_all_checks(period_id or None)
        return JSONResponse([a.to_dict() for a in found])

    @router.get("/feedback/{target}")
    async def api_feedback(target: str, db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        promoter = FeedbackPromoter(db)
        return JSONResponse(
            {
                "target": target,
                "rules": promoter.active_rules(target),
                "context": promoter.build_context_block(target),
            }
        )

    @router.get("/proposals")
    async def api_proposals(status: str | None = None, db: FlowloopDB = Depends(_get_db)) -> JSONResponse:
        if status and status not in _PROPOSAL_STATUSES:
            return _error_response(
                f"Invalid status: {status}",
                "VALIDATION_ERROR",
                400,
                {"valid": sorted(_PROPOSAL_STATUSES)},
            )
        board = ProposalBoard(db)
        return JSONResponse({"threshold": board.threshold, "proposals": db.list_proposals(status=status or None)})

    return router


def create_app() -> FastAPI:
    """Create the FastAPI application with all API endpoints."""
    app = FastAPI(title="Flowloop", docs_url=None, redoc_url=None)
    app.include_router(_create_project_router(), prefix="/api")

    @app.get("/api/health")
    async def api_health() -> JSONResponse:
        return JSONResponse({"status": "ok", "project": _db.project if _db is not None else None})

    return app


def main(port: int = DEFAULT_PORT, *, host: str = "127.0.0.1") -> None:
    """Start the API server for the project discovered from cwd."""
    import uvicorn

    global _db

    flowloop_dir = find_flowloop_root()
    setup_logging(flowloop_dir)
    config = read_config(flowloop_dir)
    _db = FlowloopDB(
        flowloop_dir / DB_FILENAME,
        prefix=config.get("prefix", "flowloop"),
        project=config.get("project"),
        check_same_thread=False,
    )
    _db.initialize()

    app = create_app()
    print(f"Flowloop API: http://{host}:{port}/api")
    uvicorn.run(app, host=host, port=port, log_level="warning")
