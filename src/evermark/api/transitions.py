"""Season transition API: the periodic trigger and the transition audit trail."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from evermark.api.deps import AdminDep, AlerterDep, OrchestratorDep, RepoDep
from evermark.models.transition import AlertEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transitions", tags=["transitions"])


@router.post("/tick")
async def transition_tick(
    orchestrator: OrchestratorDep,
    alerter: AlerterDep,
    _: AdminDep,
) -> JSONResponse:
    """Run whichever transition phase owns the current minute.

    Meant to be hit once a minute by an external cron. Outside the Sunday
    23:00 UTC window, or when nothing is due, it answers 200 with the no-op
    status. A failed phase answers 500 so the caller's monitoring sees it.
    """
    try:
        outcome = await orchestrator.run(initiated_by="http", transition_type="manual")
    except Exception as exc:  # Last-resort handler; the caller gets a parseable 500
        logger.exception("transition_tick_error")
        alerter.send_alert(AlertEvent(type="critical_failure", message=str(exc) or type(exc).__name__))
        return JSONResponse(
            status_code=500,
            content={
                "error": "Transition cron failed",
                "message": str(exc) or type(exc).__name__,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())


@router.get("")
async def list_transitions(repo: RepoDep, limit: int = 20) -> dict:
    """Most recent transition records."""
    records = await repo.list_transitions(limit=max(1, min(limit, 100)))
    return {"data": [r.model_dump(mode="json") for r in records]}


@router.get("/alerts")
async def recent_alerts(alerter: AlerterDep, _: AdminDep) -> dict:
    return {"data": [a.model_dump(mode="json") for a in alerter.recent]}
