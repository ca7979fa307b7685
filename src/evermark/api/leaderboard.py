"""Leaderboard API endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from evermark.api.deps import AdminDep, AlerterDep, RepoDep, get_engine
from evermark.core.leaderboard import LeaderboardReconciler
from evermark.db.engine import get_session
from evermark.db.repository import Repository
from evermark.models.leaderboard import VoteTotal
from evermark.models.transition import AlertEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/leaderboard", tags=["leaderboard"])


@router.get("/{cycle_id}")
async def get_leaderboard(cycle_id: int, repo: RepoDep) -> dict:
    """Ranked entries for a cycle (season number)."""
    entries = await LeaderboardReconciler(repo).current(cycle_id)
    return {
        "data": [
            {**e.model_dump(mode="json"), "total_votes": str(e.total_votes)} for e in entries
        ]
    }


@router.get("/{cycle_id}/final")
async def get_final_leaderboard(cycle_id: int, repo: RepoDep) -> dict:
    """The immutable ranking snapshot written when the season was tallied."""
    snapshot = await repo.get_vote_snapshot(cycle_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Season {cycle_id} has no final tally")
    return {
        "data": {
            "season_number": snapshot.season_number,
            "snapshot_time": snapshot.snapshot_time.isoformat(),
            "total_entries": snapshot.total_entries,
            "total_votes": snapshot.total_votes,
            "snapshot_hash": snapshot.snapshot_hash,
            "entries": snapshot.entries,
        }
    }


@router.post("/{cycle_id}/votes")
async def update_votes(
    cycle_id: int,
    body: VoteTotal,
    engine: Annotated[AsyncEngine, Depends(get_engine)],
    alerter: AlerterDep,
) -> dict:
    """Apply one entity's new vote total and re-rank the cycle.

    The vote itself is recorded elsewhere; a failed leaderboard write is
    alerted and reported, never turned into an error for the voter.
    """
    try:
        async with get_session(engine) as session:
            ranked = await LeaderboardReconciler(Repository(session)).apply_vote_update(
                cycle_id, body.entity_id, body.total_votes
            )
    except SQLAlchemyError as exc:
        logger.exception("leaderboard_update_failed cycle=%d entity=%s", cycle_id, body.entity_id)
        alerter.send_alert(
            AlertEvent(
                type="leaderboard_failure",
                message=f"entity={body.entity_id}: {exc}",
                season=cycle_id,
            )
        )
        return {"data": {"leaderboard_updated": False, "entity_id": body.entity_id}}

    rank = next(e.rank for e in ranked if e.entity_id == body.entity_id)
    return {
        "data": {
            "leaderboard_updated": True,
            "entity_id": body.entity_id,
            "rank": rank,
            "total_entries": len(ranked),
        }
    }


@router.post("/{cycle_id}/repair")
async def repair_leaderboard(cycle_id: int, repo: RepoDep, _: AdminDep) -> dict:
    """Recompute every rank in the cycle from vote totals alone."""
    result = await LeaderboardReconciler(repo).repair(cycle_id)
    return {
        "data": {
            "cycle_id": cycle_id,
            "total_entries": len(result.after),
            "changed": result.changed,
            "rankings": [
                {**c.model_dump(), "total_votes": str(c.total_votes)} for c in result.before
            ],
        }
    }
