"""Season oracle API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from evermark.api.deps import AdminDep, ClockDep, OrchestratorDep, RepoDep, ResolverDep
from evermark.core.season_clock import (
    SeasonDataError,
    as_utc,
    folder_path,
    is_transition_window,
    validate_season_info,
)
from evermark.core.transition import phase_for_minute, transition_due
from evermark.models.season import SeasonInfo

router = APIRouter(prefix="/api/seasons", tags=["seasons"])


@router.get("")
async def list_seasons(repo: RepoDep) -> dict:
    """Seasons the transition engine has recorded, most recent first."""
    seasons = await repo.get_all_seasons()
    return {
        "data": [
            {
                "number": s.number,
                "year": s.year,
                "week": s.week,
                "start_timestamp": s.start_timestamp.isoformat(),
                "end_timestamp": s.end_timestamp.isoformat(),
                "status": s.status,
                "folder_ref": s.folder_ref,
                "finalized_at": s.finalized_at.isoformat() if s.finalized_at else None,
            }
            for s in seasons
        ]
    }


@router.get("/state")
async def get_season_state(resolver: ResolverDep) -> dict:
    """Current, previous, and next seasons with system and sync status."""
    state = await resolver.resolve()
    return {"data": {**state.model_dump(mode="json"), "folder": folder_path(state.current)}}


@router.get("/at")
async def get_season_at(date: str, clock: ClockDep, resolver: ResolverDep) -> dict:
    """Calculated season containing an ISO-8601 date."""
    try:
        moment = as_utc(datetime.fromisoformat(date))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {date!r}") from exc
    info = clock.season_for(moment, now=resolver.now())
    return {"data": {**info.model_dump(mode="json"), "folder": folder_path(info)}}


@router.get("/transition")
async def get_transition_status(
    clock: ClockDep, resolver: ResolverDep, orchestrator: OrchestratorDep
) -> dict:
    """Whether a transition is due, and which phase would run right now."""
    now = as_utc(resolver.now())
    state = await resolver.resolve()
    in_window = is_transition_window(now)
    window = phase_for_minute(now.minute) if in_window else None
    return {
        "data": {
            "current_season": state.current.number,
            "next_season": state.next.number,
            "should_transition": clock.should_transition(now),
            "transition_due": transition_due(state, now, orchestrator.transition_lead),
            "in_transition_window": in_window,
            "phase": window.phase.value if window else None,
            "next_transition": clock.next_transition_time(now).isoformat(),
            "time_remaining_seconds": int(clock.time_remaining(now).total_seconds()),
        }
    }


@router.get("/comparison")
async def get_season_comparison(resolver: ResolverDep) -> dict:
    """Authoritative vs calculated season numbers."""
    comparison = await resolver.compare()
    return {"data": comparison.model_dump()}


@router.post("/cache/clear")
async def clear_season_cache(resolver: ResolverDep, _: AdminDep) -> dict:
    resolver.invalidate()
    return {"data": {"cleared": True}}


@router.post("/validate", response_model=None)
async def validate_season(body: SeasonInfo) -> dict | JSONResponse:
    """Check a SeasonInfo payload before it is written anywhere."""
    try:
        validate_season_info(body)
    except SeasonDataError as exc:
        return JSONResponse(status_code=400, content={"valid": False, "error": str(exc)})
    return {"valid": True, "data": body.model_dump(mode="json")}


@router.get("/{number}")
async def get_season(number: int, resolver: ResolverDep) -> dict:
    """Info for one season; contract data when it is the contract's current season."""
    if number < 1:
        raise HTTPException(status_code=400, detail="Season numbers start at 1")
    info = await resolver.season_info(number)
    return {"data": {**info.model_dump(mode="json"), "folder": folder_path(info)}}
