"""Season transitions.

A rollover from season N to N+1 runs inside the Sunday 23:00 UTC hour as four
phases, one per quarter of the hour:

    prepare_next_season  [00, 15)
    tally_votes          [15, 30)
    finalize_season      [30, 45)
    transition_complete  [45, 60)

Each trigger (the in-process cron job or ``POST /api/transitions/tick``)
executes at most the one phase owning the current minute. Progress lives in
the ``season_transitions`` row for the season pair, so repeated or concurrent
triggers find completed phases already recorded and do nothing. Every handler
is an idempotent upsert; the advisory lock only cuts duplicate work.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from evermark.core.alerts import Alerter
from evermark.core.leaderboard import LeaderboardReconciler, snapshot_hash, snapshot_payload
from evermark.core.season_clock import as_utc, is_transition_window, validate_season_info
from evermark.core.season_state import SeasonStateResolver
from evermark.core.storage import SeasonStorage
from evermark.db.engine import get_session
from evermark.db.repository import Repository
from evermark.models.season import SeasonState
from evermark.models.transition import AlertEvent, TransitionOutcome, TransitionRecord

logger = logging.getLogger(__name__)

DEFAULT_TRANSITION_LEAD = timedelta(hours=1)
DEFAULT_LOCK_TIMEOUT_SECONDS = 300

_INSTANCE_ID: str = os.environ.get("FLY_MACHINE_ID", "") or str(uuid4())


class TransitionPhase(StrEnum):
    PREPARE_NEXT_SEASON = "prepare_next_season"
    TALLY_VOTES = "tally_votes"
    FINALIZE_SEASON = "finalize_season"
    TRANSITION_COMPLETE = "transition_complete"


@dataclass(frozen=True)
class PhaseWindow:
    """Minute-of-hour range, start inclusive and end exclusive."""

    phase: TransitionPhase
    description: str
    start_minute: int
    end_minute: int

    def contains(self, minute: int) -> bool:
        return self.start_minute <= minute < self.end_minute


PHASE_WINDOWS: tuple[PhaseWindow, ...] = (
    PhaseWindow(TransitionPhase.PREPARE_NEXT_SEASON, "Prepare next season", 0, 15),
    PhaseWindow(TransitionPhase.TALLY_VOTES, "Tally final votes", 15, 30),
    PhaseWindow(TransitionPhase.FINALIZE_SEASON, "Finalize current season", 30, 45),
    PhaseWindow(TransitionPhase.TRANSITION_COMPLETE, "Complete transition", 45, 60),
)

ALL_PHASES: tuple[str, ...] = tuple(w.phase.value for w in PHASE_WINDOWS)


def phase_for_minute(minute: int) -> PhaseWindow | None:
    for window in PHASE_WINDOWS:
        if window.contains(minute):
            return window
    return None


def transition_due(state: SeasonState, now: datetime, lead: timedelta) -> bool:
    """True once *now* is within *lead* of the current season's end, or past it."""
    return as_utc(now) > as_utc(state.current.end_timestamp) - lead


class TransitionPhaseError(Exception):
    """A phase handler failed. The transition record is marked failed."""

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(f"{phase}: {message}")
        self.phase = phase
        self.message = message


PhaseHandler = Callable[[SeasonState, TransitionRecord, datetime], Awaitable[dict[str, Any]]]


class TransitionOrchestrator:
    """Runs at most one transition phase per invocation.

    Args:
        engine: Database engine; each step opens its own session.
        resolver: Source of the current/next season.
        storage: Permanent season storage.
        alerter: Operator alert sink.
        transition_lead: How long before the season's end a transition is due.
        lock_timeout_seconds: Age after which another holder's lock is taken over.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        resolver: SeasonStateResolver,
        storage: SeasonStorage,
        alerter: Alerter,
        transition_lead: timedelta = DEFAULT_TRANSITION_LEAD,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        instance_id: str = _INSTANCE_ID,
    ) -> None:
        self.engine = engine
        self.resolver = resolver
        self.storage = storage
        self.alerter = alerter
        self.transition_lead = transition_lead
        self.lock_timeout_seconds = lock_timeout_seconds
        self.instance_id = instance_id
        self._handlers: dict[TransitionPhase, PhaseHandler] = {
            TransitionPhase.PREPARE_NEXT_SEASON: self._prepare_next_season,
            TransitionPhase.TALLY_VOTES: self._tally_votes,
            TransitionPhase.FINALIZE_SEASON: self._finalize_season,
            TransitionPhase.TRANSITION_COMPLETE: self._transition_complete,
        }

    async def run(
        self,
        now: datetime | None = None,
        initiated_by: str = "system",
        transition_type: str = "automatic",
    ) -> TransitionOutcome:
        """Resolve the season, pick the phase for this minute, and execute it."""
        if now is None:
            now = as_utc(self.resolver.now())
            state = await self.resolver.resolve()
        else:
            now = as_utc(now)
            state = await self.resolver.resolve(now=now)
        current, upcoming = state.current, state.next
        context: dict[str, Any] = {
            "timestamp": now,
            "current_season": current.number,
            "next_season": upcoming.number,
        }

        if not is_transition_window(now):
            return TransitionOutcome(
                status="not_in_window",
                message="Outside the Sunday 23:00 UTC transition window",
                details={"nextTransition": as_utc(current.end_timestamp).isoformat()},
                **context,
            )

        if not transition_due(state, now, self.transition_lead):
            return TransitionOutcome(
                status="not_needed",
                message=f"Season {current.number} is not due to end",
                details={"seasonEnd": as_utc(current.end_timestamp).isoformat()},
                **context,
            )

        window = phase_for_minute(now.minute)
        if window is None:
            return TransitionOutcome(status="idle", message="No phase scheduled", **context)
        phase = window.phase.value

        async with get_session(self.engine) as session:
            record = await Repository(session).get_or_create_transition(
                current.number,
                upcoming.number,
                phase,
                transition_type=transition_type,
                initiated_by=initiated_by,
            )

        if phase in record.phases_completed:
            logger.info(
                "transition_phase_skip reason=already_completed phase=%s from=%d to=%d",
                phase,
                current.number,
                upcoming.number,
            )
            return TransitionOutcome(
                status="already_completed",
                phase=phase,
                description=window.description,
                transition_id=record.id,
                message=f"Phase {phase} already completed",
                **context,
            )

        lock_key = f"transition:{current.number}-{upcoming.number}:{phase}"
        holder = f"{self.instance_id}:{uuid4().hex[:8]}"
        lock_acquired = False
        try:
            async with get_session(self.engine) as session:
                lock_acquired = await Repository(session).try_acquire_lock(
                    lock_key, holder, self.lock_timeout_seconds
                )
            if not lock_acquired:
                logger.info("transition_phase_skip reason=locked key=%s", lock_key)
                return TransitionOutcome(
                    status="locked",
                    phase=phase,
                    description=window.description,
                    transition_id=record.id,
                    message="Phase is running in another invocation",
                    **context,
                )
        except SQLAlchemyError:
            logger.warning("transition_lock_unavailable key=%s proceeding", lock_key, exc_info=True)

        try:
            return await self._execute(window, state, record, now, context)
        finally:
            if lock_acquired:
                try:
                    async with get_session(self.engine) as session:
                        await Repository(session).release_lock(lock_key, holder)
                except SQLAlchemyError:
                    logger.warning("transition_lock_release_failed key=%s", lock_key, exc_info=True)

    async def _execute(
        self,
        window: PhaseWindow,
        state: SeasonState,
        record: TransitionRecord,
        now: datetime,
        context: dict[str, Any],
    ) -> TransitionOutcome:
        phase = window.phase.value
        logger.info(
            "transition_phase_start phase=%s from=%d to=%d transition=%s",
            phase,
            record.from_season,
            record.to_season,
            record.id,
        )
        try:
            details = await self._handlers[window.phase](state, record, now)
        except Exception as exc:  # Any handler failure marks the record failed; the next trigger retries
            error = TransitionPhaseError(phase, str(exc) or type(exc).__name__)
            logger.exception("transition_phase_failed phase=%s transition=%s", phase, record.id)
            try:
                async with get_session(self.engine) as session:
                    await Repository(session).record_phase_failure(record.id, phase, error.message)
            except SQLAlchemyError:
                logger.exception("transition_failure_not_recorded transition=%s", record.id)
            self.alerter.send_alert(
                AlertEvent(
                    type="phase_failure",
                    message=error.message,
                    phase=phase,
                    transition_id=record.id,
                    season=record.from_season,
                )
            )
            return TransitionOutcome(
                status="phase_failed",
                phase=phase,
                description=window.description,
                transition_id=record.id,
                message=error.message,
                **context,
            )

        async with get_session(self.engine) as session:
            updated = await Repository(session).record_phase_success(record.id, phase, ALL_PHASES)
        logger.info(
            "transition_phase_done phase=%s from=%d to=%d status=%s",
            phase,
            record.from_season,
            record.to_season,
            updated.status,
        )
        return TransitionOutcome(
            status="phase_completed",
            phase=phase,
            description=window.description,
            transition_id=record.id,
            details={"transitionStatus": updated.status, **details},
            **context,
        )

    # --- Phase handlers ---

    async def _prepare_next_season(
        self, state: SeasonState, record: TransitionRecord, now: datetime
    ) -> dict[str, Any]:
        upcoming = validate_season_info(state.next)
        folder_ref = await self.storage.prepare_folder(upcoming)
        async with get_session(self.engine) as session:
            repo = Repository(session)
            await repo.ensure_season(upcoming, status="preparing", folder_ref=folder_ref)
            await repo.set_season_folder(upcoming.number, folder_ref)
        return {"preparedSeason": upcoming.number, "folderRef": folder_ref}

    async def _tally_votes(
        self, state: SeasonState, record: TransitionRecord, now: datetime
    ) -> dict[str, Any]:
        cycle_id = state.current.number
        try:
            async with get_session(self.engine) as session:
                repo = Repository(session)
                repair = await LeaderboardReconciler(repo, now=lambda: now).repair(cycle_id)
                payload = snapshot_payload(repair.after)
                written = await repo.save_vote_snapshot(
                    season_number=cycle_id,
                    entries=payload,
                    total_votes=sum(e.total_votes for e in repair.after),
                    snapshot_hash=snapshot_hash(payload),
                    snapshot_time=now,
                )
        except Exception as exc:  # Tally is best-effort; the phase still advances
            logger.exception("tally_votes_failed season=%d", cycle_id)
            self.alerter.send_alert(
                AlertEvent(
                    type="tally_failure",
                    message=str(exc) or type(exc).__name__,
                    phase=TransitionPhase.TALLY_VOTES.value,
                    transition_id=record.id,
                    season=cycle_id,
                )
            )
            return {"tallyError": str(exc) or type(exc).__name__}
        return {
            "tallySeason": cycle_id,
            "rankedEntries": len(payload),
            "ranksChanged": repair.changed,
            "snapshotWritten": written,
        }

    async def _finalize_season(
        self, state: SeasonState, record: TransitionRecord, now: datetime
    ) -> dict[str, Any]:
        current = validate_season_info(state.current)
        await self.storage.finalize_folder(current.number)
        async with get_session(self.engine) as session:
            repo = Repository(session)
            await repo.ensure_season(current, status="finalizing")
            await repo.update_season_status(current.number, "completed", finalized=True)
        return {"finalizedSeason": current.number}

    async def _transition_complete(
        self, state: SeasonState, record: TransitionRecord, now: datetime
    ) -> dict[str, Any]:
        current, upcoming = state.current, state.next
        async with get_session(self.engine) as session:
            repo = Repository(session)
            await repo.ensure_season(upcoming, status="preparing")
            await repo.update_season_status(upcoming.number, "active")

        details: dict[str, Any] = {"activatedSeason": upcoming.number}
        try:
            async with get_session(self.engine) as session:
                repo = Repository(session)
                await repo.ensure_season(current, status="completed")
                await repo.update_season_status(current.number, "archived")
            details["archivedSeason"] = current.number
        except Exception as exc:  # Archiving is best-effort once the next season is active
            logger.exception("season_archive_failed season=%d", current.number)
            self.alerter.send_alert(
                AlertEvent(
                    type="archive_failure",
                    message=str(exc) or type(exc).__name__,
                    phase=TransitionPhase.TRANSITION_COMPLETE.value,
                    transition_id=record.id,
                    season=current.number,
                )
            )
            details["archiveError"] = str(exc) or type(exc).__name__

        self.resolver.invalidate()
        return details


async def tick_transition(orchestrator: TransitionOrchestrator) -> None:
    """Scheduler entry point. Errors are logged, never raised."""
    try:
        outcome = await orchestrator.run()
    except Exception:  # Last-resort handler so the scheduler keeps running
        logger.exception("transition_tick_error")
        return
    if outcome.failed:
        logger.error(
            "transition_tick_failed phase=%s message=%s", outcome.phase, outcome.message
        )
    else:
        logger.debug("transition_tick status=%s phase=%s", outcome.status, outcome.phase)
