"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. Every write the orchestrator or the
leaderboard can repeat is a native ``INSERT ... ON CONFLICT`` upsert, never
select-then-insert, so duplicate triggers cannot create duplicate rows.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from evermark.db.models import (
    AdvisoryLockRow,
    LeaderboardRow,
    SeasonRow,
    SeasonTransitionRow,
    VoteSnapshotRow,
)
from evermark.models.leaderboard import LeaderboardEntry
from evermark.models.season import SeasonInfo
from evermark.models.transition import TransitionRecord


def _record(row: SeasonTransitionRow) -> TransitionRecord:
    return TransitionRecord(
        id=row.id,
        from_season=row.from_season,
        to_season=row.to_season,
        phases_completed=list(row.phases_completed or []),
        current_phase=row.current_phase,
        status=row.status,
        error_message=row.error_message,
        transition_type=row.transition_type,
        initiated_by=row.initiated_by,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _entry(row: LeaderboardRow) -> LeaderboardEntry:
    return LeaderboardEntry(
        entity_id=row.entity_id,
        cycle_id=row.cycle_id,
        total_votes=int(row.total_votes),
        rank=row.rank,
        updated_at=row.updated_at,
    )


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Seasons ---

    async def ensure_season(
        self,
        info: SeasonInfo,
        status: str = "preparing",
        folder_ref: str | None = None,
    ) -> SeasonRow:
        """Insert the season row if absent. An existing row is left untouched."""
        stmt = (
            sqlite_insert(SeasonRow)
            .values(
                number=info.number,
                year=info.year,
                week=info.week,
                start_timestamp=info.start_timestamp,
                end_timestamp=info.end_timestamp,
                status=status,
                folder_ref=folder_ref,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["number"])
        )
        await self.session.execute(stmt)
        row = await self.get_season(info.number)
        if row is None:
            raise ValueError(f"Season {info.number} not found after insert")
        return row

    async def get_season(self, number: int) -> SeasonRow | None:
        stmt = (
            select(SeasonRow)
            .where(SeasonRow.number == number)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_season_status(self, number: int) -> str | None:
        row = await self.get_season(number)
        return row.status if row else None

    async def update_season_status(
        self,
        number: int,
        status: str,
        finalized: bool = False,
    ) -> int:
        """Set a season's status. Returns the number of rows updated."""
        values: dict[str, object] = {"status": status}
        if finalized:
            values["finalized_at"] = datetime.now(UTC)
        stmt = update(SeasonRow).where(SeasonRow.number == number).values(**values)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def set_season_folder(self, number: int, folder_ref: str) -> None:
        stmt = (
            update(SeasonRow)
            .where(SeasonRow.number == number, SeasonRow.folder_ref.is_(None))
            .values(folder_ref=folder_ref)
        )
        await self.session.execute(stmt)

    async def get_all_seasons(self) -> list[SeasonRow]:
        """Return all seasons, most recent first."""
        stmt = select(SeasonRow).order_by(SeasonRow.number.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Season transitions ---

    async def get_or_create_transition(
        self,
        from_season: int,
        to_season: int,
        phase: str,
        transition_type: str = "automatic",
        initiated_by: str = "system",
    ) -> TransitionRecord:
        """Return the record for this season pair, creating it on first use."""
        stmt = (
            sqlite_insert(SeasonTransitionRow)
            .values(
                id=str(uuid.uuid4()),
                from_season=from_season,
                to_season=to_season,
                transition_type=transition_type,
                initiated_by=initiated_by,
                phases_completed=[],
                current_phase=phase,
                status="in_progress",
                started_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["from_season", "to_season"])
        )
        await self.session.execute(stmt)
        row = await self._transition_row_for(from_season, to_season)
        if row is None:
            raise ValueError(f"Transition {from_season}->{to_season} not found after insert")
        return _record(row)

    async def _transition_row_for(
        self, from_season: int, to_season: int
    ) -> SeasonTransitionRow | None:
        stmt = (
            select(SeasonTransitionRow)
            .where(
                SeasonTransitionRow.from_season == from_season,
                SeasonTransitionRow.to_season == to_season,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _transition_row(self, transition_id: str) -> SeasonTransitionRow:
        stmt = (
            select(SeasonTransitionRow)
            .where(SeasonTransitionRow.id == transition_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise ValueError(f"Transition {transition_id} not found")
        return row

    async def get_transition(self, transition_id: str) -> TransitionRecord | None:
        row = await self.session.get(SeasonTransitionRow, transition_id)
        return _record(row) if row else None

    async def get_transition_for(
        self, from_season: int, to_season: int
    ) -> TransitionRecord | None:
        row = await self._transition_row_for(from_season, to_season)
        return _record(row) if row else None

    async def list_transitions(self, limit: int = 20) -> list[TransitionRecord]:
        """Most recent transitions first."""
        stmt = (
            select(SeasonTransitionRow)
            .order_by(SeasonTransitionRow.started_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_record(row) for row in result.scalars().all()]

    async def record_phase_success(
        self,
        transition_id: str,
        phase: str,
        all_phases: Sequence[str],
    ) -> TransitionRecord:
        """Append *phase* to ``phases_completed`` (once) and advance the status.

        A failure recorded for a different phase stays on the record: status,
        ``error_message`` and ``current_phase`` are cleared only when the phase
        that failed succeeds, or when every phase has completed.
        """
        row = await self._transition_row(transition_id)
        completed = list(row.phases_completed or [])
        if phase not in completed:
            completed.append(phase)
        row.phases_completed = completed
        done = all(p in completed for p in all_phases)
        other_failure = row.status == "failed" and row.current_phase != f"{phase}_failed"
        if done or not other_failure:
            row.status = "completed" if done else "in_progress"
            row.current_phase = f"{phase}_completed"
            row.error_message = None
        if done:
            row.completed_at = row.completed_at or datetime.now(UTC)
        await self.session.flush()
        return _record(row)

    async def record_phase_failure(
        self, transition_id: str, phase: str, message: str
    ) -> TransitionRecord:
        row = await self._transition_row(transition_id)
        row.status = "failed"
        row.error_message = message
        row.current_phase = f"{phase}_failed"
        await self.session.flush()
        return _record(row)

    # --- Leaderboard ---

    async def get_leaderboard(self, cycle_id: int) -> list[LeaderboardEntry]:
        """All entries for a cycle, ordered by stored rank."""
        stmt = (
            select(LeaderboardRow)
            .where(LeaderboardRow.cycle_id == cycle_id)
            .order_by(LeaderboardRow.rank, LeaderboardRow.entity_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return [_entry(row) for row in result.scalars().all()]

    async def upsert_leaderboard(self, entries: Sequence[LeaderboardEntry]) -> int:
        """Batch upsert keyed by (entity_id, cycle_id). Returns the number of rows written."""
        if not entries:
            return 0
        stmt = sqlite_insert(LeaderboardRow).values(
            [
                {
                    "id": str(uuid.uuid4()),
                    "entity_id": e.entity_id,
                    "cycle_id": e.cycle_id,
                    "total_votes": str(e.total_votes),
                    "rank": e.rank,
                    "updated_at": e.updated_at,
                }
                for e in entries
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["entity_id", "cycle_id"],
            set_={
                "total_votes": stmt.excluded.total_votes,
                "rank": stmt.excluded.rank,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        return len(entries)

    async def delete_leaderboard_entries(
        self, cycle_id: int, keep_entity_ids: Sequence[str]
    ) -> int:
        """Remove rows for *cycle_id* whose entity is not in *keep_entity_ids*."""
        stmt = delete(LeaderboardRow).where(
            LeaderboardRow.cycle_id == cycle_id,
            LeaderboardRow.entity_id.not_in(list(keep_entity_ids)),
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    # --- Vote snapshots ---

    async def save_vote_snapshot(
        self,
        season_number: int,
        entries: list[dict],
        total_votes: int,
        snapshot_hash: str,
        snapshot_time: datetime,
    ) -> bool:
        """Write the season's snapshot once. Returns False if one already existed."""
        stmt = (
            sqlite_insert(VoteSnapshotRow)
            .values(
                id=str(uuid.uuid4()),
                season_number=season_number,
                snapshot_time=snapshot_time,
                entries=entries,
                total_entries=len(entries),
                total_votes=str(total_votes),
                snapshot_hash=snapshot_hash,
            )
            .on_conflict_do_nothing(index_elements=["season_number"])
        )
        result = await self.session.execute(stmt)
        return (result.rowcount or 0) == 1

    async def get_vote_snapshot(self, season_number: int) -> VoteSnapshotRow | None:
        stmt = select(VoteSnapshotRow).where(VoteSnapshotRow.season_number == season_number)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_vote_snapshots(self, season_number: int) -> int:
        stmt = select(VoteSnapshotRow.id).where(VoteSnapshotRow.season_number == season_number)
        result = await self.session.execute(stmt)
        return len(result.all())

    # --- Advisory locks ---

    async def try_acquire_lock(self, key: str, holder: str, timeout_seconds: float) -> bool:
        """Atomically claim *key*, taking over a lock older than *timeout_seconds*."""
        now = time.time()
        stmt = sqlite_insert(AdvisoryLockRow).values(key=key, holder=holder, acquired_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"holder": stmt.excluded.holder, "acquired_at": stmt.excluded.acquired_at},
            where=AdvisoryLockRow.acquired_at < now - timeout_seconds,
        )
        await self.session.execute(stmt)
        result = await self.session.execute(
            select(AdvisoryLockRow.holder).where(AdvisoryLockRow.key == key)
        )
        return result.scalar_one_or_none() == holder

    async def release_lock(self, key: str, holder: str) -> None:
        """Release *key* only if *holder* still owns it."""
        stmt = delete(AdvisoryLockRow).where(
            AdvisoryLockRow.key == key, AdvisoryLockRow.holder == holder
        )
        await self.session.execute(stmt)
