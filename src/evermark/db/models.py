"""SQLAlchemy ORM models for the Evermark season database.

Tables: seasons, season_transitions, leaderboard, vote_snapshots,
advisory_locks. Composite keys that writers upsert on are declared as unique
constraints so ``INSERT ... ON CONFLICT`` can target them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class SeasonRow(Base):
    __tablename__ = "seasons"

    number: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    week: Mapped[str] = mapped_column(String(4), nullable=False)
    start_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # preparing, active, finalizing, completed, archived
    status: Mapped[str] = mapped_column(String(20), default="preparing")
    folder_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_seasons_status", "status"),
        Index("ix_seasons_year_week", "year", "week"),
    )


class SeasonTransitionRow(Base):
    """Audit trail and progress of one season rollover. Written only by the orchestrator."""

    __tablename__ = "season_transitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    from_season: Mapped[int] = mapped_column(Integer, nullable=False)
    to_season: Mapped[int] = mapped_column(Integer, nullable=False)
    transition_type: Mapped[str] = mapped_column(String(20), default="automatic")
    initiated_by: Mapped[str] = mapped_column(String(100), default="system")
    phases_completed: Mapped[list] = mapped_column(JSON, default=list)
    current_phase: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="in_progress")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("from_season", "to_season", name="uq_transition_pair"),
        Index("ix_season_transitions_status", "status"),
    )


class LeaderboardRow(Base):
    """One ranked entity per cycle. ``total_votes`` is decimal text since token math overflows int64."""

    __tablename__ = "leaderboard"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    cycle_id: Mapped[int] = mapped_column(Integer, nullable=False)
    total_votes: Mapped[str] = mapped_column(Text, nullable=False, default="0")
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "cycle_id", name="uq_leaderboard_entity_cycle"),
        Index("ix_leaderboard_cycle_rank", "cycle_id", "rank"),
    )


class VoteSnapshotRow(Base):
    """Immutable end-of-season tally. Written once per season, never updated."""

    __tablename__ = "vote_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    season_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    snapshot_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    entries: Mapped[list] = mapped_column(JSON, nullable=False)
    total_entries: Mapped[int] = mapped_column(Integer, default=0)
    total_votes: Mapped[str] = mapped_column(Text, default="0")
    snapshot_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class AdvisoryLockRow(Base):
    """Best-effort lock to cut duplicate phase work. Correctness never depends on it."""

    __tablename__ = "advisory_locks"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[float] = mapped_column(Float, nullable=False)
