"""Leaderboard models.

Vote totals, ranked rows, and repair reports.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator


class VoteTotal(BaseModel):
    """An entity's accumulated votes for one cycle. Ranks are derived, never trusted."""

    entity_id: str
    total_votes: int = Field(ge=0)

    @field_validator("total_votes", mode="before")
    @classmethod
    def _parse_decimal_text(cls, value: object) -> object:
        # Token-derived totals arrive as decimal strings; never via float.
        if isinstance(value, str):
            return int(value.strip(), 10)
        return value


class LeaderboardEntry(BaseModel):
    """A ranked leaderboard row. One per (entity_id, cycle_id)."""

    entity_id: str
    cycle_id: int
    total_votes: int = Field(ge=0)
    rank: int = Field(ge=1)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RankChange(BaseModel):
    """Before/after view of one entity during a repair."""

    entity_id: str
    total_votes: int
    previous_rank: int | None = None
    rank: int
