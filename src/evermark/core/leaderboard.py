"""Leaderboard reconciliation.

Ranks are always derived from vote totals: sort by total descending, ties by
entity id ascending, rank = 1-based position. Stored ranks are never trusted
as input, which is what lets ``repair`` fix drift and makes every write
idempotent. Totals are Python ints end to end; the database keeps them as
decimal text.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from evermark.db.repository import Repository
from evermark.models.leaderboard import LeaderboardEntry, RankChange, VoteTotal

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_votes(value: int | str) -> int:
    """Base-10 vote total. Raises ValueError for negatives, bools, and floats."""
    if isinstance(value, bool) or not isinstance(value, int | str):
        raise ValueError(f"vote total must be an int or decimal string, got {type(value).__name__}")
    votes = int(value.strip(), 10) if isinstance(value, str) else value
    if votes < 0:
        raise ValueError(f"vote total must be non-negative, got {votes}")
    return votes


def rank_entries(
    totals: Iterable[VoteTotal],
    cycle_id: int,
    updated_at: datetime | None = None,
) -> list[LeaderboardEntry]:
    """Rank *totals* for one cycle. Pure and deterministic.

    Raises:
        ValueError: If the same entity appears twice.
    """
    ordered = sorted(totals, key=lambda t: (-t.total_votes, t.entity_id))
    seen: set[str] = set()
    for total in ordered:
        if total.entity_id in seen:
            raise ValueError(f"duplicate entity {total.entity_id!r} in cycle {cycle_id}")
        seen.add(total.entity_id)
    stamp = updated_at or _utcnow()
    return [
        LeaderboardEntry(
            entity_id=t.entity_id,
            cycle_id=cycle_id,
            total_votes=t.total_votes,
            rank=index + 1,
            updated_at=stamp,
        )
        for index, t in enumerate(ordered)
    ]


def merge_vote_total(
    entries: Iterable[LeaderboardEntry], entity_id: str, total_votes: int
) -> list[VoteTotal]:
    """Replace (or append) one entity's total in a cycle's current totals."""
    merged = [VoteTotal(entity_id=e.entity_id, total_votes=e.total_votes) for e in entries]
    for index, total in enumerate(merged):
        if total.entity_id == entity_id:
            merged[index] = VoteTotal(entity_id=entity_id, total_votes=total_votes)
            return merged
    merged.append(VoteTotal(entity_id=entity_id, total_votes=total_votes))
    return merged


def snapshot_payload(entries: Iterable[LeaderboardEntry]) -> list[dict]:
    """JSON-safe ranking. Totals stay strings so large values survive JSON."""
    return [
        {"rank": e.rank, "entity_id": e.entity_id, "total_votes": str(e.total_votes)}
        for e in sorted(entries, key=lambda e: e.rank)
    ]


def snapshot_hash(payload: list[dict]) -> str:
    """SHA-256 of the canonical JSON ranking."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class RepairResult:
    cycle_id: int
    before: list[RankChange] = field(default_factory=list)
    after: list[LeaderboardEntry] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return sum(1 for c in self.before if c.previous_rank != c.rank)


class LeaderboardReconciler:
    """Keeps persisted ranks consistent with vote totals for a cycle."""

    def __init__(self, repo: Repository, now: Callable[[], datetime] = _utcnow) -> None:
        self.repo = repo
        self.now = now

    async def current(self, cycle_id: int) -> list[LeaderboardEntry]:
        return await self.repo.get_leaderboard(cycle_id)

    async def reconcile(
        self,
        cycle_id: int,
        totals: Iterable[VoteTotal],
        replace: bool = False,
    ) -> list[LeaderboardEntry]:
        """Write the full ranking for *totals*.

        With ``replace`` the cycle's rows for entities absent from *totals* are
        removed; otherwise they are left as they are.
        """
        ranked = rank_entries(totals, cycle_id, self.now())
        await self.repo.upsert_leaderboard(ranked)
        if replace:
            removed = await self.repo.delete_leaderboard_entries(
                cycle_id, [e.entity_id for e in ranked]
            )
            if removed:
                logger.info("leaderboard_pruned cycle=%d removed=%d", cycle_id, removed)
        logger.info("leaderboard_reconciled cycle=%d entries=%d", cycle_id, len(ranked))
        return ranked

    async def apply_vote_update(
        self, cycle_id: int, entity_id: str, total_votes: int | str
    ) -> list[LeaderboardEntry]:
        """Set one entity's total and re-rank the whole cycle."""
        votes = parse_votes(total_votes)
        existing = await self.repo.get_leaderboard(cycle_id)
        ranked = rank_entries(merge_vote_total(existing, entity_id, votes), cycle_id, self.now())
        await self.repo.upsert_leaderboard(ranked)
        logger.info(
            "leaderboard_vote_applied cycle=%d entity=%s votes=%d entries=%d",
            cycle_id,
            entity_id,
            votes,
            len(ranked),
        )
        return ranked

    async def repair(self, cycle_id: int) -> RepairResult:
        """Recompute every rank in the cycle from stored totals alone."""
        existing = await self.repo.get_leaderboard(cycle_id)
        previous = {e.entity_id: e.rank for e in existing}
        ranked = rank_entries(
            [VoteTotal(entity_id=e.entity_id, total_votes=e.total_votes) for e in existing],
            cycle_id,
            self.now(),
        )
        await self.repo.upsert_leaderboard(ranked)
        result = RepairResult(
            cycle_id=cycle_id,
            before=[
                RankChange(
                    entity_id=e.entity_id,
                    total_votes=e.total_votes,
                    previous_rank=previous.get(e.entity_id),
                    rank=e.rank,
                )
                for e in ranked
            ],
            after=ranked,
        )
        logger.info(
            "leaderboard_repaired cycle=%d entries=%d changed=%d",
            cycle_id,
            len(ranked),
            result.changed,
        )
        return result
