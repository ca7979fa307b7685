"""Tests for leaderboard ranking and reconciliation."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncEngine

from evermark.core.leaderboard import (
    LeaderboardReconciler,
    merge_vote_total,
    parse_votes,
    rank_entries,
    snapshot_hash,
    snapshot_payload,
)
from evermark.db.engine import get_session
from evermark.db.repository import Repository
from evermark.models.leaderboard import LeaderboardEntry, VoteTotal

STAMP = datetime(2024, 1, 7, 23, 20, tzinfo=UTC)
CYCLE = 1


def _totals(*pairs: tuple[str, int]) -> list[VoteTotal]:
    return [VoteTotal(entity_id=e, total_votes=v) for e, v in pairs]


def _ranking(entries: list[LeaderboardEntry]) -> list[tuple[str, int, int]]:
    return [(e.entity_id, e.rank, e.total_votes) for e in entries]


@pytest.fixture
async def repo(engine: AsyncEngine) -> Repository:
    async with get_session(engine) as session:
        yield Repository(session)


@pytest.fixture
def reconciler(repo: Repository) -> LeaderboardReconciler:
    return LeaderboardReconciler(repo, now=lambda: STAMP)


class TestRankEntries:
    def test_ties_broken_by_entity_id(self):
        ranked = rank_entries(_totals(("A", 100), ("B", 300), ("C", 300), ("D", 50)), CYCLE)
        assert [(e.entity_id, e.rank) for e in ranked] == [
            ("B", 1),
            ("C", 2),
            ("A", 3),
            ("D", 4),
        ]

    def test_input_order_irrelevant(self):
        pairs = [("A", 100), ("B", 300), ("C", 300), ("D", 50)]
        forward = rank_entries(_totals(*pairs), CYCLE, STAMP)
        backward = rank_entries(_totals(*reversed(pairs)), CYCLE, STAMP)
        assert forward == backward

    def test_ranks_contiguous_and_monotonic(self):
        ranked = rank_entries(_totals(*[(f"e{i:03d}", (i * 37) % 11) for i in range(40)]), CYCLE)
        assert [e.rank for e in ranked] == list(range(1, 41))
        for higher, lower in zip(ranked, ranked[1:], strict=False):
            assert higher.total_votes >= lower.total_votes

    def test_empty(self):
        assert rank_entries([], CYCLE) == []

    def test_duplicate_entity_rejected(self):
        with pytest.raises(ValueError, match="duplicate"):
            rank_entries(_totals(("A", 1), ("A", 2)), CYCLE)

    def test_large_totals_exact(self):
        big = 10**30
        ranked = rank_entries(_totals(("A", big), ("B", big + 1)), CYCLE)
        assert [e.entity_id for e in ranked] == ["B", "A"]
        assert ranked[0].total_votes == big + 1


class TestVoteParsing:
    def test_decimal_string(self):
        assert parse_votes("42") == 42
        assert parse_votes(" 7 ") == 7
        assert parse_votes("1000000000000000000000000") == 10**24

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            parse_votes(-1)
        with pytest.raises(ValueError):
            parse_votes("-5")

    def test_non_decimal_rejected(self):
        with pytest.raises(ValueError):
            parse_votes("0x10")
        with pytest.raises(ValueError):
            parse_votes(1.5)  # type: ignore[arg-type]

    def test_model_parses_strings(self):
        assert VoteTotal(entity_id="A", total_votes="123").total_votes == 123

    def test_model_rejects_negative(self):
        with pytest.raises(ValidationError):
            VoteTotal(entity_id="A", total_votes=-3)


class TestMerge:
    def test_updates_existing(self):
        ranked = rank_entries(_totals(("A", 1), ("B", 2)), CYCLE)
        merged = merge_vote_total(ranked, "A", 10)
        assert {t.entity_id: t.total_votes for t in merged} == {"A": 10, "B": 2}

    def test_appends_new(self):
        ranked = rank_entries(_totals(("A", 1)), CYCLE)
        merged = merge_vote_total(ranked, "Z", 3)
        assert [t.entity_id for t in merged] == ["A", "Z"]


class TestSnapshotHash:
    def test_stable(self):
        ranked = rank_entries(_totals(("A", 5), ("B", 9)), CYCLE, STAMP)
        assert snapshot_hash(snapshot_payload(ranked)) == snapshot_hash(snapshot_payload(ranked))
        assert len(snapshot_hash(snapshot_payload(ranked))) == 64

    def test_changes_with_votes(self):
        one = snapshot_payload(rank_entries(_totals(("A", 5)), CYCLE, STAMP))
        two = snapshot_payload(rank_entries(_totals(("A", 6)), CYCLE, STAMP))
        assert snapshot_hash(one) != snapshot_hash(two)

    def test_totals_are_strings(self):
        payload = snapshot_payload(rank_entries(_totals(("A", 10**30)), CYCLE, STAMP))
        assert payload == [{"rank": 1, "entity_id": "A", "total_votes": str(10**30)}]


class TestReconciler:
    async def test_reconcile_persists_ranking(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(CYCLE, _totals(("A", 100), ("B", 300), ("C", 300), ("D", 50)))
        stored = await reconciler.current(CYCLE)
        assert [(e.entity_id, e.rank) for e in stored] == [("B", 1), ("C", 2), ("A", 3), ("D", 4)]

    async def test_reconcile_twice_identical(self, reconciler: LeaderboardReconciler):
        totals = _totals(("A", 100), ("B", 300), ("C", 300), ("D", 50))
        first = await reconciler.reconcile(CYCLE, totals)
        second = await reconciler.reconcile(CYCLE, totals)
        assert _ranking(first) == _ranking(second)
        stored = await reconciler.current(CYCLE)
        assert len(stored) == 4
        assert _ranking(stored) == _ranking(first)

    async def test_reconcile_replace_prunes(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(CYCLE, _totals(("A", 1), ("B", 2), ("C", 3)))
        await reconciler.reconcile(CYCLE, _totals(("A", 1), ("C", 3)), replace=True)
        stored = await reconciler.current(CYCLE)
        assert [e.entity_id for e in stored] == ["C", "A"]

    async def test_reconcile_without_replace_keeps_others(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(CYCLE, _totals(("A", 1), ("B", 2)))
        await reconciler.reconcile(CYCLE, _totals(("A", 5)))
        stored = await reconciler.current(CYCLE)
        assert {e.entity_id for e in stored} == {"A", "B"}

    async def test_cycles_are_independent(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(1, _totals(("A", 1)))
        await reconciler.reconcile(2, _totals(("A", 9), ("B", 3)))
        assert len(await reconciler.current(1)) == 1
        assert len(await reconciler.current(2)) == 2

    async def test_apply_vote_update_reranks(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(CYCLE, _totals(("A", 100), ("B", 300), ("C", 300), ("D", 50)))
        ranked = await reconciler.apply_vote_update(CYCLE, "C", 400)
        assert [(e.entity_id, e.rank) for e in ranked] == [("C", 1), ("B", 2), ("A", 3), ("D", 4)]
        stored = await reconciler.current(CYCLE)
        assert _ranking(stored) == _ranking(ranked)

    async def test_apply_vote_update_new_entity(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(CYCLE, _totals(("A", 100), ("D", 50)))
        ranked = await reconciler.apply_vote_update(CYCLE, "E", "75")
        assert [(e.entity_id, e.rank) for e in ranked] == [("A", 1), ("E", 2), ("D", 3)]

    async def test_apply_vote_update_rejects_negative(self, reconciler: LeaderboardReconciler):
        with pytest.raises(ValueError):
            await reconciler.apply_vote_update(CYCLE, "A", -5)
        assert await reconciler.current(CYCLE) == []

    async def test_big_totals_round_trip(self, reconciler: LeaderboardReconciler):
        big = 2**200
        await reconciler.apply_vote_update(CYCLE, "whale", big)
        stored = await reconciler.current(CYCLE)
        assert stored[0].total_votes == big

    async def test_repair_fixes_drift(self, repo: Repository, reconciler: LeaderboardReconciler):
        drifted = [
            LeaderboardEntry(entity_id="A", cycle_id=CYCLE, total_votes=100, rank=1),
            LeaderboardEntry(entity_id="B", cycle_id=CYCLE, total_votes=300, rank=2),
            LeaderboardEntry(entity_id="C", cycle_id=CYCLE, total_votes=300, rank=3),
            LeaderboardEntry(entity_id="D", cycle_id=CYCLE, total_votes=50, rank=4),
        ]
        await repo.upsert_leaderboard(drifted)

        result = await reconciler.repair(CYCLE)

        assert [(e.entity_id, e.rank) for e in result.after] == [
            ("B", 1),
            ("C", 2),
            ("A", 3),
            ("D", 4),
        ]
        assert result.changed == 3
        previous = {c.entity_id: c.previous_rank for c in result.before}
        assert previous == {"A": 1, "B": 2, "C": 3, "D": 4}
        stored = await reconciler.current(CYCLE)
        assert _ranking(stored) == _ranking(result.after)

    async def test_repair_is_idempotent(self, reconciler: LeaderboardReconciler):
        await reconciler.reconcile(CYCLE, _totals(("A", 3), ("B", 1)))
        result = await reconciler.repair(CYCLE)
        assert result.changed == 0

    async def test_repair_empty_cycle(self, reconciler: LeaderboardReconciler):
        result = await reconciler.repair(99)
        assert result.after == []
        assert result.changed == 0
