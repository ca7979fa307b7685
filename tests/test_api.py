"""API tests through the ASGI app with an in-memory database."""

from datetime import UTC, datetime

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from evermark.config import Settings
from evermark.main import attach_services, create_app

SUNDAY_2305 = datetime(2024, 1, 7, 23, 5, tzinfo=UTC)
SUNDAY_2320 = datetime(2024, 1, 7, 23, 20, tzinfo=UTC)
SUNDAY_2335 = datetime(2024, 1, 7, 23, 35, tzinfo=UTC)
WEDNESDAY = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)


class _Now:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def now() -> _Now:
    return _Now(WEDNESDAY)


@pytest.fixture
def application(settings: Settings, engine: AsyncEngine, now: _Now) -> FastAPI:
    app = create_app(settings)
    attach_services(app, engine, settings, now=now)
    return app


@pytest.fixture
async def client(application: FastAPI):
    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def admin_client(tmp_path, engine: AsyncEngine, now: _Now):
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        storage_root=str(tmp_path / "storage"),
        admin_token="letmein",
        auto_transition=False,
    )
    application = create_app(settings)
    attach_services(application, engine, settings, now=now)
    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealth:
    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestSeasons:
    async def test_state(self, client: AsyncClient):
        resp = await client.get("/api/seasons/state")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["current"]["number"] == 2
        assert data["previous"]["number"] == 1
        assert data["next"]["number"] == 3
        assert data["source"] == "calculated"
        assert data["current"]["week"] == "W02"
        assert data["sync"]["database"]["in_sync"] is False
        assert data["folder"] == "season-02"

    async def test_season_by_number(self, client: AsyncClient):
        resp = await client.get("/api/seasons/5")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["number"] == 5
        assert data["status"] == "preparing"
        assert data["folder"] == "season-05"

    async def test_season_zero_rejected(self, client: AsyncClient):
        resp = await client.get("/api/seasons/0")
        assert resp.status_code == 400

    async def test_season_at_date(self, client: AsyncClient):
        resp = await client.get("/api/seasons/at", params={"date": "2024-01-20T10:00:00Z"})
        assert resp.status_code == 200
        assert resp.json()["data"]["number"] == 3

    async def test_season_at_bad_date(self, client: AsyncClient):
        resp = await client.get("/api/seasons/at", params={"date": "next tuesday"})
        assert resp.status_code == 400

    async def test_transition_status(self, client: AsyncClient, now: _Now):
        now.moment = SUNDAY_2320
        resp = await client.get("/api/seasons/transition")
        data = resp.json()["data"]
        assert data["in_transition_window"] is True
        assert data["transition_due"] is True
        assert data["should_transition"] is False
        assert data["phase"] == "tally_votes"

    async def test_transition_status_midweek(self, client: AsyncClient):
        data = (await client.get("/api/seasons/transition")).json()["data"]
        assert data["in_transition_window"] is False
        assert data["phase"] is None
        assert data["time_remaining_seconds"] > 0

    async def test_comparison_without_chain(self, client: AsyncClient):
        data = (await client.get("/api/seasons/comparison")).json()["data"]
        assert data["contract_available"] is False
        assert data["calculated_season"] == 2

    async def test_validate(self, client: AsyncClient):
        payload = {
            "number": 2,
            "year": 2024,
            "week": "W02",
            "start_timestamp": "2024-01-08T00:00:00Z",
            "end_timestamp": "2024-01-14T23:59:59.999Z",
            "status": "active",
        }
        resp = await client.post("/api/seasons/validate", json=payload)
        assert resp.status_code == 200
        assert resp.json()["valid"] is True

        payload["end_timestamp"] = payload["start_timestamp"]
        resp = await client.post("/api/seasons/validate", json=payload)
        assert resp.status_code == 400
        assert resp.json()["valid"] is False

    async def test_cache_clear_open_in_development(self, client: AsyncClient):
        resp = await client.post("/api/seasons/cache/clear")
        assert resp.status_code == 200
        assert resp.json()["data"]["cleared"] is True


class TestAdminGate:
    async def test_missing_token(self, admin_client: AsyncClient):
        resp = await admin_client.post("/api/seasons/cache/clear")
        assert resp.status_code == 403

    async def test_wrong_token(self, admin_client: AsyncClient):
        resp = await admin_client.post(
            "/api/seasons/cache/clear", headers={"X-Admin-Token": "nope"}
        )
        assert resp.status_code == 403

    async def test_right_token(self, admin_client: AsyncClient):
        resp = await admin_client.post(
            "/api/seasons/cache/clear", headers={"X-Admin-Token": "letmein"}
        )
        assert resp.status_code == 200

    async def test_public_endpoints_stay_open(self, admin_client: AsyncClient):
        resp = await admin_client.get("/api/seasons/state")
        assert resp.status_code == 200


class TestTransitions:
    async def test_tick_outside_window(self, client: AsyncClient):
        resp = await client.post("/api/transitions/tick")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["status"] == "not_in_window"
        assert body["currentSeason"] == 2

    async def test_tick_in_window_runs_phase(self, client: AsyncClient, now: _Now):
        now.moment = SUNDAY_2320
        resp = await client.post("/api/transitions/tick")
        assert resp.status_code == 200
        body = resp.json()
        assert body["phase"] == "tally_votes"
        assert body["currentSeason"] == 1
        assert body["nextSeason"] == 2
        assert body["transitionId"]

        again = (await client.post("/api/transitions/tick")).json()
        assert again["status"] == "already_completed"

        records = (await client.get("/api/transitions")).json()["data"]
        assert len(records) == 1
        assert records[0]["phases_completed"] == ["tally_votes"]
        assert records[0]["initiated_by"] == "http"

    async def test_seasons_list_after_prepare_and_finalize(self, client: AsyncClient, now: _Now):
        assert (await client.get("/api/seasons")).json()["data"] == []

        for moment in (SUNDAY_2305, SUNDAY_2335):
            now.moment = moment
            body = (await client.post("/api/transitions/tick")).json()
            assert body["status"] == "phase_completed", body

        data = (await client.get("/api/seasons")).json()["data"]
        assert [s["number"] for s in data] == [2, 1]
        assert data[0]["status"] == "preparing"
        assert data[0]["finalized_at"] is None
        assert data[0]["folder_ref"].endswith("season-02")
        assert data[1]["status"] == "completed"
        assert data[1]["finalized_at"] is not None

    async def test_tick_unexpected_error(self, client: AsyncClient, application: FastAPI):
        async def _explode(*args, **kwargs):
            raise RuntimeError("resolver exploded")

        application.state.orchestrator.run = _explode
        resp = await client.post("/api/transitions/tick")
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"] == "Transition cron failed"
        assert "resolver exploded" in body["message"]
        alerts = (await client.get("/api/transitions/alerts")).json()["data"]
        assert alerts[-1]["type"] == "critical_failure"


class TestLeaderboard:
    async def test_vote_updates_and_ranking(self, client: AsyncClient):
        for entity, votes in (("A", 100), ("B", 300), ("C", 300), ("D", 50)):
            resp = await client.post(
                "/api/leaderboard/1/votes", json={"entity_id": entity, "total_votes": votes}
            )
            assert resp.status_code == 200
            assert resp.json()["data"]["leaderboard_updated"] is True

        data = (await client.get("/api/leaderboard/1")).json()["data"]
        assert [(e["entity_id"], e["rank"]) for e in data] == [
            ("B", 1),
            ("C", 2),
            ("A", 3),
            ("D", 4),
        ]
        assert data[0]["total_votes"] == "300"

    async def test_vote_total_as_decimal_string(self, client: AsyncClient):
        big = str(10**40)
        resp = await client.post(
            "/api/leaderboard/2/votes", json={"entity_id": "whale", "total_votes": big}
        )
        assert resp.json()["data"]["rank"] == 1
        data = (await client.get("/api/leaderboard/2")).json()["data"]
        assert data[0]["total_votes"] == big

    async def test_negative_votes_rejected(self, client: AsyncClient):
        resp = await client.post(
            "/api/leaderboard/1/votes", json={"entity_id": "A", "total_votes": -1}
        )
        assert resp.status_code == 422

    async def test_final_leaderboard_after_tally(self, client: AsyncClient, now: _Now):
        for entity, votes in (("A", 100), ("B", 300)):
            await client.post(
                "/api/leaderboard/1/votes", json={"entity_id": entity, "total_votes": votes}
            )
        assert (await client.get("/api/leaderboard/1/final")).status_code == 404

        now.moment = SUNDAY_2320
        assert (await client.post("/api/transitions/tick")).json()["phase"] == "tally_votes"

        resp = await client.get("/api/leaderboard/1/final")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["season_number"] == 1
        assert data["total_entries"] == 2
        assert data["total_votes"] == "400"
        assert len(data["snapshot_hash"]) == 64
        assert data["entries"] == [
            {"rank": 1, "entity_id": "B", "total_votes": "300"},
            {"rank": 2, "entity_id": "A", "total_votes": "100"},
        ]

    async def test_repair(self, client: AsyncClient):
        await client.post("/api/leaderboard/3/votes", json={"entity_id": "A", "total_votes": 5})
        resp = await client.post("/api/leaderboard/3/repair")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total_entries"] == 1
        assert data["changed"] == 0
        assert data["rankings"][0]["total_votes"] == "5"
