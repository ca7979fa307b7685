"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from evermark.api.leaderboard import router as leaderboard_router
from evermark.api.seasons import router as seasons_router
from evermark.api.transitions import router as transitions_router
from evermark.config import Settings
from evermark.core.alerts import Alerter
from evermark.core.chain import build_contract_source
from evermark.core.season_clock import SeasonClock
from evermark.core.season_state import AuthoritativeSeasonSource, SeasonStateResolver
from evermark.core.storage import LocalSeasonStorage
from evermark.core.transition import TransitionOrchestrator
from evermark.db.engine import create_engine, create_tables, get_session
from evermark.db.repository import Repository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def attach_services(
    app: FastAPI,
    engine: AsyncEngine,
    settings: Settings,
    now: Callable[[], datetime] = _utcnow,
    authoritative: AuthoritativeSeasonSource | None = None,
) -> None:
    """Build the season services for *engine* and hang them on ``app.state``."""

    async def database_status(season_number: int) -> str | None:
        async with get_session(engine) as session:
            return await Repository(session).get_season_status(season_number)

    clock = SeasonClock(settings.season_epoch)
    storage = LocalSeasonStorage(settings.storage_root)
    alerter = Alerter(
        webhook_url=settings.alert_webhook_url,
        timeout_seconds=settings.alert_timeout_seconds,
    )
    resolver = SeasonStateResolver(
        clock=clock,
        authoritative=authoritative or build_contract_source(settings),
        now=now,
        cache_ttl_seconds=settings.season_cache_ttl_seconds,
        lookup_timeout_seconds=settings.chain_timeout_seconds,
        auto_transition=settings.auto_transition,
        maintenance_mode=settings.maintenance_mode,
        storage=storage,
        database_status=database_status,
    )
    app.state.engine = engine
    app.state.clock = clock
    app.state.storage = storage
    app.state.alerter = alerter
    app.state.resolver = resolver
    app.state.orchestrator = TransitionOrchestrator(
        engine=engine,
        resolver=resolver,
        storage=storage,
        alerter=alerter,
        transition_lead=timedelta(seconds=settings.transition_lead_seconds),
        lock_timeout_seconds=settings.lock_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine/tables, wire services, optionally start the scheduler."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    attach_services(app, engine, settings)

    # Start APScheduler for automatic season transitions
    scheduler = None
    if settings.auto_transition and not settings.maintenance_mode:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.cron import CronTrigger

        from evermark.core.transition import tick_transition

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            tick_transition,
            trigger=CronTrigger.from_crontab(settings.transition_cron, timezone=UTC),
            kwargs={"orchestrator": app.state.orchestrator},
            id="tick_transition",
            name="Advance season transition",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        logger.info("scheduler_started cron=%s", settings.transition_cron)
    else:
        logger.info(
            "scheduler_disabled auto_transition=%s maintenance=%s",
            settings.auto_transition,
            settings.maintenance_mode,
        )
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    await app.state.alerter.drain()
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the Evermark seasons FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.evermark_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Evermark Seasons",
        version="0.1.0",
        description="Weekly season lifecycle: season oracle, transitions, and leaderboards",
        docs_url="/docs" if settings.evermark_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(seasons_router)
    app.include_router(transitions_router)
    app.include_router(leaderboard_router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "env": settings.evermark_env}

    return app


app = create_app()
