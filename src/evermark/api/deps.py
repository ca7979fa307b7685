"""FastAPI dependency injection for sessions, services, and admin access."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from evermark.config import Settings
from evermark.core.alerts import Alerter
from evermark.core.season_clock import SeasonClock
from evermark.core.season_state import SeasonStateResolver
from evermark.core.transition import TransitionOrchestrator
from evermark.db.engine import create_session_factory
from evermark.db.repository import Repository

logger = logging.getLogger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"


async def get_engine(request: Request) -> AsyncEngine:
    """Get the database engine from app state."""
    return request.app.state.engine


async def get_session(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session."""
    factory = create_session_factory(engine)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Rollback on any error, then re-raise
            await session.rollback()
            raise


async def get_repo(session: Annotated[AsyncSession, Depends(get_session)]) -> Repository:
    """Get a repository instance bound to the current session."""
    return Repository(session)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_clock(request: Request) -> SeasonClock:
    return request.app.state.clock


def get_resolver(request: Request) -> SeasonStateResolver:
    return request.app.state.resolver


def get_orchestrator(request: Request) -> TransitionOrchestrator:
    return request.app.state.orchestrator


def get_alerter(request: Request) -> Alerter:
    return request.app.state.alerter


async def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    token: Annotated[str | None, Header(alias=ADMIN_TOKEN_HEADER)] = None,
) -> None:
    """Gate admin endpoints on the configured token.

    With no token configured (development only, enforced by Settings) the
    endpoints are open.
    """
    if not settings.admin_token:
        return
    if token is None or not secrets.compare_digest(token, settings.admin_token):
        logger.warning("admin_access_denied")
        raise HTTPException(status_code=403, detail="Admin token required")


RepoDep = Annotated[Repository, Depends(get_repo)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
ClockDep = Annotated[SeasonClock, Depends(get_clock)]
ResolverDep = Annotated[SeasonStateResolver, Depends(get_resolver)]
OrchestratorDep = Annotated[TransitionOrchestrator, Depends(get_orchestrator)]
AlerterDep = Annotated[Alerter, Depends(get_alerter)]
AdminDep = Annotated[None, Depends(require_admin)]
