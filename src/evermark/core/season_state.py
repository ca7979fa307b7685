"""Season state resolution: authoritative chain record with calculated fallback.

Resolution order:
1. If the voting contract answers with a consistent season (start < end),
   that season is *current*. Previous/next are calculated boundaries offset
   by one from the contract's number, not from the clock.
2. Otherwise the fully calculated state is used. A failing chain is a
   degraded mode, never an error for the caller.

The decision itself lives in ``choose_current_season`` so the priority order
can be tested without any I/O. ``SeasonStateResolver`` adds the I/O, a short
TTL cache, and the diagnostic comparison.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from evermark.core.season_clock import SeasonClock, as_utc, folder_path, iso_week
from evermark.models.season import (
    AuthoritativeSeason,
    ContractSync,
    DatabaseSync,
    SeasonComparison,
    SeasonInfo,
    SeasonSource,
    SeasonState,
    StorageSync,
    SyncStatus,
    SystemStatus,
)

if TYPE_CHECKING:
    from evermark.core.storage import SeasonStorage

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30.0
DEFAULT_LOOKUP_TIMEOUT_SECONDS = 15.0


class AuthoritativeSeasonSource(Protocol):
    """An external ledger that knows the real current season."""

    async def current_season_number(self) -> int | None: ...

    async def current_season(self) -> AuthoritativeSeason | None: ...


class CalculatedSeasonSource(Protocol):
    """Clock-derived seasons. ``SeasonClock`` is the implementation."""

    def season_number(self, moment: datetime) -> int: ...

    def season_info(self, number: int, now: datetime) -> SeasonInfo: ...

    def current_season(self, now: datetime) -> SeasonInfo: ...

    def phase(self, moment: datetime) -> str: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


def authoritative_status(season: AuthoritativeSeason, now: datetime) -> str:
    """preparing before start, completed after end, active in between."""
    now = as_utc(now)
    if now < as_utc(season.start_time):
        return "preparing"
    if now > as_utc(season.end_time):
        return "completed"
    return "active"


def is_consistent(season: AuthoritativeSeason | None) -> bool:
    """A usable authoritative season has a positive number and start < end."""
    return (
        season is not None
        and season.number > 0
        and as_utc(season.start_time) < as_utc(season.end_time)
    )


def authoritative_to_info(
    season: AuthoritativeSeason, now: datetime, phase: str | None = None
) -> SeasonInfo:
    week = iso_week(season.start_time)
    return SeasonInfo(
        number=season.number,
        year=week.year,
        week=week.label,
        start_timestamp=as_utc(season.start_time),
        end_timestamp=as_utc(season.end_time),
        status=authoritative_status(season, now),
        phase=phase,
    )


def choose_current_season(
    calculated: SeasonInfo,
    authoritative: AuthoritativeSeason | None,
    now: datetime,
) -> tuple[SeasonInfo, SeasonSource]:
    """Pick the current season: a consistent authoritative record wins."""
    if authoritative is not None and is_consistent(authoritative):
        return authoritative_to_info(authoritative, now, calculated.phase), "contract"
    return calculated, "calculated"


def _storage_check(check: Callable[[int], bool], number: int) -> bool:
    """Run one storage check. An unreadable folder or manifest counts as False."""
    try:
        return check(number)
    except (OSError, ValueError):
        logger.warning("storage_sync_check_failed season=%d", number, exc_info=True)
        return False


class StateCache:
    """Single-slot cache keyed by wall-clock time."""

    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._state: SeasonState | None = None
        self._stored_at: datetime | None = None

    def get(self, now: datetime) -> SeasonState | None:
        if self._state is None or self._stored_at is None:
            return None
        if now - self._stored_at >= self.ttl:
            return None
        return self._state

    def put(self, state: SeasonState, now: datetime) -> None:
        self._state = state
        self._stored_at = now

    def invalidate(self) -> None:
        self._state = None
        self._stored_at = None


class SeasonStateResolver:
    """Produces the canonical ``SeasonState``.

    Args:
        clock: Calculated season source.
        authoritative: Optional chain source; None runs on the clock alone.
        now: Injected wall clock, so tests can pin time.
        storage: Optional storage collaborator, used only to fill the sync block.
        database_status: Optional ``async (season_number) -> status`` check for
            the sync block.
    """

    def __init__(
        self,
        clock: CalculatedSeasonSource | None = None,
        authoritative: AuthoritativeSeasonSource | None = None,
        now: Callable[[], datetime] = _utcnow,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        lookup_timeout_seconds: float = DEFAULT_LOOKUP_TIMEOUT_SECONDS,
        auto_transition: bool = True,
        maintenance_mode: bool = False,
        storage: SeasonStorage | None = None,
        database_status: Callable[[int], Awaitable[str | None]] | None = None,
    ) -> None:
        self.clock = clock or SeasonClock()
        self.authoritative = authoritative
        self.now = now
        self.cache = StateCache(cache_ttl_seconds)
        self.lookup_timeout_seconds = lookup_timeout_seconds
        self.auto_transition = auto_transition
        self.maintenance_mode = maintenance_mode
        self.storage = storage
        self.database_status = database_status

    async def _lookup_authoritative(self) -> AuthoritativeSeason | None:
        if self.authoritative is None:
            return None
        try:
            season = await asyncio.wait_for(
                self.authoritative.current_season(),
                timeout=self.lookup_timeout_seconds,
            )
        except Exception:  # Any chain failure degrades to the clock
            logger.warning("authoritative_lookup_failed falling_back=calculated", exc_info=True)
            return None
        if season is not None and not is_consistent(season):
            logger.warning(
                "authoritative_season_inconsistent number=%d start=%s end=%s",
                season.number,
                season.start_time.isoformat(),
                season.end_time.isoformat(),
            )
            return None
        return season

    def _storage_sync(self, storage: SeasonStorage, number: int) -> StorageSync:
        """Called in a worker thread; each check degrades to False on its own."""
        return StorageSync(
            current_folder_ready=_storage_check(storage.is_prepared, number),
            previous_folder_finalized=(
                number <= 1 or _storage_check(storage.is_finalized, number - 1)
            ),
        )

    async def _sync_status(
        self, current: SeasonInfo, contract_number: int, now: datetime
    ) -> SyncStatus:
        calculated_number = self.clock.season_number(now)
        sync = SyncStatus(
            smart_contracts=ContractSync(
                available=contract_number > 0,
                season_number=contract_number,
                aligned=contract_number == calculated_number,
            )
        )
        if self.storage is not None:
            sync.storage = await asyncio.to_thread(
                self._storage_sync, self.storage, current.number
            )
        if self.database_status is not None:
            try:
                status = await self.database_status(current.number)
            except Exception:  # A failed check reports out-of-sync
                logger.warning("database_sync_check_failed season=%d", current.number, exc_info=True)
                status = None
            sync.database = DatabaseSync(in_sync=status == "active", current_status=status)
        return sync

    def _build_state(
        self,
        current: SeasonInfo,
        source: SeasonSource,
        now: datetime,
        sync: SyncStatus,
    ) -> SeasonState:
        previous = self.clock.season_info(max(1, current.number - 1), now)
        upcoming = self.clock.season_info(current.number + 1, now)
        return SeasonState(
            current=current,
            previous=previous,
            next=upcoming,
            source=source,
            system=SystemStatus(
                last_checked=now,
                last_transition=current.start_timestamp,
                auto_transition=self.auto_transition,
                maintenance_mode=self.maintenance_mode,
            ),
            sync=sync,
        )

    async def calculated_state(self) -> SeasonState:
        """The state the clock alone would produce. Never touches the chain."""
        now = as_utc(self.now())
        current = self.clock.current_season(now)
        return self._build_state(current, "calculated", now, await self._sync_status(current, 0, now))

    async def resolve(self, now: datetime | None = None) -> SeasonState:
        """Resolve the state at *now*, or at the injected clock's time.

        An explicit *now* bypasses the cache and is not stored in it.
        """
        if now is not None:
            return await self._resolve_at(as_utc(now))
        moment = as_utc(self.now())
        cached = self.cache.get(moment)
        if cached is not None:
            return cached
        state = await self._resolve_at(moment)
        self.cache.put(state, moment)
        return state

    async def _resolve_at(self, now: datetime) -> SeasonState:
        calculated = self.clock.current_season(now)
        authoritative = await self._lookup_authoritative()
        current, source = choose_current_season(calculated, authoritative, now)
        contract_number = authoritative.number if authoritative is not None else 0
        if source == "contract":
            logger.debug("season_resolved source=contract number=%d", current.number)
        return self._build_state(
            current, source, now, await self._sync_status(current, contract_number, now)
        )

    def invalidate(self) -> None:
        """Drop the cached state. Called synchronously on transition completion."""
        self.cache.invalidate()
        logger.info("season_state_cache_invalidated")

    async def compare(self) -> SeasonComparison:
        """Authoritative vs calculated season numbers, for alerting dashboards."""
        calculated = self.clock.season_number(self.now())
        contract_number = 0
        if self.authoritative is not None:
            try:
                contract_number = (
                    await asyncio.wait_for(
                        self.authoritative.current_season_number(),
                        timeout=self.lookup_timeout_seconds,
                    )
                    or 0
                )
            except Exception:  # Unavailable chain reads as season 0
                logger.warning("authoritative_compare_failed", exc_info=True)
        available = contract_number > 0
        return SeasonComparison(
            contract_season=contract_number,
            contract_available=available,
            calculated_season=calculated,
            aligned=available and contract_number == calculated,
        )

    async def season_info(self, number: int) -> SeasonInfo:
        """Info for season *number*; contract data when it is the contract's current season."""
        now = as_utc(self.now())
        authoritative = await self._lookup_authoritative()
        if authoritative is not None and authoritative.number == number:
            return authoritative_to_info(authoritative, now)
        return self.clock.season_info(number, now)

    async def current_folder(self) -> str:
        """Storage folder name of the resolved current season."""
        state = await self.resolve()
        return folder_path(state.current)
