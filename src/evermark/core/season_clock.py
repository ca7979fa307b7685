"""Season clock: deterministic season arithmetic from wall-clock time.

Seasons are calendar weeks counted from a fixed epoch: Monday 00:00:00.000 UTC
through Sunday 23:59:59.999 UTC. Everything here is pure; the only state is
the configured epoch, so tests can build a clock for any origin.

Within a season the phase follows the weekly rhythm:
    idle (first hour) -> voting -> tallying (Sunday 22:00+)
    -> rewarding (Monday before 02:00 of the next season)
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import NamedTuple

from evermark.config import DEFAULT_SEASON_EPOCH
from evermark.models.season import (
    VALID_SEASON_STATUSES,
    SeasonInfo,
    SeasonPhaseName,
)

SEASON_LENGTH = timedelta(days=7)
ONE_MS = timedelta(milliseconds=1)

MONDAY = 0
SUNDAY = 6

TRANSITION_HOUR = 23
TALLYING_START_HOUR = 22
REWARDING_END_HOUR = 2

MIN_SEASON_YEAR = 2024
MAX_SEASON_YEAR = 2050

_WEEK_LABEL = re.compile(r"^W\d{2}$")


class SeasonDataError(ValueError):
    """A SeasonInfo that must not be written or trusted."""


class SeasonBoundaries(NamedTuple):
    start: datetime
    end: datetime


class IsoWeek(NamedTuple):
    year: int
    week: int

    @property
    def label(self) -> str:
        """Week in storage format, e.g. ``"W02"``."""
        return f"W{self.week:02d}"


def as_utc(moment: datetime) -> datetime:
    """Read naive datetimes as UTC; convert aware ones."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def to_monday(moment: datetime) -> datetime:
    """Move forward to Monday 00:00:00.000 UTC. A Monday only has its time cleared."""
    moment = as_utc(moment)
    days_ahead = (7 - moment.weekday()) % 7
    return (moment + timedelta(days=days_ahead)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )


def iso_week(moment: datetime) -> IsoWeek:
    """ISO-8601 week of *moment* in UTC.

    The ISO year is the year of the Thursday in the same Monday-based week,
    which is what ``isocalendar`` computes: 2024-12-30 is week 1 of 2025.
    """
    iso = as_utc(moment).isocalendar()
    return IsoWeek(iso.year, iso.week)


def is_transition_window(moment: datetime) -> bool:
    """Sunday 23:00-23:59 UTC, the only hour rollover work may run."""
    moment = as_utc(moment)
    return moment.weekday() == SUNDAY and moment.hour == TRANSITION_HOUR


class SeasonClock:
    """Season arithmetic anchored on *epoch*."""

    def __init__(self, epoch: datetime = DEFAULT_SEASON_EPOCH) -> None:
        self.epoch = as_utc(epoch)

    def season_number(self, moment: datetime) -> int:
        """1-indexed season containing *moment*; clamps to 1 before the epoch."""
        elapsed_weeks = (as_utc(moment) - self.epoch) // SEASON_LENGTH
        return max(1, elapsed_weeks + 1)

    def boundaries(self, number: int) -> SeasonBoundaries:
        raw_start = self.epoch + (number - 1) * SEASON_LENGTH
        start = to_monday(raw_start)
        end = (start + timedelta(days=6)).replace(
            hour=23, minute=59, second=59, microsecond=999_000
        )
        return SeasonBoundaries(start, end)

    def phase(self, moment: datetime) -> SeasonPhaseName:
        moment = as_utc(moment)
        start = self.boundaries(self.season_number(moment)).start
        if moment - start < timedelta(hours=1):
            return "idle"
        if moment.weekday() == SUNDAY and moment.hour >= TALLYING_START_HOUR:
            return "tallying"
        if moment.weekday() == MONDAY and moment.hour < REWARDING_END_HOUR:
            return "rewarding"
        return "voting"

    def should_transition(self, moment: datetime) -> bool:
        """True once *moment* is past the end of the season it maps to."""
        moment = as_utc(moment)
        return moment > self.boundaries(self.season_number(moment)).end

    def time_remaining(self, moment: datetime) -> timedelta:
        moment = as_utc(moment)
        end = self.boundaries(self.season_number(moment)).end
        return max(timedelta(0), end - moment)

    def next_transition_time(self, moment: datetime) -> datetime:
        """End of the current season, or *moment* itself if that end has passed."""
        moment = as_utc(moment)
        end = self.boundaries(self.season_number(moment)).end
        return moment if moment > end else end

    def season_info(self, number: int, now: datetime) -> SeasonInfo:
        """Calculated info for season *number*, with status relative to *now*."""
        now = as_utc(now)
        start, end = self.boundaries(number)
        week = iso_week(start)
        if start > now:
            status = "preparing"
        elif end > now:
            status = "active"
        else:
            status = "completed"
        return SeasonInfo(
            number=number,
            year=week.year,
            week=week.label,
            start_timestamp=start,
            end_timestamp=end,
            status=status,
        )

    def season_for(self, moment: datetime, now: datetime | None = None) -> SeasonInfo:
        return self.season_info(self.season_number(moment), now or moment)

    def current_season(self, now: datetime) -> SeasonInfo:
        """The season containing *now*, always ``active`` with its phase attached."""
        info = self.season_info(self.season_number(now), now)
        return info.model_copy(update={"status": "active", "phase": self.phase(now)})


def folder_path(info: SeasonInfo) -> str:
    """Permanent-storage folder name for a season, e.g. ``season-07``."""
    return f"season-{info.number:02d}"


def validate_season_info(info: SeasonInfo) -> SeasonInfo:
    """Reject malformed season data before it is written or trusted.

    Raises:
        SeasonDataError: On any inconsistency.
    """
    if info.number < 1:
        raise SeasonDataError(f"season number must be >= 1, got {info.number}")
    if not MIN_SEASON_YEAR <= info.year <= MAX_SEASON_YEAR:
        raise SeasonDataError(
            f"season year {info.year} outside {MIN_SEASON_YEAR}-{MAX_SEASON_YEAR}"
        )
    if not _WEEK_LABEL.match(info.week):
        raise SeasonDataError(f"week {info.week!r} is not in Wnn format")
    if as_utc(info.start_timestamp) >= as_utc(info.end_timestamp):
        raise SeasonDataError(
            f"season {info.number} starts at or after its end "
            f"({info.start_timestamp.isoformat()} >= {info.end_timestamp.isoformat()})"
        )
    if info.status not in VALID_SEASON_STATUSES:
        raise SeasonDataError(f"unknown season status {info.status!r}")
    return info
