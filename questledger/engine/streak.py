"""
questledger.engine.streak — Daily Streak Eligibility
=====================================================

Pure rules for the once-per-calendar-day streak grant.  Eligibility is
derived only from the persisted ``last_granted_at`` timestamp; any
"already shown" flag a client keeps is a UI hint, never an input here.

Rules:
  * A grant is eligible when *now* falls on a later calendar day than the
    last grant, in the user's reference timezone.
  * The streak continues (+1) when the previous grant is at most
    ``grace`` old (48 h by default); otherwise it restarts at 1.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from questledger.engine.clock import as_utc

__all__ = [
    "DEFAULT_GRACE",
    "Eligible",
    "NotYetEligible",
    "StreakDecision",
    "evaluate_streak",
    "local_day",
    "next_streak_length",
    "resolve_timezone",
]

DEFAULT_GRACE = timedelta(hours=48)


@dataclass(frozen=True, slots=True)
class Eligible:
    new_streak_length: int
    local_date: date


@dataclass(frozen=True, slots=True)
class NotYetEligible:
    next_eligible_at: datetime
    current_streak_length: int


StreakDecision = Eligible | NotYetEligible


def local_day(moment: datetime, tz: ZoneInfo) -> date:
    """Calendar date of *moment* in *tz*."""
    return as_utc(moment).astimezone(tz).date()


def resolve_timezone(tz_name: str | None, default: ZoneInfo) -> ZoneInfo:
    """The user's stored zone, or *default* when unset or unknown."""
    if not tz_name:
        return default
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return default


def _start_of_next_day(moment: datetime, tz: ZoneInfo) -> datetime:
    next_day = local_day(moment, tz) + timedelta(days=1)
    return datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz).astimezone(UTC)


def evaluate_streak(
    last_granted_at: datetime | None,
    current_length: int,
    now: datetime,
    tz: ZoneInfo,
    grace: timedelta = DEFAULT_GRACE,
) -> StreakDecision:
    """Decide whether a streak grant is due at *now*.

    Returns :class:`Eligible` with the streak length the grant would set,
    or :class:`NotYetEligible` with the UTC instant the next grant opens.
    """
    now = as_utc(now)
    if last_granted_at is None:
        return Eligible(new_streak_length=1, local_date=local_day(now, tz))

    last = as_utc(last_granted_at)
    if local_day(now, tz) <= local_day(last, tz):
        return NotYetEligible(
            next_eligible_at=_start_of_next_day(last, tz),
            current_streak_length=current_length,
        )

    return Eligible(
        new_streak_length=next_streak_length(last, current_length, now, grace),
        local_date=local_day(now, tz),
    )


def next_streak_length(
    last_granted_at: datetime | None,
    current_length: int,
    granted_at: datetime,
    grace: timedelta = DEFAULT_GRACE,
) -> int:
    """Streak length after a grant at *granted_at*: +1 within grace, else 1."""
    if last_granted_at is None:
        return 1
    if as_utc(granted_at) - as_utc(last_granted_at) <= grace:
        return max(current_length, 0) + 1
    return 1
