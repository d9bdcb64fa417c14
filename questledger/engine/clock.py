"""
questledger.engine.clock — Injectable Time Source
==================================================

Streak windows and transfer backoff both depend on time.  Everything that
reads the time or sleeps goes through a :class:`Clock` so tests can drive
it deterministically.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Protocol

__all__ = ["Clock", "SystemClock", "as_utc"]


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall-clock time and real ``asyncio.sleep``."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize *value* to an aware UTC datetime.

    Some backends (SQLite) hand back naive datetimes for ``timezone=True``
    columns; every timestamp is written in UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
