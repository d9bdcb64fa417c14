"""
questledger.engine.cache — In-Memory Settings Cache
====================================================

Reward tuning (``settings`` table) is read on every calculation, so it is
cached in memory and refreshed on demand with :meth:`ConfigCache.reload`.
Missing keys fall back to the seeded defaults in
:data:`questledger.database.seed.DEFAULT_SETTINGS`, so a fresh database and
an empty cache still produce the published payouts.
"""

from __future__ import annotations

import json
import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from questledger.database.models import Setting
from questledger.database.seed import DEFAULT_SETTINGS

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_MISSING = object()


class ConfigCache:
    """Thread-safe in-memory cache for reward settings.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()

        base = cache.get_decimal("quiz.base_tokens")
        xp = cache.get_int("quiz.base_xp")
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        # key → parsed JSON value
        self._settings: dict[str, Any] = {}

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> ConfigCache:
        """Build a detached cache from a plain mapping (no database)."""
        cache = cls()
        cache._settings = dict(values)
        return cache

    # -------------------------------------------------------------------
    # Cache loading (synchronous; call via run_db or directly)
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load all settings from the DB. Call on startup."""
        if self._engine is None:
            return
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        with self._lock:
            self._settings = parsed
        logger.info("ConfigCache loaded: %d settings", len(parsed))

    reload = load_all

    # -------------------------------------------------------------------
    # Typed setting accessors (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = _MISSING) -> Any:
        """Return the parsed JSON value for *key*.

        Falls back to *default*, then to the seeded default, then ``None``.
        """
        with self._lock:
            if key in self._settings:
                return self._settings[key]
        if default is not _MISSING:
            return default
        seeded = DEFAULT_SETTINGS.get(key)
        return seeded[0] if seeded is not None else None

    def get_int(self, key: str, default: int | None = None) -> int:
        val = self.get_setting(key)
        try:
            return int(val)
        except (TypeError, ValueError):
            return default if default is not None else 0

    def get_decimal(self, key: str, default: Decimal | None = None) -> Decimal:
        """Return *key* as a :class:`Decimal` (via ``str`` to avoid float noise)."""
        val = self.get_setting(key)
        try:
            return Decimal(str(val))
        except (InvalidOperation, TypeError, ValueError):
            return default if default is not None else Decimal("0")

    def get_str(self, key: str, default: str = "") -> str:
        val = self.get_setting(key)
        if val is None:
            return default
        return str(val)

    def get_range(self, key: str) -> tuple[Decimal, Decimal] | None:
        """Return a ``[min, max]`` setting as a Decimal pair, or None."""
        val = self.get_setting(key)
        if not isinstance(val, (list, tuple)) or len(val) != 2:
            return None
        try:
            lo, hi = Decimal(str(val[0])), Decimal(str(val[1]))
        except (InvalidOperation, TypeError, ValueError):
            return None
        return (lo, hi) if lo <= hi else (hi, lo)
