"""
tests/test_cache.py — ConfigCache and Settings Seeding
=======================================================
"""

from __future__ import annotations

import json
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from questledger.database.models import Setting
from questledger.database.seed import DEFAULT_SETTINGS, seed_default_settings
from questledger.engine.cache import ConfigCache


class TestSeeding:
    def test_seed_is_idempotent(self, db_engine):
        seed_default_settings(db_engine)
        with Session(db_engine) as session:
            count = session.scalar(select(func.count()).select_from(Setting))
        assert count == len(DEFAULT_SETTINGS)

    def test_seed_keeps_operator_edits(self, db_engine):
        with Session(db_engine) as session:
            session.get(Setting, "quiz.max_tokens").value_json = json.dumps(0.5)
            session.commit()

        seed_default_settings(db_engine)

        cache = ConfigCache(db_engine)
        cache.load_all()
        assert cache.get_decimal("quiz.max_tokens") == Decimal("0.5")


class TestConfigCache:
    def test_reload_picks_up_changes(self, db_engine, cache):
        assert cache.get_int("streak.xp") == 25
        with Session(db_engine) as session:
            session.get(Setting, "streak.xp").value_json = "40"
            session.commit()

        cache.reload()
        assert cache.get_int("streak.xp") == 40

    def test_missing_key_falls_back_to_default(self):
        cache = ConfigCache.from_mapping({})
        assert cache.get_decimal("challenge.max_tokens") == Decimal("0.2")
        assert cache.get_setting("no.such.key") is None
        assert cache.get_setting("no.such.key", "x") == "x"

    def test_typed_getters(self):
        cache = ConfigCache.from_mapping({
            "a": "7", "b": "bad", "c": [0.2, 0.1], "d": [1], "e": 0.1,
        })
        assert cache.get_int("a") == 7
        assert cache.get_int("b", 3) == 3
        assert cache.get_decimal("e") == Decimal("0.1")
        # Ranges are normalized to (low, high).
        assert cache.get_range("c") == (Decimal("0.1"), Decimal("0.2"))
        assert cache.get_range("d") is None
        assert cache.get_str("missing", "fallback") == "fallback"
