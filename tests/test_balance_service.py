"""
tests/test_balance_service.py — Exactly-Once Balance Application
=================================================================
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import ALICE, T0
from sqlalchemy import event
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from questledger.constants import level_for_xp
from questledger.database.models import BalanceComponent, LedgerStatus
from questledger.engine.activity import ActivityResult, ActivityType
from questledger.engine.reward import RewardBundle
from questledger.services import balance_service, ledger_service


def _reserve(engine, activity_type=ActivityType.QUIZ, activity_id="a-1", bundle=None,
             metrics=None, occurred_at=T0):
    result = ActivityResult(
        user_id=ALICE,
        activity_type=activity_type,
        activity_id=activity_id,
        performance_metrics=metrics or {},
        occurred_at=occurred_at,
    )
    bundle = bundle or RewardBundle(xp=185, token_amount=Decimal("0.05"))
    return ledger_service.reserve_entry(engine, ledger_service.new_entry(result, bundle, T0)).entry


class TestApplyComponent:
    def test_each_component_applies_once(self, db_engine):
        entry = _reserve(db_engine)
        with Session(db_engine) as session:
            entry = ledger_service.get_entry(session, entry.id)
            assert balance_service.apply_component(session, entry, BalanceComponent.XP, T0)
            assert not balance_service.apply_component(session, entry, BalanceComponent.XP, T0)
            assert balance_service.apply_component(session, entry, BalanceComponent.TOKENS, T0)
            assert not balance_service.apply_component(session, entry, BalanceComponent.TOKENS, T0)
            session.commit()

        view = balance_service.query_balance(db_engine, ALICE)
        assert view.xp_total == 185
        assert view.token_total == Decimal("0.05")

    def test_level_follows_xp(self, db_engine):
        entry = _reserve(db_engine, bundle=RewardBundle(xp=3200))
        with Session(db_engine) as session:
            balance_service.apply_component(
                session, ledger_service.get_entry(session, entry.id), BalanceComponent.XP, T0
            )
            session.commit()

        assert balance_service.query_balance(db_engine, ALICE).level == level_for_xp(3200) == 3

    def test_item_granted_with_xp_component(self, db_engine):
        entry = _reserve(
            db_engine, ActivityType.MYSTERY_BOX, "box-1",
            bundle=RewardBundle(xp=400, token_amount=Decimal("0.06"), item_grant="badge:legendary"),
        )
        with Session(db_engine) as session:
            balance_service.apply_component(
                session, ledger_service.get_entry(session, entry.id), BalanceComponent.XP, T0
            )
            session.commit()

        assert balance_service.list_items(db_engine, ALICE) == ["badge:legendary"]

    def _apply_xp(self, engine, *entries):
        with Session(engine) as session:
            applied = [
                balance_service.apply_component(
                    session, ledger_service.get_entry(session, e.id), BalanceComponent.XP, T0
                )
                for e in entries
            ]
            session.commit()
        return applied

    def test_streak_length_comes_from_stored_state(self, db_engine):
        first = _reserve(
            db_engine, ActivityType.STREAK, "2026-03-02",
            bundle=RewardBundle(xp=25), metrics={"streakLength": 70},
        )
        self._apply_xp(db_engine, first)
        assert balance_service.query_balance(db_engine, ALICE).streak_count == 1

        second = _reserve(
            db_engine, ActivityType.STREAK, "2026-03-03",
            bundle=RewardBundle(xp=25), metrics={"streakLength": 1},
            occurred_at=T0 + timedelta(days=1),
        )
        self._apply_xp(db_engine, second)
        assert balance_service.query_balance(db_engine, ALICE).streak_count == 2

    def test_gap_past_grace_restarts_streak(self, db_engine):
        first = _reserve(db_engine, ActivityType.STREAK, "2026-03-02", bundle=RewardBundle(xp=25))
        later = _reserve(
            db_engine, ActivityType.STREAK, "2026-03-05",
            bundle=RewardBundle(xp=25), occurred_at=T0 + timedelta(days=3),
        )
        self._apply_xp(db_engine, first, later)
        assert balance_service.query_balance(db_engine, ALICE).streak_count == 1

    def test_older_streak_entry_does_not_rewind_state(self, db_engine):
        day1 = _reserve(db_engine, ActivityType.STREAK, "2026-03-02", bundle=RewardBundle(xp=25))
        day2 = _reserve(
            db_engine, ActivityType.STREAK, "2026-03-03",
            bundle=RewardBundle(xp=25), occurred_at=T0 + timedelta(days=1),
        )
        stale = _reserve(
            db_engine, ActivityType.STREAK, "2026-03-01",
            bundle=RewardBundle(xp=25), occurred_at=T0 - timedelta(days=1),
        )
        assert self._apply_xp(db_engine, day1, day2, stale) == [True, True, True]

        view = balance_service.query_balance(db_engine, ALICE)
        assert view.streak_count == 2
        assert view.last_streak_grant_at == T0 + timedelta(days=1)
        assert view.xp_total == 75

    def test_balance_and_streak_rows_are_locked_for_update(self, db_engine):
        entry = _reserve(db_engine, ActivityType.STREAK, "2026-03-02", bundle=RewardBundle(xp=25))
        locked: list[str] = []

        with Session(db_engine) as session:
            @event.listens_for(session, "do_orm_execute")
            def _capture(state):
                if state.is_select:
                    sql = str(state.statement.compile(dialect=postgresql.dialect()))
                    if "FOR UPDATE" in sql:
                        locked.append(sql)

            balance_service.apply_component(
                session, ledger_service.get_entry(session, entry.id), BalanceComponent.XP, T0
            )
            session.commit()

        assert any("user_balances" in sql for sql in locked)
        assert any("streak_states" in sql for sql in locked)

    def test_reapplying_after_another_session_applied_is_noop(self, db_engine):
        entry = _reserve(db_engine)
        assert self._apply_xp(db_engine, entry) == [True]
        assert self._apply_xp(db_engine, entry) == [False]
        assert balance_service.query_balance(db_engine, ALICE).xp_total == 185


class TestReadPaths:
    def test_unknown_user_has_zero_balance(self, db_engine):
        view = balance_service.query_balance(db_engine, ALICE)
        assert view.xp_total == 0
        assert view.token_total == Decimal("0")
        assert view.level == 1
        assert view.last_streak_grant_at is None

    def test_summary_and_recent(self, db_engine):
        quiz = _reserve(db_engine)
        game = _reserve(
            db_engine, ActivityType.GAME, "g-1",
            bundle=RewardBundle(xp=75, token_amount=Decimal("0.04")),
        )
        ledger_service.finalize_settled(db_engine, quiz.id, "0xaaa", 1, T0)
        ledger_service.finalize_settled(db_engine, game.id, "0xbbb", 1, T0 + timedelta(minutes=1))

        summary = balance_service.reward_summary(db_engine, ALICE)
        assert summary["total_xp"] == 260
        assert summary["total_tokens"] == Decimal("0.09")
        assert summary["by_activity"]["game"] == {"xp": 75, "tokens": Decimal("0.04")}
        assert summary["last_reward_at"] == T0 + timedelta(minutes=1)

        recent = balance_service.recent_rewards(db_engine, ALICE, limit=1)
        assert len(recent) == 1
        assert recent[0]["status"] == LedgerStatus.SETTLED

    @pytest.mark.parametrize("limit", [0, 5])
    def test_recent_respects_limit(self, db_engine, limit):
        for i in range(3):
            _reserve(db_engine, activity_id=f"a-{i}")
        assert len(balance_service.recent_rewards(db_engine, ALICE, limit=limit)) == min(limit, 3)
