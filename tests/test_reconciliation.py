"""
tests/test_reconciliation.py — Offline Balance Repair
======================================================
Covers rebuild_balances(): drift correction from balance_applications,
dry runs, orphan balances and settled entries missing their XP.
"""

from __future__ import annotations

from decimal import Decimal

from conftest import ALICE, BOB, T0
from sqlalchemy import update
from sqlalchemy.orm import Session

from questledger.database.models import LedgerEntry, LedgerStatus, UserBalance
from questledger.engine.activity import ActivityResult, ActivityType
from questledger.engine.reward import RewardBundle
from questledger.services import balance_service, ledger_service
from questledger.services.reconciliation_service import rebuild_balances


def _settle(engine, user_id=ALICE, activity_id="c-1", xp=200, tokens="0.20"):
    result = ActivityResult(
        user_id=user_id,
        activity_type=ActivityType.CHALLENGE,
        activity_id=activity_id,
        occurred_at=T0,
        difficulty="hard",
    )
    entry = ledger_service.new_entry(
        result, RewardBundle(xp=xp, token_amount=Decimal(tokens)), T0
    )
    ledger_service.reserve_entry(engine, entry)
    ledger_service.finalize_settled(engine, entry.id, "0xref", 1, T0)
    return entry.id


def _corrupt(engine, user_id, **values):
    with Session(engine) as session:
        session.execute(update(UserBalance).where(UserBalance.user_id == user_id).values(**values))
        session.commit()


class TestRebuildBalances:
    def test_consistent_balances_are_untouched(self, db_engine):
        _settle(db_engine)
        report = rebuild_balances(db_engine)
        assert report["checked"] == 1
        assert report["corrected"] == 0
        assert report["unapplied_settled"] == []

    def test_drift_is_corrected(self, db_engine):
        _settle(db_engine)
        _settle(db_engine, activity_id="c-2", xp=400, tokens="0.10")
        _corrupt(db_engine, ALICE, xp_total=99, token_total=Decimal("5"), level=7)

        report = rebuild_balances(db_engine)

        assert report["corrected"] == 1
        correction = report["corrections"][0]
        assert correction["stored_xp"] == 99
        assert correction["actual_xp"] == 600
        assert correction["actual_level"] == 2

        view = balance_service.query_balance(db_engine, ALICE)
        assert view.xp_total == 600
        assert view.token_total == Decimal("0.30")
        assert view.level == 2

    def test_dry_run_reports_without_writing(self, db_engine):
        _settle(db_engine)
        _corrupt(db_engine, ALICE, xp_total=1)

        report = rebuild_balances(db_engine, dry_run=True)

        assert report["dry_run"] is True
        assert report["corrected"] == 1
        assert balance_service.query_balance(db_engine, ALICE).xp_total == 1

    def test_orphan_balance_is_zeroed(self, db_engine):
        with Session(db_engine) as session:
            session.add(UserBalance(user_id=BOB, xp_total=50, token_total=Decimal("1"), level=1))
            session.commit()

        report = rebuild_balances(db_engine)

        assert report["corrected"] == 1
        view = balance_service.query_balance(db_engine, BOB)
        assert view.xp_total == 0
        assert view.token_total == Decimal("0")

    def test_settled_entry_without_xp_is_reported(self, db_engine):
        result = ActivityResult(
            user_id=ALICE, activity_type=ActivityType.GAME, activity_id="g-9", occurred_at=T0,
        )
        entry = ledger_service.new_entry(result, RewardBundle(xp=75), T0)
        ledger_service.reserve_entry(db_engine, entry)
        with Session(db_engine) as session:
            session.execute(
                update(LedgerEntry)
                .where(LedgerEntry.id == entry.id)
                .values(status=LedgerStatus.SETTLED.value)
            )
            session.commit()

        report = rebuild_balances(db_engine)

        assert report["unapplied_settled"] == [entry.id]
