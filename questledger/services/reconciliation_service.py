"""
questledger.services.reconciliation_service — Offline Balance Repair
=====================================================================

Operator job that rebuilds ``user_balances`` from the exactly-once
``balance_applications`` records and corrects drift if found.

How it works:
    1. Sum ``xp_delta`` and ``token_delta`` from ``balance_applications``
       grouped by user.  This is the ground truth: every applied component
       of every ledger entry, each exactly once.
    2. Compare against the stored ``user_balances`` row.
    3. If there is a mismatch, overwrite totals (and level) with the truth.
    4. Log all corrections for audit.

It also reports settled ledger entries that have no ``xp`` application.
Those indicate a write that bypassed the coordinator and are listed, not
repaired: their true bundle is in the ledger but was never applied.

Pending-transfer retries are NOT done here; that is
:meth:`DisbursementCoordinator.reconcile_pending`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Engine, and_, func, select

from questledger.constants import level_for_xp
from questledger.database.engine import get_session
from questledger.database.models import (
    BalanceApplication,
    BalanceComponent,
    LedgerEntry,
    LedgerStatus,
    UserBalance,
)

logger = logging.getLogger(__name__)


def rebuild_balances(engine: Engine, *, dry_run: bool = False) -> dict:
    """Validate balances against balance_applications and fix drift.

    With ``dry_run=True`` corrections are computed and returned but not
    written.

    Returns ``{"checked": N, "corrected": M, "corrections": [...],
    "unapplied_settled": [...], "dry_run": bool, "timestamp": iso}``.
    """
    corrections: list[dict] = []
    now = datetime.now(UTC)

    with get_session(engine) as session:
        # Ground truth: per-user sums over every applied component
        truth_rows = session.execute(
            select(
                BalanceApplication.user_id,
                func.coalesce(func.sum(BalanceApplication.xp_delta), 0).label("xp"),
                func.coalesce(func.sum(BalanceApplication.token_delta), 0).label("tokens"),
            )
            .group_by(BalanceApplication.user_id)
        ).all()
        truth_map: dict[str, tuple[int, Decimal]] = {
            row.user_id: (int(row.xp), Decimal(str(row.tokens)))
            for row in truth_rows
        }

        balance_map: dict[str, UserBalance] = {
            b.user_id: b for b in session.scalars(select(UserBalance)).all()
        }

        checked = 0
        for user_id in sorted(truth_map.keys() | balance_map.keys()):
            checked += 1
            actual_xp, actual_tokens = truth_map.get(user_id, (0, Decimal("0")))
            balance = balance_map.get(user_id)
            stored_xp = balance.xp_total if balance else 0
            stored_tokens = Decimal(balance.token_total) if balance else Decimal("0")
            stored_level = balance.level if balance else 1
            actual_level = level_for_xp(actual_xp)

            if (stored_xp, stored_tokens, stored_level) == (actual_xp, actual_tokens, actual_level):
                continue

            corrections.append({
                "user_id": user_id,
                "stored_xp": stored_xp,
                "actual_xp": actual_xp,
                "stored_tokens": stored_tokens,
                "actual_tokens": actual_tokens,
                "stored_level": stored_level,
                "actual_level": actual_level,
            })
            if dry_run:
                continue

            if balance is None:
                balance = UserBalance(user_id=user_id)
                session.add(balance)
            balance.xp_total = actual_xp
            balance.token_total = actual_tokens
            balance.level = actual_level
            balance.updated_at = now

        # Settled entries whose XP component was never applied
        unapplied = session.scalars(
            select(LedgerEntry.id)
            .outerjoin(
                BalanceApplication,
                and_(
                    BalanceApplication.entry_id == LedgerEntry.id,
                    BalanceApplication.component == BalanceComponent.XP.value,
                ),
            )
            .where(
                LedgerEntry.status == LedgerStatus.SETTLED.value,
                BalanceApplication.entry_id.is_(None),
            )
            .order_by(LedgerEntry.id)
        ).all()

        if dry_run:
            session.rollback()

    if corrections:
        logger.warning(
            "Balance reconciliation%s: corrected %d/%d balances: %s",
            " (dry run)" if dry_run else "", len(corrections), checked, corrections,
        )
    else:
        logger.info("Balance reconciliation: all %d balances match", checked)
    if unapplied:
        logger.error(
            "Balance reconciliation: %d settled entries have no XP application: %s",
            len(unapplied), list(unapplied),
        )

    return {
        "checked": checked,
        "corrected": len(corrections),
        "corrections": corrections,
        "unapplied_settled": list(unapplied),
        "dry_run": dry_run,
        "timestamp": now.isoformat(),
    }
