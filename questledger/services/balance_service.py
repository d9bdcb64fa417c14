"""
questledger.services.balance_service — Exactly-Once Balance Application
=========================================================================

The user profile store.  Balances change only by applying one component
(``xp`` or ``tokens``) of one ledger entry; each application inserts a
``balance_applications`` row keyed by ``(entry_id, component)``, so the
same component can never be applied twice, even across processes.

The ``xp`` component also carries the item grant and, for streak entries,
the authoritative streak state update.  The streak length is always
derived from the stored :class:`StreakState`, never from the submitted
metrics.

Writers take a row lock (``SELECT … FOR UPDATE``) on the user's balance
and streak rows, so concurrent applications from separate processes
serialize instead of overwriting each other's totals.

Read paths (:func:`query_balance`, :func:`load_streak`,
:func:`reward_summary`, :func:`recent_rewards`, :func:`list_items`) never
write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TypeVar

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from questledger.constants import level_for_xp
from questledger.database.engine import get_session
from questledger.database.models import (
    BalanceApplication,
    BalanceComponent,
    LedgerEntry,
    LedgerStatus,
    StreakState,
    UserBalance,
    UserItem,
)
from questledger.engine.activity import ActivityType
from questledger.engine.clock import as_utc
from questledger.engine.streak import DEFAULT_GRACE, next_streak_length

logger = logging.getLogger(__name__)

M = TypeVar("M", UserBalance, StreakState)


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BalanceView:
    """Aggregate balance as shown to the user."""

    user_id: str
    xp_total: int = 0
    token_total: Decimal = Decimal("0")
    level: int = 1
    streak_count: int = 0
    last_streak_grant_at: datetime | None = None


# ---------------------------------------------------------------------------
# Session-level helpers
# ---------------------------------------------------------------------------
def get_balance(session: Session, user_id: str) -> UserBalance | None:
    return session.get(UserBalance, user_id)


def _get_or_create_locked(session: Session, model: type[M], user_id: str, factory: Callable[[], M]) -> M:
    """Fetch *model* row for *user_id* under a row lock, inserting it if absent."""
    row = session.get(model, user_id, with_for_update=True, populate_existing=True)
    if row is not None:
        return row
    try:
        with session.begin_nested():   # SAVEPOINT
            row = factory()
            session.add(row)
            session.flush()
        return row
    except IntegrityError:
        # Another writer created it between our read and insert.
        return session.get(model, user_id, with_for_update=True, populate_existing=True)


def get_or_create_balance(session: Session, user_id: str) -> UserBalance:
    """Fetch or insert the UserBalance row for *user_id*, locked for update."""
    return _get_or_create_locked(
        session, UserBalance, user_id,
        lambda: UserBalance(user_id=user_id, xp_total=0, token_total=Decimal("0"), level=1),
    )


def get_or_create_streak(session: Session, user_id: str) -> StreakState:
    return _get_or_create_locked(
        session, StreakState, user_id,
        lambda: StreakState(user_id=user_id, current_streak_length=0, longest_streak_length=0),
    )


def is_applied(session: Session, entry_id: str, component: BalanceComponent) -> bool:
    return session.get(BalanceApplication, (entry_id, component.value)) is not None


def _advance_streak(session: Session, entry: LedgerEntry, grace: timedelta) -> None:
    """Move the user's streak state forward to this streak grant."""
    state = get_or_create_streak(session, entry.user_id)
    granted_at = as_utc(entry.occurred_at)

    last = as_utc(state.last_granted_at)
    if last is not None and granted_at <= last:
        logger.info(
            "Streak entry %s is older than the current streak state — not applied",
            entry.id,
        )
        return

    length = next_streak_length(last, state.current_streak_length or 0, granted_at, grace)
    priced = (entry.metrics or {}).get("streakLength")
    if priced is not None and int(priced) != length:
        logger.warning(
            "Streak entry %s was priced at length %s; stored state gives %d",
            entry.id, priced, length,
        )

    state.last_granted_at = granted_at
    state.current_streak_length = length
    state.longest_streak_length = max(state.longest_streak_length or 0, length)


def apply_component(
    session: Session,
    entry: LedgerEntry,
    component: BalanceComponent,
    now: datetime,
    *,
    streak_grace: timedelta = DEFAULT_GRACE,
) -> bool:
    """Apply one component of *entry* to the user's balance.

    Returns False (and changes nothing) if that component was already
    applied.  Must run inside the caller's transaction so the application
    commits or rolls back together with the ledger status change.
    """
    # Lock first: once we hold the row, a concurrent application of the
    # same component has either committed (and is visible below) or waits.
    balance = get_or_create_balance(session, entry.user_id)
    if is_applied(session, entry.id, component):
        return False

    if component == BalanceComponent.XP:
        xp_delta = entry.xp or 0
        token_delta = Decimal("0")
    else:
        xp_delta = 0
        token_delta = Decimal(entry.token_amount or 0)

    session.add(BalanceApplication(
        entry_id=entry.id,
        component=component.value,
        user_id=entry.user_id,
        xp_delta=xp_delta,
        token_delta=token_delta,
        applied_at=now,
    ))

    balance.xp_total = (balance.xp_total or 0) + xp_delta
    balance.token_total = Decimal(balance.token_total or 0) + token_delta
    balance.level = level_for_xp(balance.xp_total)
    balance.updated_at = now

    if component == BalanceComponent.XP:
        if entry.item_grant:
            session.add(UserItem(
                user_id=entry.user_id,
                item_ref=entry.item_grant,
                entry_id=entry.id,
                granted_at=now,
            ))
        if entry.activity_type == ActivityType.STREAK.value:
            _advance_streak(session, entry, streak_grace)

    # Flushing here surfaces a concurrent duplicate as IntegrityError and
    # rolls back the caller's whole transaction.
    session.flush()
    return True


# ---------------------------------------------------------------------------
# Read paths (engine-level, safe to call through run_db)
# ---------------------------------------------------------------------------
def load_streak(engine: Engine, user_id: str) -> tuple[datetime | None, int, str | None]:
    """Return ``(last_granted_at, current_length, timezone)`` for *user_id*."""
    with get_session(engine) as session:
        state = session.get(StreakState, user_id)
        if state is None:
            return None, 0, None
        return as_utc(state.last_granted_at), state.current_streak_length or 0, state.timezone


def query_balance(engine: Engine, user_id: str) -> BalanceView:
    """Return the user's current balance; zeros if they have none yet."""
    with get_session(engine) as session:
        balance = session.get(UserBalance, user_id)
        streak = session.get(StreakState, user_id)
        return BalanceView(
            user_id=user_id,
            xp_total=balance.xp_total if balance else 0,
            token_total=Decimal(balance.token_total) if balance else Decimal("0"),
            level=balance.level if balance else 1,
            streak_count=streak.current_streak_length if streak else 0,
            last_streak_grant_at=as_utc(streak.last_granted_at) if streak else None,
        )


def reward_summary(engine: Engine, user_id: str) -> dict:
    """Totals of applied rewards per activity type.

    Returns ``{"total_xp", "total_tokens", "by_activity": {type: {"xp", "tokens"}},
    "last_reward_at"}``.
    """
    with get_session(engine) as session:
        rows = session.execute(
            select(
                LedgerEntry.activity_type,
                func.sum(BalanceApplication.xp_delta).label("xp"),
                func.sum(BalanceApplication.token_delta).label("tokens"),
                func.max(BalanceApplication.applied_at).label("last_at"),
            )
            .join(LedgerEntry, LedgerEntry.id == BalanceApplication.entry_id)
            .where(BalanceApplication.user_id == user_id)
            .group_by(LedgerEntry.activity_type)
        ).all()

    by_activity: dict[str, dict] = {}
    total_xp = 0
    total_tokens = Decimal("0")
    last_reward_at: datetime | None = None
    for row in rows:
        xp = int(row.xp or 0)
        tokens = Decimal(str(row.tokens or 0))
        by_activity[row.activity_type] = {"xp": xp, "tokens": tokens}
        total_xp += xp
        total_tokens += tokens
        last_at = as_utc(row.last_at)
        if last_at is not None and (last_reward_at is None or last_at > last_reward_at):
            last_reward_at = last_at

    return {
        "total_xp": total_xp,
        "total_tokens": total_tokens,
        "by_activity": by_activity,
        "last_reward_at": last_reward_at,
    }


def recent_rewards(engine: Engine, user_id: str, limit: int = 5) -> list[dict]:
    """Newest ledger entries for *user_id* (any status), newest first."""
    with get_session(engine) as session:
        entries = session.scalars(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": e.id,
                "activity_type": e.activity_type,
                "activity_id": e.activity_id,
                "xp": e.xp,
                "token_amount": Decimal(e.token_amount or 0),
                "item_grant": e.item_grant,
                "status": LedgerStatus(e.status),
                "external_ref": e.external_ref,
                "created_at": as_utc(e.created_at),
            }
            for e in entries
        ]


def list_items(engine: Engine, user_id: str) -> list[str]:
    """Item references granted to *user_id*, oldest first."""
    with get_session(engine) as session:
        return list(session.scalars(
            select(UserItem.item_ref)
            .where(UserItem.user_id == user_id)
            .order_by(UserItem.granted_at, UserItem.id)
        ).all())
