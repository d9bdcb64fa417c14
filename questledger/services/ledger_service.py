"""
questledger.services.ledger_service — Durable Ledger & Idempotency Guard
=========================================================================

The ledger is the single source of truth for whether an activity has been
paid.  Every entry is keyed by ``user_id:activity_type:activity_id``; the
primary key is the idempotency guard, enforced by the database rather than
by an in-process check.

Session-level primitives (caller owns the transaction):

    get_entry, put_if_absent, reserve, update_status, claim_for_retry

Engine-level units of work (each is one transaction, safe for ``run_db``):

    reserve_entry, claim_entry, list_retryable_entries,
    finalize_settled, finalize_rejected, record_ambiguous

Status transitions only ever move ``pending → settled | failed`` plus the
retry edge ``failed → pending``; every transition is a compare-and-set
``UPDATE … WHERE status = :expected``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import Engine, and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from questledger.database.engine import get_session
from questledger.database.models import BalanceComponent, LedgerEntry, LedgerStatus
from questledger.engine.activity import ActivityResult
from questledger.engine.reward import RewardBundle
from questledger.engine.streak import DEFAULT_GRACE
from questledger.services.balance_service import apply_component

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Reservation:
    """Result of :func:`reserve`.

    ``acquired`` is True when this call created the entry; otherwise
    ``entry`` is the row that already held the key.
    """

    acquired: bool
    entry: LedgerEntry


@dataclass(frozen=True, slots=True)
class Finalization:
    """Result of a finalize unit of work.

    ``transitioned`` is False when the entry had already left ``pending``.
    ``applied`` holds only the balance components THIS call applied, so a
    retry never reports XP that an earlier attempt already credited.
    """

    transitioned: bool
    entry: LedgerEntry
    applied: frozenset[BalanceComponent] = frozenset()


def new_entry(result: ActivityResult, bundle: RewardBundle, now: datetime) -> LedgerEntry:
    """Build an unsaved pending entry carrying *bundle*."""
    return LedgerEntry(
        id=result.idempotency_key,
        user_id=result.user_id,
        activity_type=str(result.activity_type),
        activity_id=result.activity_id,
        metrics=dict(result.performance_metrics),
        xp=bundle.xp,
        token_amount=bundle.token_amount,
        item_grant=bundle.item_grant,
        status=LedgerStatus.PENDING.value,
        attempts=0,
        xp_applied=False,
        occurred_at=result.occurred_at,
        created_at=now,
        updated_at=now,
    )


# ---------------------------------------------------------------------------
# Session-level primitives
# ---------------------------------------------------------------------------
def get_entry(session: Session, entry_id: str) -> LedgerEntry | None:
    """Fetch an entry, always reloading column values from the database."""
    return session.get(LedgerEntry, entry_id, populate_existing=True)


def put_if_absent(session: Session, entry: LedgerEntry) -> bool:
    """Insert *entry* unless its key already exists.

    Returns True if the insert happened.  Uses a SAVEPOINT so a duplicate
    key rolls back only the insert and leaves the outer transaction usable.
    """
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(entry)
            session.flush()
    except IntegrityError:
        logger.debug("Ledger key %s already present", entry.id)
        return False
    return True


def reserve(session: Session, entry: LedgerEntry) -> Reservation:
    """Atomically create *entry*, or return whichever entry holds its key."""
    existing = get_entry(session, entry.id)
    if existing is not None:
        return Reservation(acquired=False, entry=existing)

    if put_if_absent(session, entry):
        return Reservation(acquired=True, entry=entry)

    # Lost the race to a concurrent writer between the read and the insert.
    existing = get_entry(session, entry.id)
    if existing is None:
        raise RuntimeError(f"Ledger key {entry.id} conflicted but cannot be read back")
    return Reservation(acquired=False, entry=existing)


def update_status(
    session: Session,
    entry_id: str,
    expected: LedgerStatus,
    new: LedgerStatus,
    now: datetime,
    **fields,
) -> bool:
    """Compare-and-set the status of *entry_id*.

    Applies ``status = new`` plus *fields* only if the current status is
    *expected*.  Returns False when another writer got there first.
    """
    stmt = (
        update(LedgerEntry)
        .where(LedgerEntry.id == entry_id, LedgerEntry.status == expected.value)
        .values(status=new.value, updated_at=now, **fields)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def claim_for_retry(
    session: Session,
    entry_id: str,
    stale_before: datetime,
    now: datetime,
) -> bool:
    """Take ownership of an unfinished entry so its transfer can be retried.

    A failed entry moves back to pending.  A pending entry is only claimable
    once it has sat untouched since *stale_before*; claiming bumps
    ``updated_at`` so no other retrier picks it up in the same window.
    """
    stmt = (
        update(LedgerEntry)
        .where(
            LedgerEntry.id == entry_id,
            or_(
                LedgerEntry.status == LedgerStatus.FAILED.value,
                and_(
                    LedgerEntry.status == LedgerStatus.PENDING.value,
                    LedgerEntry.updated_at <= stale_before,
                ),
            ),
        )
        .values(status=LedgerStatus.PENDING.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def list_retryable(session: Session, stale_before: datetime, limit: int = 50) -> list[LedgerEntry]:
    """Pending entries not touched since *stale_before*, oldest first."""
    return list(session.scalars(
        select(LedgerEntry)
        .where(
            LedgerEntry.status == LedgerStatus.PENDING.value,
            LedgerEntry.updated_at <= stale_before,
        )
        .order_by(LedgerEntry.updated_at, LedgerEntry.id)
        .limit(limit)
    ).all())


# ---------------------------------------------------------------------------
# Engine-level units of work
# ---------------------------------------------------------------------------
def reserve_entry(engine: Engine, entry: LedgerEntry) -> Reservation:
    with get_session(engine) as session:
        return reserve(session, entry)


def claim_entry(
    engine: Engine, entry_id: str, stale_before: datetime, now: datetime,
) -> LedgerEntry | None:
    """Claim *entry_id* for retry; returns the refreshed entry or None."""
    with get_session(engine) as session:
        if not claim_for_retry(session, entry_id, stale_before, now):
            return None
        return get_entry(session, entry_id)


def list_retryable_entries(engine: Engine, stale_before: datetime, limit: int = 50) -> list[LedgerEntry]:
    with get_session(engine) as session:
        return list_retryable(session, stale_before, limit)


def load_entry(engine: Engine, entry_id: str) -> LedgerEntry | None:
    with get_session(engine) as session:
        return get_entry(session, entry_id)


def _apply(
    session: Session,
    entry: LedgerEntry,
    components: tuple[BalanceComponent, ...],
    now: datetime,
    streak_grace: timedelta,
) -> frozenset[BalanceComponent]:
    return frozenset(
        component
        for component in components
        if apply_component(session, entry, component, now, streak_grace=streak_grace)
    )


def finalize_settled(
    engine: Engine,
    entry_id: str,
    external_ref: str | None,
    attempts: int,
    now: datetime,
    *,
    streak_grace: timedelta = DEFAULT_GRACE,
) -> Finalization:
    """Mark a pending entry settled and apply every unapplied component.

    The status change and the balance applications commit together.
    """
    with get_session(engine) as session:
        transitioned = update_status(
            session, entry_id, LedgerStatus.PENDING, LedgerStatus.SETTLED, now,
            external_ref=external_ref,
            settled_at=now,
            attempts=LedgerEntry.attempts + attempts,
            last_error=None,
            xp_applied=True,
        )
        entry = get_entry(session, entry_id)
        if not transitioned:
            return Finalization(False, entry)

        components = (BalanceComponent.XP,)
        if Decimal(entry.token_amount or 0) > 0:
            components += (BalanceComponent.TOKENS,)
        applied = _apply(session, entry, components, now, streak_grace)

        logger.info(
            "Ledger %s settled: %d XP, %s tokens, ref=%s",
            entry_id, entry.xp, entry.token_amount, external_ref,
        )
        return Finalization(True, entry, applied)


def finalize_rejected(
    engine: Engine,
    entry_id: str,
    reason: str,
    attempts: int,
    now: datetime,
    *,
    streak_grace: timedelta = DEFAULT_GRACE,
) -> Finalization:
    """Mark a pending entry failed; its XP component is still applied."""
    with get_session(engine) as session:
        transitioned = update_status(
            session, entry_id, LedgerStatus.PENDING, LedgerStatus.FAILED, now,
            attempts=LedgerEntry.attempts + attempts,
            last_error=reason,
            xp_applied=True,
        )
        entry = get_entry(session, entry_id)
        if not transitioned:
            return Finalization(False, entry)

        applied = _apply(session, entry, (BalanceComponent.XP,), now, streak_grace)
        logger.error("Ledger %s failed: transfer rejected (%s)", entry_id, reason)
        return Finalization(True, entry, applied)


def record_ambiguous(
    engine: Engine,
    entry_id: str,
    reason: str,
    attempts: int,
    now: datetime,
    *,
    streak_grace: timedelta = DEFAULT_GRACE,
) -> Finalization:
    """Leave the entry pending for reconciliation, applying its XP now.

    ``transitioned`` is True when the entry was still pending.
    """
    with get_session(engine) as session:
        still_pending = session.execute(
            update(LedgerEntry)
            .where(
                LedgerEntry.id == entry_id,
                LedgerEntry.status == LedgerStatus.PENDING.value,
            )
            .values(
                attempts=LedgerEntry.attempts + attempts,
                last_error=reason,
                xp_applied=True,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        entry = get_entry(session, entry_id)
        if not still_pending:
            return Finalization(False, entry)

        applied = _apply(session, entry, (BalanceComponent.XP,), now, streak_grace)
        logger.warning(
            "Ledger %s left pending after %d transfer attempt(s): %s",
            entry_id, attempts, reason,
        )
        return Finalization(True, entry, applied)
