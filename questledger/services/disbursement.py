"""
questledger.services.disbursement — Disbursement Coordinator
=============================================================

**Why this file exists:**
Every completed activity used to pay out along its own path, and every
path had its own way of failing halfway: tokens sent but XP not saved,
XP saved but the toast shown twice, double-clicks paying twice.  The
coordinator is now the ONLY way to turn an activity into rewards.

Flow for one :meth:`DisbursementCoordinator.submit_activity` call::

    validate ─► compute bundle ─► reserve ledger entry (pending)
                                        │
             duplicate key? ◄───────────┤
                                        ▼
                          transfer tokens (retry + backoff)
                                        │
           ┌────────────────────────────┼──────────────────────────┐
           ▼                            ▼                          ▼
   settled: XP + tokens       rejected: XP only,          ambiguous: XP only,
   applied in one txn         entry → failed              entry stays pending

Guarantees:
  * One ledger entry per ``(user, activity_type, activity_id)``; the
    database key, not an in-memory flag, decides duplicates.
  * Each balance component is applied at most once per entry.
  * A user's submissions are processed one at a time; different users
    proceed concurrently.
  * Once reserved, a disbursement runs to a recorded outcome even if the
    caller is cancelled.
  * Streak claims are checked against the stored streak state, whatever
    the caller submitted.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from questledger.config import QuestLedgerConfig
from questledger.constants import TOKEN_QUANTUM
from questledger.database.engine import run_db
from questledger.database.models import BalanceComponent, LedgerEntry, LedgerStatus
from questledger.engine.activity import ActivityResult, ActivityType, validate_activity
from questledger.engine.backoff import BackoffPolicy
from questledger.engine.cache import ConfigCache
from questledger.engine.clock import Clock, SystemClock, as_utc
from questledger.engine.reward import RewardBundle, compute
from questledger.engine.streak import (
    DEFAULT_GRACE,
    NotYetEligible,
    evaluate_streak,
    local_day,
    resolve_timezone,
)
from questledger.errors import (
    StorageUnavailable,
    TransferAmbiguous,
    TransferRejected,
    ValidationError,
)
from questledger.services import balance_service, ledger_service
from questledger.services.balance_service import BalanceView
from questledger.services.ledger_service import Finalization
from questledger.services.transfer import TokenTransferService, TransferReceipt

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OutcomeStatus(enum.StrEnum):
    SETTLED = "settled"
    # XP (and any item) applied; the token part failed or is still pending.
    SETTLED_PARTIAL = "settled_partial"
    # Nothing could be applied yet; the entry stays pending for reconciliation.
    PENDING = "pending"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DisbursementOutcome:
    """What happened to one submission.

    ``bundle`` is always the bundle recorded in the ledger, so a duplicate
    reports what the original submission earned.  ``applied`` is what this
    particular call credited; a retry of an entry whose XP went through
    earlier carries only ``tokens`` (or nothing).
    """

    status: OutcomeStatus
    entry_id: str
    bundle: RewardBundle
    token_status: LedgerStatus | None = None
    external_ref: str | None = None
    reason: str | None = None
    applied: frozenset[BalanceComponent] = frozenset()

    @property
    def should_notify(self) -> bool:
        """True when the user should see a reward notification.

        Only a call that newly credited a non-empty reward notifies, so each
        component of an entry is announced at most once.
        """
        return (
            self.status in (OutcomeStatus.SETTLED, OutcomeStatus.SETTLED_PARTIAL)
            and bool(self.applied)
            and not self.bundle.is_empty
        )

    @property
    def message(self) -> str:
        b = self.bundle
        new_xp = BalanceComponent.XP in self.applied
        if self.status == OutcomeStatus.SETTLED:
            if b.is_empty:
                return "Activity recorded. No reward this time."
            parts = []
            if new_xp:
                parts.append(f"+{b.xp} XP")
            if BalanceComponent.TOKENS in self.applied:
                parts.append(f"+{b.token_amount} tokens")
            if new_xp and b.item_grant:
                parts.append(f"item: {b.item_grant}")
            if not parts:
                return "Your reward has been settled."
            return "Reward earned: " + ", ".join(parts)
        if self.status == OutcomeStatus.SETTLED_PARTIAL:
            earned = f"+{b.xp} XP earned. " if new_xp else ""
            if self.token_status == LedgerStatus.PENDING:
                return f"{earned}Your {b.token_amount} tokens are still processing."
            return f"{earned}The token payout could not be completed."
        if self.status == OutcomeStatus.PENDING:
            return "Your reward is processing."
        if self.status == OutcomeStatus.DUPLICATE:
            return "This activity has already been rewarded."
        return f"Reward failed: {self.reason or 'unknown error'}"


def _bundle_of(entry: LedgerEntry) -> RewardBundle:
    return RewardBundle(
        xp=entry.xp or 0,
        token_amount=Decimal(entry.token_amount or 0).quantize(TOKEN_QUANTUM),
        item_grant=entry.item_grant,
    )


def _duplicate(entry: LedgerEntry, reason: str | None = None) -> DisbursementOutcome:
    return DisbursementOutcome(
        status=OutcomeStatus.DUPLICATE,
        entry_id=entry.id,
        bundle=_bundle_of(entry),
        token_status=LedgerStatus(entry.status),
        external_ref=entry.external_ref,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------
class DisbursementCoordinator:
    """Sole writer of ledger entries and user balances.

    Usage::

        coordinator = DisbursementCoordinator.from_config(cfg, engine, cache, transfer)
        outcome = await coordinator.submit_activity(result)
        ...
        await coordinator.reconcile_pending()   # periodic
        await coordinator.drain()               # on shutdown
    """

    def __init__(
        self,
        engine: Engine,
        cache: ConfigCache,
        transfer_service: TokenTransferService,
        *,
        clock: Clock | None = None,
        backoff: BackoffPolicy | None = None,
        transfer_timeout: float = 10.0,
        storage_timeout: float = 5.0,
        retry_window: timedelta = timedelta(minutes=5),
        reference_tz: ZoneInfo | None = None,
        streak_grace: timedelta = DEFAULT_GRACE,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._transfer = transfer_service
        self._clock = clock or SystemClock()
        self._backoff = backoff or BackoffPolicy()
        self._transfer_timeout = transfer_timeout
        self._storage_timeout = storage_timeout
        self._retry_window = retry_window
        self._reference_tz = reference_tz or ZoneInfo("UTC")
        self._streak_grace = streak_grace

        # Per-user serialization.  Locks are dropped once nobody holds or
        # waits on them.
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: Counter[str] = Counter()

        # Disbursements that must finish even if their caller goes away.
        self._inflight: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        cfg: QuestLedgerConfig,
        engine: Engine,
        cache: ConfigCache,
        transfer_service: TokenTransferService,
        clock: Clock | None = None,
    ) -> DisbursementCoordinator:
        return cls(
            engine,
            cache,
            transfer_service,
            clock=clock,
            backoff=BackoffPolicy.from_config(cfg.retry),
            transfer_timeout=cfg.transfer.timeout_seconds,
            storage_timeout=cfg.storage_timeout_seconds,
            retry_window=timedelta(seconds=cfg.retry.retry_window_seconds),
            reference_tz=cfg.tz,
            streak_grace=timedelta(hours=cfg.streak_grace_hours),
        )

    @property
    def reference_tz(self) -> ZoneInfo:
        return self._reference_tz

    @property
    def streak_grace(self) -> timedelta:
        return self._streak_grace

    # -------------------------------------------------------------------
    # Infrastructure helpers
    # -------------------------------------------------------------------
    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_refs[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[user_id] -= 1
            if self._lock_refs[user_id] <= 0:
                del self._lock_refs[user_id]
                self._user_locks.pop(user_id, None)

    async def _storage(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run a ledger/profile call on a worker thread under the storage timeout.

        A timeout is ambiguous for writes: the worker thread is not
        interrupted, so the unit of work may still commit after
        :class:`StorageUnavailable` is raised.  Every write here is either
        an idempotent insert or a compare-and-set, so resubmitting (or the
        reconciliation pass) converges on the recorded state.  The engine's
        ``statement_timeout`` bounds how long such a write can linger.
        """
        try:
            return await asyncio.wait_for(
                run_db(func, *args, **kwargs), timeout=self._storage_timeout
            )
        except TimeoutError as exc:
            raise StorageUnavailable(
                f"{func.__name__} timed out after {self._storage_timeout}s"
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"{func.__name__} failed: {exc}") from exc

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight disbursement to reach a recorded outcome."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    async def submit_activity(self, result: ActivityResult) -> DisbursementOutcome:
        """Validate, reserve, compute, transfer and apply one activity.

        Raises
        ------
        ValidationError
            *result* is malformed; nothing was recorded.
        StorageUnavailable
            The ledger could not be reached.  Resubmitting the same
            activity later is always safe.
        """
        result = validate_activity(result)

        # Shielded: cancelling the caller must not abandon a reserved entry
        # between the transfer and the settlement write.
        task = self._spawn(self._submit_serialized(result))
        return await asyncio.shield(task)

    async def query_balance(self, user_id: str) -> BalanceView:
        return await self._storage(balance_service.query_balance, self._engine, user_id)

    async def reconcile_pending(self, limit: int = 50) -> dict[str, int]:
        """Retry transfers for pending entries idle longer than the retry window.

        Returns a count of outcomes by status plus ``"skipped"`` for entries
        another worker claimed first.
        """
        now = self._clock.now()
        stale_before = now - self._retry_window
        entries = await self._storage(
            ledger_service.list_retryable_entries, self._engine, stale_before, limit
        )

        summary: Counter[str] = Counter()
        for candidate in entries:
            task = self._spawn(self._reconcile_one(candidate.id, candidate.user_id))
            outcome = await asyncio.shield(task)
            summary[outcome.status.value if outcome else "skipped"] += 1

        result = dict(summary)
        result["checked"] = len(entries)
        if entries:
            logger.info("Reconciliation pass: %s", result)
        return result

    # -------------------------------------------------------------------
    # Submission path
    # -------------------------------------------------------------------
    async def _submit_serialized(self, result: ActivityResult) -> DisbursementOutcome:
        async with self._user_lock(result.user_id):
            return await self._submit(result)

    async def _submit(self, result: ActivityResult) -> DisbursementOutcome:
        now = self._clock.now()
        if result.activity_type == ActivityType.STREAK:
            gated = await self._gate_streak(result, now)
            if isinstance(gated, DisbursementOutcome):
                return gated
            result = gated

        bundle = compute(
            result.activity_type, result.performance_metrics, self._cache, tier=result.tier
        )
        if bundle.diagnostic:
            logger.warning(
                "Activity %s earned nothing: %s", result.idempotency_key, bundle.diagnostic
            )

        reservation = await self._storage(
            ledger_service.reserve_entry,
            self._engine,
            ledger_service.new_entry(result, bundle, now),
        )
        entry = reservation.entry

        if not reservation.acquired:
            resumed = await self._resume_existing(entry)
            if isinstance(resumed, DisbursementOutcome):
                return resumed
            return await self._pay(resumed, diagnostic=None)

        logger.debug("Reserved ledger entry %s", entry.id)
        return await self._pay(entry, diagnostic=bundle.diagnostic)

    async def _gate_streak(
        self, result: ActivityResult, now: datetime,
    ) -> ActivityResult | DisbursementOutcome:
        """Re-derive a streak claim from the stored streak state.

        The claim's ``activity_id`` must be today's local date, and the
        streak length that prices it comes from ``StreakState``; whatever
        the client put in the metrics is discarded.  Runs under the user
        lock, so the state cannot move between this check and settlement
        within this process.
        """
        last, length, tz_name = await self._storage(
            balance_service.load_streak, self._engine, result.user_id
        )
        tz = resolve_timezone(tz_name, self._reference_tz)
        today = local_day(now, tz).isoformat()
        if result.activity_id != today:
            raise ValidationError(
                "activity_id", f"a streak claim must use today's local date ({today})"
            )

        decision = evaluate_streak(last, length, now, tz, self._streak_grace)
        if isinstance(decision, NotYetEligible):
            existing = await self._storage(
                ledger_service.load_entry, self._engine, result.idempotency_key
            )
            if existing is not None:
                logger.info("Duplicate streak claim for %s on %s", result.user_id, today)
                return _duplicate(existing)
            raise ValidationError(
                "activity_id",
                f"streak not claimable until {decision.next_eligible_at.isoformat()}",
            )

        return replace(
            result,
            performance_metrics={"streakLength": decision.new_streak_length},
            occurred_at=as_utc(now),
        )

    async def _resume_existing(self, entry: LedgerEntry) -> LedgerEntry | DisbursementOutcome:
        """Decide what a resubmission of an existing entry should do.

        Settled entries and recently-touched pending entries are duplicates.
        Failed entries and pending entries idle past the retry window are
        claimed and retried with their original bundle.
        """
        status = LedgerStatus(entry.status)
        if status == LedgerStatus.SETTLED:
            logger.info("Duplicate submission for settled entry %s", entry.id)
            return _duplicate(entry)

        now = self._clock.now()
        stale_before = now - self._retry_window
        if status == LedgerStatus.PENDING and as_utc(entry.updated_at) > stale_before:
            logger.info("Duplicate submission for in-progress entry %s", entry.id)
            return _duplicate(entry, reason="reward is still processing")

        claimed = await self._storage(
            ledger_service.claim_entry, self._engine, entry.id, stale_before, now
        )
        if claimed is None:
            current = await self._storage(ledger_service.load_entry, self._engine, entry.id)
            return _duplicate(current or entry)

        logger.info("Retrying %s entry %s on resubmission", status.value, entry.id)
        return claimed

    async def _reconcile_one(self, entry_id: str, user_id: str) -> DisbursementOutcome | None:
        async with self._user_lock(user_id):
            now = self._clock.now()
            claimed = await self._storage(
                ledger_service.claim_entry,
                self._engine,
                entry_id,
                now - self._retry_window,
                now,
            )
            if claimed is None:
                return None
            return await self._pay(claimed, diagnostic=None)

    # -------------------------------------------------------------------
    # Transfer + settlement
    # -------------------------------------------------------------------
    async def _pay(self, entry: LedgerEntry, diagnostic: str | None) -> DisbursementOutcome:
        """Drive a pending entry to settled, failed, or a recorded pending."""
        amount = Decimal(entry.token_amount or 0)
        if amount <= 0:
            return await self._settle(entry.id, None, attempts=0, diagnostic=diagnostic)

        try:
            receipt, attempts = await self._transfer_with_retry(entry, amount)
        except TransferRejected as exc:
            return await self._reject(entry.id, str(exc), exc.attempts)
        except TransferAmbiguous as exc:
            return await self._hold(entry.id, str(exc), exc.attempts)

        try:
            return await self._settle(entry.id, receipt.tx_ref, attempts=attempts, diagnostic=None)
        except StorageUnavailable:
            logger.error(
                "Transfer for %s succeeded (digest %s) but settlement could not be "
                "recorded; reconciliation will retry with the same idempotency key",
                entry.id, receipt.tx_ref,
            )
            raise

    async def _transfer_with_retry(
        self, entry: LedgerEntry, amount: Decimal,
    ) -> tuple[TransferReceipt, int]:
        """Call the transfer service with capped exponential backoff.

        Only ambiguous failures are retried.  The raised error carries the
        number of attempts made on ``.attempts``.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                receipt = await asyncio.wait_for(
                    self._transfer.transfer(entry.user_id, amount, entry.id),
                    timeout=self._transfer_timeout,
                )
                return receipt, attempt
            except TransferRejected as exc:
                exc.attempts = attempt
                raise
            except TransferAmbiguous as exc:
                error = exc
            except TimeoutError as exc:
                error = TransferAmbiguous(
                    f"transfer timed out after {self._transfer_timeout}s"
                )
                error.__cause__ = exc

            if not self._backoff.should_retry(attempt):
                error.attempts = attempt
                raise error

            delay = self._backoff.delay_for(attempt)
            logger.warning(
                "Transfer for %s attempt %d/%d failed (%s) — retrying in %.1fs",
                entry.id, attempt, self._backoff.max_attempts, error, delay,
            )
            await self._clock.sleep(delay)

    async def _finalize(self, func: Callable[..., Finalization], *args) -> Finalization:
        return await self._storage(
            func, self._engine, *args, self._clock.now(), streak_grace=self._streak_grace,
        )

    async def _settle(
        self, entry_id: str, external_ref: str | None, *, attempts: int, diagnostic: str | None,
    ) -> DisbursementOutcome:
        done = await self._finalize(
            ledger_service.finalize_settled, entry_id, external_ref, attempts
        )
        if not done.transitioned:
            return _duplicate(done.entry)
        return DisbursementOutcome(
            status=OutcomeStatus.SETTLED,
            entry_id=done.entry.id,
            bundle=_bundle_of(done.entry),
            token_status=LedgerStatus.SETTLED,
            external_ref=external_ref,
            reason=diagnostic,
            applied=done.applied,
        )

    async def _reject(self, entry_id: str, reason: str, attempts: int) -> DisbursementOutcome:
        done = await self._finalize(ledger_service.finalize_rejected, entry_id, reason, attempts)
        if not done.transitioned:
            return _duplicate(done.entry)
        return self._partial(done, LedgerStatus.FAILED, OutcomeStatus.FAILED, reason)

    async def _hold(self, entry_id: str, reason: str, attempts: int) -> DisbursementOutcome:
        done = await self._finalize(ledger_service.record_ambiguous, entry_id, reason, attempts)
        if not done.transitioned:
            return _duplicate(done.entry)
        return self._partial(done, LedgerStatus.PENDING, OutcomeStatus.PENDING, reason)

    @staticmethod
    def _partial(
        done: Finalization, token_status: LedgerStatus, fallback: OutcomeStatus, reason: str,
    ) -> DisbursementOutcome:
        # XP-less bundles have nothing to settle partially.
        bundle = _bundle_of(done.entry)
        status = (
            OutcomeStatus.SETTLED_PARTIAL
            if bundle.xp > 0 or bundle.item_grant
            else fallback
        )
        return DisbursementOutcome(
            status=status,
            entry_id=done.entry.id,
            bundle=bundle,
            token_status=token_status,
            reason=reason,
            applied=done.applied,
        )
