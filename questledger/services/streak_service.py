"""
questledger.services.streak_service — Daily Streak Gate
========================================================

Decides, from the persisted :class:`~questledger.database.models.StreakState`,
whether a user may claim today's streak reward, and routes an eligible
claim through the disbursement coordinator as an ordinary ``streak``
activity whose ``activity_id`` is the local calendar date.  That id makes
"once per calendar day" a ledger guarantee: two racing claims on the same
day collide on the same idempotency key.

The coordinator re-checks every streak submission against the same stored
state, so a client that bypasses this service cannot claim twice a day or
pick its own streak length.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Engine

from questledger.constants import is_valid_wallet_address
from questledger.database.engine import get_session, run_db
from questledger.engine.activity import ActivityResult, ActivityType
from questledger.engine.clock import Clock, SystemClock, as_utc
from questledger.engine.streak import (
    Eligible,
    StreakDecision,
    evaluate_streak,
    resolve_timezone,
)
from questledger.errors import ValidationError
from questledger.services.balance_service import get_or_create_streak, load_streak
from questledger.services.disbursement import DisbursementCoordinator, DisbursementOutcome

logger = logging.getLogger(__name__)


def store_timezone(engine: Engine, user_id: str, tz_name: str | None) -> None:
    with get_session(engine) as session:
        get_or_create_streak(session, user_id).timezone = tz_name


class StreakService:
    """Streak eligibility and claiming for one reward deployment.

    Timezone and grace window default to the coordinator's, so the
    eligibility shown to the user matches what the coordinator enforces.
    """

    def __init__(
        self,
        engine: Engine,
        coordinator: DisbursementCoordinator,
        *,
        default_tz: ZoneInfo | None = None,
        grace: timedelta | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._coordinator = coordinator
        self._default_tz = default_tz or coordinator.reference_tz
        self._grace = grace if grace is not None else coordinator.streak_grace
        self._clock = clock or SystemClock()

    async def evaluate(self, user_id: str, now: datetime | None = None) -> StreakDecision:
        """Is a streak grant due for *user_id* at *now*?  Read-only."""
        last, length, tz_name = await run_db(load_streak, self._engine, user_id)
        return evaluate_streak(
            last,
            length,
            now or self._clock.now(),
            resolve_timezone(tz_name, self._default_tz),
            self._grace,
        )

    async def claim(self, user_id: str) -> tuple[StreakDecision, DisbursementOutcome | None]:
        """Claim today's streak reward if eligible.

        Returns the decision and, when eligible, the disbursement outcome.
        A ``DUPLICATE`` outcome means another claim for the same local day
        won the race.
        """
        now = as_utc(self._clock.now())
        decision = await self.evaluate(user_id, now)
        if not isinstance(decision, Eligible):
            logger.debug(
                "Streak for %s not yet eligible (next at %s)", user_id, decision.next_eligible_at
            )
            return decision, None

        outcome = await self._coordinator.submit_activity(ActivityResult(
            user_id=user_id,
            activity_type=ActivityType.STREAK,
            activity_id=decision.local_date.isoformat(),
            performance_metrics={"streakLength": decision.new_streak_length},
            occurred_at=now,
        ))
        logger.info(
            "Streak claim for %s on %s → %s (length %d)",
            user_id, decision.local_date, outcome.status, decision.new_streak_length,
        )
        return decision, outcome

    async def set_timezone(self, user_id: str, tz_name: str | None) -> None:
        """Set (or clear, with None) the user's streak timezone."""
        if not is_valid_wallet_address(user_id):
            raise ValidationError("user_id", "must be a 0x-prefixed 64-hex wallet address")
        if tz_name is not None:
            try:
                ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValidationError("timezone", f"unknown timezone {tz_name!r}") from exc
        await run_db(store_timezone, self._engine, user_id, tz_name)
