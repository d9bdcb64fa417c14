"""
questledger.engine.activity — ActivityResult and ActivityType
==============================================================

The universal completion envelope.  Every game, quiz, daily challenge,
mystery-box opening and streak claim is normalized into an
:class:`ActivityResult` before the disbursement coordinator sees it.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime

from questledger.constants import RARITY_ORDER, is_valid_wallet_address
from questledger.errors import ValidationError

__all__ = ["ActivityResult", "ActivityType", "DIFFICULTIES", "validate_activity"]

DIFFICULTIES: tuple[str, ...] = ("easy", "medium", "hard")

MAX_ACTIVITY_ID_LENGTH = 128


class ActivityType(enum.StrEnum):
    """Activity families that can earn rewards."""
    GAME = "game"
    QUIZ = "quiz"
    CHALLENGE = "challenge"
    MYSTERY_BOX = "mysteryBox"
    STREAK = "streak"


# ---------------------------------------------------------------------------
# ActivityResult — the universal completion envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ActivityResult:
    """A completed user activity.

    ``(user_id, activity_type, activity_id)`` is the natural idempotency
    key: the same completion is paid at most once no matter how many times
    it is submitted.

    ``activity_type`` is usually an :class:`ActivityType`, but plain strings
    from newer clients are accepted and simply earn nothing until the
    calculator learns about them.
    """

    user_id: str
    activity_type: ActivityType | str
    activity_id: str
    performance_metrics: dict[str, float] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    difficulty: str | None = None
    rarity: str | None = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.user_id}:{self.activity_type}:{self.activity_id}"

    @property
    def tier(self) -> str | None:
        """Rarity for mystery boxes, difficulty for everything else."""
        return self.rarity or self.difficulty


def _normalize_type(value: ActivityType | str) -> ActivityType | str:
    if isinstance(value, ActivityType):
        return value
    try:
        return ActivityType(value)
    except ValueError:
        return value


def validate_activity(result: ActivityResult) -> ActivityResult:
    """Check *result* and return a normalized copy.

    Raises
    ------
    ValidationError
        On any structural problem.  Nothing has been reserved yet when this
        is raised, so the caller can fix and resubmit.
    """
    if not is_valid_wallet_address(result.user_id):
        raise ValidationError("user_id", "must be a 0x-prefixed 64-hex wallet address")

    if not isinstance(result.activity_type, str) or not result.activity_type.strip():
        raise ValidationError("activity_type", "must be a non-empty string")
    if ":" in result.activity_type:
        raise ValidationError("activity_type", "must not contain ':'")

    activity_id = result.activity_id
    if not isinstance(activity_id, str) or not activity_id.strip():
        raise ValidationError("activity_id", "must be a non-empty string")
    if len(activity_id) > MAX_ACTIVITY_ID_LENGTH:
        raise ValidationError(
            "activity_id", f"must be at most {MAX_ACTIVITY_ID_LENGTH} characters"
        )

    metrics: dict[str, float] = {}
    for key, value in (result.performance_metrics or {}).items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"performance_metrics.{key}", "must be a number")
        if not math.isfinite(value) or value < 0:
            raise ValidationError(
                f"performance_metrics.{key}", "must be finite and non-negative"
            )
        metrics[str(key)] = value

    if not isinstance(result.occurred_at, datetime) or result.occurred_at.tzinfo is None:
        raise ValidationError("occurred_at", "must be a timezone-aware datetime")

    if result.difficulty is not None and result.difficulty not in DIFFICULTIES:
        raise ValidationError("difficulty", f"must be one of {', '.join(DIFFICULTIES)}")

    activity_type = _normalize_type(result.activity_type)
    if result.rarity is not None and result.rarity not in RARITY_ORDER:
        raise ValidationError("rarity", f"must be one of {', '.join(RARITY_ORDER)}")
    if activity_type == ActivityType.MYSTERY_BOX and result.rarity is None:
        raise ValidationError("rarity", "is required for mystery boxes")

    return ActivityResult(
        user_id=result.user_id,
        activity_type=activity_type,
        activity_id=activity_id,
        performance_metrics=metrics,
        occurred_at=result.occurred_at.astimezone(UTC),
        difficulty=result.difficulty,
        rarity=result.rarity,
    )
