"""
questledger.engine.reward — Reward Calculation Pipeline
========================================================

Pure calculation.  No DB I/O, no transfer I/O, no randomness: identical
inputs always produce an identical :class:`RewardBundle`.  Mystery-box
draws are made by the caller and passed in as ``roll`` / ``itemRoll``
metrics.

Pipeline for score-based activities:
  metrics → Performance ratio → Difficulty → Blend → Threshold → Cap → Round → RewardBundle

The calculator is total: an unrecognized activity type yields a zero
bundle carrying a ``diagnostic`` instead of raising.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from questledger.constants import RARITY_ORDER, STREAK_MILESTONE_ITEM, TOKEN_QUANTUM
from questledger.engine.activity import DIFFICULTIES, ActivityType

if TYPE_CHECKING:
    from questledger.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

__all__ = [
    "RewardBundle",
    "compute",
    "difficulty_multiplier",
    "performance_ratio",
    "token_cap",
]

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HALF = Decimal("0.5")

# Metric pairs tried in order when deriving a performance ratio.
RATIO_METRICS: list[tuple[str, str]] = [
    ("score", "maxScore"),
    ("correctCount", "totalQuestions"),
    ("bugsFound", "bugsTotal"),
]

# Quizzes without an explicit question count are ten questions long.
DEFAULT_QUESTION_COUNT = 10

# Numeric difficulty codes accepted in metrics["difficulty"].
_DIFFICULTY_CODES = {0: "easy", 1: "medium", 2: "hard"}


# ---------------------------------------------------------------------------
# RewardBundle — output of the pipeline
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardBundle:
    """XP, tokens and an optional item for one completed activity."""

    xp: int = 0
    token_amount: Decimal = Decimal("0.00")
    item_grant: str | None = None
    diagnostic: str | None = None

    @property
    def has_tokens(self) -> bool:
        return self.token_amount > 0

    @property
    def is_empty(self) -> bool:
        return self.xp == 0 and not self.has_tokens and self.item_grant is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _num(metrics: Mapping[str, object], key: str) -> Decimal | None:
    value = metrics.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return Decimal(str(value))


def _clamp(value: Decimal, lo: Decimal = _ZERO, hi: Decimal = _ONE) -> Decimal:
    return max(lo, min(hi, value))


def _round_tokens(value: Decimal) -> Decimal:
    return value.quantize(TOKEN_QUANTUM, rounding=ROUND_HALF_UP)


def _round_xp(value: Decimal) -> int:
    return max(0, int(value.quantize(_ONE, rounding=ROUND_HALF_UP)))


def performance_ratio(metrics: Mapping[str, object], default: Decimal = _ZERO) -> Decimal:
    """Normalized performance in ``[0, 1]``.

    Uses the first metric pair present in :data:`RATIO_METRICS`; falls back
    to *default* when none is usable.
    """
    for numerator_key, denominator_key in RATIO_METRICS:
        numerator = _num(metrics, numerator_key)
        if numerator is None:
            continue
        denominator = _num(metrics, denominator_key)
        if denominator is None and numerator_key == "correctCount":
            denominator = Decimal(DEFAULT_QUESTION_COUNT)
        if denominator is None or denominator <= 0:
            continue
        return _clamp(numerator / denominator)
    return _clamp(default)


def difficulty_multiplier(
    cache: ConfigCache,
    difficulty: str | None,
    metrics: Mapping[str, object] | None = None,
) -> Decimal:
    """Multiplier for *difficulty*; medium when unknown.

    A numeric ``metrics["difficulty"]`` (0 easy, 1 medium, 2 hard) is used
    when no named difficulty is given.
    """
    if difficulty not in DIFFICULTIES and metrics is not None:
        code = _num(metrics, "difficulty")
        if code is not None:
            difficulty = _DIFFICULTY_CODES.get(int(code))
    if difficulty not in DIFFICULTIES:
        difficulty = "medium"
    return cache.get_decimal(f"difficulty.{difficulty}", _ONE)


def token_cap(activity_type: ActivityType | str, cache: ConfigCache, tier: str | None = None) -> Decimal:
    """Configured per-activity token maximum (rounded down to the quantum)."""
    if activity_type == ActivityType.MYSTERY_BOX:
        bounds = cache.get_range(f"mystery_box.{tier or 'common'}.tokens")
        cap = bounds[1] if bounds else _ZERO
    elif activity_type == ActivityType.STREAK:
        cap = _ZERO
    else:
        cap = cache.get_decimal(f"{activity_type}.max_tokens", _ZERO)
    return max(_ZERO, cap.quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN))


# ---------------------------------------------------------------------------
# Per-activity stages
# ---------------------------------------------------------------------------
def _scored_tokens(
    prefix: str,
    ratio: Decimal,
    multiplier: Decimal,
    cap: Decimal,
    cache: ConfigCache,
) -> Decimal:
    """Blend, gate, cap and round the token reward for a scored activity."""
    min_ratio = cache.get_decimal(f"{prefix}.min_ratio", _ZERO)
    if ratio < min_ratio:
        return Decimal("0.00")

    base = cache.get_decimal(f"{prefix}.base_tokens", _ZERO)
    raw = base * multiplier * (_HALF + _HALF * ratio)
    return min(_round_tokens(_clamp(raw, _ZERO, cap)), cap)


def _quiz(metrics, cache, difficulty) -> RewardBundle:
    ratio = performance_ratio(metrics)
    multiplier = difficulty_multiplier(cache, difficulty, metrics)
    correct = _num(metrics, "correctCount") or _ZERO

    xp = (cache.get_decimal("quiz.base_xp") + cache.get_decimal("quiz.xp_per_correct") * correct) * multiplier
    tokens = _scored_tokens(
        "quiz", ratio, multiplier, token_cap(ActivityType.QUIZ, cache), cache,
    )
    return RewardBundle(xp=_round_xp(xp), token_amount=tokens)


def _game(metrics, cache, difficulty) -> RewardBundle:
    ratio = performance_ratio(metrics)
    multiplier = difficulty_multiplier(cache, difficulty, metrics)

    xp = cache.get_decimal("game.base_xp") * multiplier * (_HALF + _HALF * ratio)
    tokens = _scored_tokens(
        "game", ratio, multiplier, token_cap(ActivityType.GAME, cache), cache,
    )
    return RewardBundle(xp=_round_xp(xp), token_amount=tokens)


def _challenge(metrics, cache, difficulty) -> RewardBundle:
    # A completed challenge with no score counts as a perfect run.
    ratio = performance_ratio(metrics, default=_ONE)
    multiplier = difficulty_multiplier(cache, difficulty, metrics)

    xp = cache.get_decimal("challenge.base_xp") * multiplier
    tokens = _scored_tokens(
        "challenge", ratio, multiplier, token_cap(ActivityType.CHALLENGE, cache), cache,
    )
    return RewardBundle(xp=_round_xp(xp), token_amount=tokens)


def _streak(metrics, cache) -> RewardBundle:
    length = int(_num(metrics, "streakLength") or _ONE)
    xp = cache.get_int("streak.xp")
    item = None

    every = cache.get_int("streak.milestone_every")
    if every > 0 and length > 0 and length % every == 0:
        xp += cache.get_int("streak.milestone_xp")
        item = STREAK_MILESTONE_ITEM

    return RewardBundle(xp=max(0, xp), item_grant=item)


def _mystery_box(metrics, cache, rarity) -> RewardBundle:
    if rarity not in RARITY_ORDER:
        return RewardBundle(diagnostic=f"unknown mystery box rarity {rarity!r}")

    # Draws live in [0, 1); clamp just below 1 so the max is never exceeded.
    roll = _clamp(_num(metrics, "roll") or _ZERO, _ZERO, Decimal("0.999999"))
    item_roll = _clamp(_num(metrics, "itemRoll") or _ZERO)

    tokens = Decimal("0.00")
    token_range = cache.get_range(f"mystery_box.{rarity}.tokens")
    if token_range is not None:
        lo, hi = token_range
        cap = token_cap(ActivityType.MYSTERY_BOX, cache, rarity)
        tokens = min(_round_tokens(lo + (hi - lo) * roll), cap)

    xp = 0
    xp_range = cache.get_range(f"mystery_box.{rarity}.xp")
    if xp_range is not None:
        lo, hi = xp_range
        xp = int(lo + ((hi - lo) * roll).to_integral_value(rounding=ROUND_DOWN))

    item = None
    chance = cache.get_decimal(f"mystery_box.{rarity}.item_chance", _ZERO)
    item_ref = cache.get_str(f"mystery_box.{rarity}.item")
    if item_ref and chance > 0 and item_roll >= _ONE - chance:
        item = item_ref

    return RewardBundle(xp=max(0, xp), token_amount=tokens, item_grant=item)


# ---------------------------------------------------------------------------
# Full calculation pipeline
# ---------------------------------------------------------------------------
def compute(
    activity_type: ActivityType | str,
    metrics: Mapping[str, object],
    cache: ConfigCache,
    *,
    tier: str | None = None,
) -> RewardBundle:
    """Map a completed activity to its :class:`RewardBundle`.

    This is a PURE function — no DB or network I/O.  All tuning values are
    read from *cache* (the ``settings`` table).

    Parameters
    ----------
    activity_type : which kind of activity was completed
    metrics : numeric performance metrics (score, correctCount, roll, ...)
    cache : settings cache for bases, caps and multipliers
    tier : difficulty (easy/medium/hard) or, for mystery boxes, rarity
    """
    metrics = metrics or {}

    if activity_type == ActivityType.QUIZ:
        return _quiz(metrics, cache, tier)
    if activity_type == ActivityType.GAME:
        return _game(metrics, cache, tier)
    if activity_type == ActivityType.CHALLENGE:
        return _challenge(metrics, cache, tier)
    if activity_type == ActivityType.STREAK:
        return _streak(metrics, cache)
    if activity_type == ActivityType.MYSTERY_BOX:
        return _mystery_box(metrics, cache, tier)

    diagnostic = f"unrecognized activity type {activity_type!r}"
    logger.warning("Reward calculator: %s — zero bundle", diagnostic)
    return RewardBundle(diagnostic=diagnostic)
