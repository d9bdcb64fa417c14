"""
tests/test_reward_engine.py — Unit Tests for the Reward Calculator
===================================================================

Tests the pure calculation pipeline (no I/O, no database).  Settings come
from a detached ConfigCache, which falls back to the seeded defaults.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from questledger.engine.activity import ActivityType
from questledger.engine.cache import ConfigCache
from questledger.engine.reward import (
    RewardBundle,
    compute,
    difficulty_multiplier,
    performance_ratio,
    token_cap,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def defaults():
    """Empty cache → every lookup uses the seeded default."""
    return ConfigCache.from_mapping({})


# ---------------------------------------------------------------------------
# Test: performance ratio
# ---------------------------------------------------------------------------
class TestPerformanceRatio:
    def test_score_over_max_score(self):
        assert performance_ratio({"score": 30, "maxScore": 40}) == Decimal("0.75")

    def test_correct_count_defaults_to_ten_questions(self):
        assert performance_ratio({"correctCount": 9}) == Decimal("0.9")

    def test_bugs_found_ratio(self):
        assert performance_ratio({"bugsFound": 3, "bugsTotal": 4}) == Decimal("0.75")

    def test_clamped_to_one(self):
        assert performance_ratio({"score": 150, "maxScore": 100}) == Decimal("1")

    def test_zero_denominator_falls_through(self):
        assert performance_ratio({"score": 5, "maxScore": 0}) == Decimal("0")

    def test_default_when_no_metrics(self):
        assert performance_ratio({}, default=Decimal("1")) == Decimal("1")


class TestDifficulty:
    def test_named_difficulties(self, defaults):
        assert difficulty_multiplier(defaults, "easy") == Decimal("0.5")
        assert difficulty_multiplier(defaults, "hard") == Decimal("2.0")

    def test_unknown_is_medium(self, defaults):
        assert difficulty_multiplier(defaults, None) == Decimal("1.0")

    def test_numeric_code_in_metrics(self, defaults):
        assert difficulty_multiplier(defaults, None, {"difficulty": 2}) == Decimal("2.0")


# ---------------------------------------------------------------------------
# Test: quiz
# ---------------------------------------------------------------------------
class TestQuiz:
    def test_nine_of_ten_medium(self, defaults):
        bundle = compute(
            ActivityType.QUIZ, {"correctCount": 9, "totalQuestions": 10}, defaults, tier="medium"
        )
        assert bundle.token_amount == Decimal("0.05")
        assert bundle.xp == 50 + 15 * 9
        assert bundle.item_grant is None
        assert bundle.diagnostic is None

    def test_below_threshold_earns_no_tokens(self, defaults):
        bundle = compute(ActivityType.QUIZ, {"correctCount": 7, "totalQuestions": 10}, defaults)
        assert bundle.token_amount == Decimal("0.00")
        assert bundle.xp == 155

    def test_hard_perfect_is_capped(self, defaults):
        bundle = compute(
            ActivityType.QUIZ, {"correctCount": 10, "totalQuestions": 10}, defaults, tier="hard"
        )
        assert bundle.token_amount == Decimal("0.07")
        assert bundle.xp == 400

    def test_easy_rounds_half_up(self, defaults):
        bundle = compute(
            ActivityType.QUIZ, {"correctCount": 10, "totalQuestions": 10}, defaults, tier="easy"
        )
        assert bundle.token_amount == Decimal("0.03")
        assert bundle.xp == 100

    def test_cap_respected_for_any_settings(self):
        cache = ConfigCache.from_mapping({
            "quiz.base_tokens": 5,
            "quiz.max_tokens": 0.075,
        })
        bundle = compute(ActivityType.QUIZ, {"correctCount": 10}, cache, tier="hard")
        # Cap is floored to the two-decimal quantum.
        assert bundle.token_amount == Decimal("0.07")


# ---------------------------------------------------------------------------
# Test: games and challenges
# ---------------------------------------------------------------------------
class TestGameAndChallenge:
    def test_game_blends_performance(self, defaults):
        bundle = compute(ActivityType.GAME, {"score": 50, "maxScore": 100}, defaults)
        assert bundle.token_amount == Decimal("0.04")
        assert bundle.xp == 75

    def test_game_zero_score_still_earns_half(self, defaults):
        bundle = compute(ActivityType.GAME, {"score": 0, "maxScore": 100}, defaults)
        assert bundle.xp == 50
        assert bundle.token_amount == Decimal("0.03")

    @pytest.mark.parametrize(
        "tier, xp, tokens",
        [("easy", 50, "0.05"), ("medium", 100, "0.10"), ("hard", 200, "0.20")],
    )
    def test_challenge_by_difficulty(self, defaults, tier, xp, tokens):
        bundle = compute(ActivityType.CHALLENGE, {}, defaults, tier=tier)
        assert bundle.xp == xp
        assert bundle.token_amount == Decimal(tokens)


# ---------------------------------------------------------------------------
# Test: streaks
# ---------------------------------------------------------------------------
class TestStreak:
    def test_ordinary_day(self, defaults):
        bundle = compute(ActivityType.STREAK, {"streakLength": 3}, defaults)
        assert bundle == RewardBundle(xp=25)

    def test_weekly_milestone_grants_item(self, defaults):
        bundle = compute(ActivityType.STREAK, {"streakLength": 14}, defaults)
        assert bundle.xp == 125
        assert bundle.item_grant == "mystery_box:rare"
        assert not bundle.has_tokens


# ---------------------------------------------------------------------------
# Test: mystery boxes
# ---------------------------------------------------------------------------
class TestMysteryBox:
    def test_common_low_roll(self, defaults):
        bundle = compute(ActivityType.MYSTERY_BOX, {"roll": 0}, defaults, tier="common")
        assert bundle.token_amount == Decimal("0.01")
        assert bundle.xp == 70
        assert bundle.item_grant is None

    def test_legendary_top_roll_stays_within_range(self, defaults):
        bundle = compute(
            ActivityType.MYSTERY_BOX, {"roll": 0.9999999, "itemRoll": 0.95},
            defaults, tier="legendary",
        )
        assert bundle.token_amount == Decimal("0.08")
        assert bundle.token_amount <= token_cap(ActivityType.MYSTERY_BOX, defaults, "legendary")
        assert bundle.xp == 499
        assert bundle.item_grant == "badge:legendary"

    def test_item_roll_below_chance_grants_nothing(self, defaults):
        bundle = compute(
            ActivityType.MYSTERY_BOX, {"roll": 0.5, "itemRoll": 0.5}, defaults, tier="rare"
        )
        assert bundle.item_grant is None

    def test_unknown_rarity_is_zero_with_diagnostic(self, defaults):
        bundle = compute(ActivityType.MYSTERY_BOX, {"roll": 0.5}, defaults, tier="mythic")
        assert bundle.is_empty
        assert "rarity" in bundle.diagnostic


# ---------------------------------------------------------------------------
# Test: totality and determinism
# ---------------------------------------------------------------------------
class TestCompute:
    def test_same_inputs_same_bundle(self, defaults):
        metrics = {"score": 7, "maxScore": 9}
        first = compute(ActivityType.GAME, metrics, defaults, tier="hard")
        second = compute(ActivityType.GAME, dict(metrics), defaults, tier="hard")
        assert first == second

    def test_unknown_type_returns_zero_bundle(self, defaults):
        bundle = compute("speedrun", {"score": 10}, defaults)
        assert bundle.is_empty
        assert "speedrun" in bundle.diagnostic

    def test_tokens_are_two_decimal_places(self, defaults):
        bundle = compute(ActivityType.GAME, {"score": 1, "maxScore": 3}, defaults)
        assert bundle.token_amount == bundle.token_amount.quantize(Decimal("0.01"))
