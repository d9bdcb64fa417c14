"""
questledger.database.seed — Default Reward Settings Seeder
===========================================================

Baseline reward tuning seeded on first startup so the calculator produces
the learning app's published payouts out of the box.

Idempotent — only inserts keys that don't already exist.  Settings edited
later by operators are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from questledger.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    # Difficulty multipliers (applied before the cap)
    "difficulty.easy": (0.5, "difficulty", "Multiplier for easy activities"),
    "difficulty.medium": (1.0, "difficulty", "Multiplier for medium activities"),
    "difficulty.hard": (2.0, "difficulty", "Multiplier for hard activities"),

    # Quiz (Race Your Knowledge and lesson quizzes)
    "quiz.base_tokens": (0.05, "quiz", "Base token reward for a quiz"),
    "quiz.max_tokens": (0.07, "quiz", "Token cap for a single quiz"),
    "quiz.base_xp": (50, "quiz", "XP for completing a quiz"),
    "quiz.xp_per_correct": (15, "quiz", "XP per correct answer"),
    "quiz.min_ratio": (0.8, "quiz", "Minimum correct ratio to earn tokens"),

    # Mini-games
    "game.base_tokens": (0.05, "game", "Base token reward for a mini-game"),
    "game.max_tokens": (0.07, "game", "Token cap for a single mini-game"),
    "game.base_xp": (100, "game", "Base XP for a mini-game"),
    "game.min_ratio": (0.0, "game", "Minimum performance ratio to earn tokens"),

    # Daily challenges
    "challenge.base_tokens": (0.1, "challenge", "Base token reward for a daily challenge"),
    "challenge.max_tokens": (0.2, "challenge", "Token cap for a daily challenge"),
    "challenge.base_xp": (100, "challenge", "XP for a medium daily challenge"),
    "challenge.min_ratio": (0.0, "challenge", "Minimum score ratio to earn tokens"),

    # Daily streak
    "streak.xp": (25, "streak", "XP per daily streak day"),
    "streak.milestone_every": (7, "streak", "Milestone every N streak days"),
    "streak.milestone_xp": (100, "streak", "Bonus XP on a streak milestone"),

    # Mystery boxes: per-rarity (min, max) ranges and item odds
    "mystery_box.common.tokens": ([0.01, 0.014], "mystery_box", "Token range for common boxes"),
    "mystery_box.common.xp": ([70, 150], "mystery_box", "XP range for common boxes"),
    "mystery_box.common.item_chance": (0.0, "mystery_box", "Chance of a bonus item"),
    "mystery_box.common.item": ("", "mystery_box", "Bonus item for common boxes"),
    "mystery_box.rare.tokens": ([0.03, 0.045], "mystery_box", "Token range for rare boxes"),
    "mystery_box.rare.xp": ([150, 300], "mystery_box", "XP range for rare boxes"),
    "mystery_box.rare.item_chance": (0.1, "mystery_box", "Chance of a bonus item"),
    "mystery_box.rare.item": ("cosmetic:rare_avatar_frame", "mystery_box", "Bonus item for rare boxes"),
    "mystery_box.epic.tokens": ([0.04, 0.06], "mystery_box", "Token range for epic boxes"),
    "mystery_box.epic.xp": ([200, 350], "mystery_box", "XP range for epic boxes"),
    "mystery_box.epic.item_chance": (0.2, "mystery_box", "Chance of a bonus item"),
    "mystery_box.epic.item": ("cosmetic:epic_avatar_frame", "mystery_box", "Bonus item for epic boxes"),
    "mystery_box.legendary.tokens": ([0.05, 0.08], "mystery_box", "Token range for legendary boxes"),
    "mystery_box.legendary.xp": ([300, 500], "mystery_box", "XP range for legendary boxes"),
    "mystery_box.legendary.item_chance": (0.3, "mystery_box", "Chance of a bonus item"),
    "mystery_box.legendary.item": ("badge:legendary", "mystery_box", "Bonus item for legendary boxes"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist.

    Runs on every startup but only writes rows for keys that are missing,
    so it is safe to call repeatedly.
    """
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
