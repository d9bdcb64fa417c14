"""
questledger.constants — Shared Constants & Helpers
===================================================

Single source of truth for the leveling formula, mystery-box rarity tiers,
token precision, and wallet-address validation.  Import from here instead
of duplicating in the engine and services.
"""

from __future__ import annotations

import re
from decimal import Decimal

# ---------------------------------------------------------------------------
# Token units
# ---------------------------------------------------------------------------
# Rewards are quoted in whole tokens with two decimal places; transfers are
# executed in base units (1 SUI = 10**9 MIST).
TOKEN_QUANTUM = Decimal("0.01")
BASE_UNITS_PER_TOKEN = 10**9


# ---------------------------------------------------------------------------
# Mystery-box rarity tiers (lowest → highest)
# ---------------------------------------------------------------------------
RARITY_ORDER: list[str] = ["common", "rare", "epic", "legendary"]


# ---------------------------------------------------------------------------
# Item grants
# ---------------------------------------------------------------------------
STREAK_MILESTONE_ITEM = "mystery_box:rare"


# ---------------------------------------------------------------------------
# Leveling formula — THE single canonical implementation
# ---------------------------------------------------------------------------
# XP needed to go from level N to N+1, for the first few levels.
LEVEL_XP_TABLE: list[int] = [500, 2500, 5000, 10000, 20000]


def level_for_xp(total_xp: int) -> int:
    """Return the level reached with *total_xp* lifetime XP.

    Each step consumes the XP required for that level; after the table runs
    out every further level costs double the previous one::

        L1→2: 500, L2→3: 2500, L3→4: 5000, L4→5: 10000, L5→6: 20000,
        L6→7: 40000, L7→8: 80000, ...
    """
    if total_xp <= 0:
        return 1

    remaining = total_xp
    level = 1
    for required in LEVEL_XP_TABLE:
        if remaining < required:
            return level
        remaining -= required
        level += 1

    required = LEVEL_XP_TABLE[-1] * 2
    while remaining >= required:
        remaining -= required
        level += 1
        required *= 2
    return level


# ---------------------------------------------------------------------------
# Wallet addresses
# ---------------------------------------------------------------------------
_SUI_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{64}$")


def is_valid_wallet_address(address: str) -> bool:
    """Return True if *address* looks like a Sui address (0x + 64 hex chars)."""
    if not address:
        return False
    return _SUI_ADDRESS_REGEX.match(address) is not None
