"""
QuestLedger — Reward Reconciliation Core for a Gamified Learning App
=====================================================================
Turns completed lessons, quizzes, mini-games, daily challenges, mystery
boxes and login streaks into XP, token and item rewards — exactly once —
backed by a durable ledger and an external token-transfer service.

Package layout::

    questledger/
    ├── __main__.py        # Reconciliation worker (python -m questledger)
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Level formula, rarity tiers, shared keys
    ├── errors.py          # RewardError hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # Ledger, balances, streaks, settings
    │   └── seed.py        # Default reward tuning settings
    ├── engine/
    │   ├── activity.py    # ActivityResult envelope + validation
    │   ├── reward.py      # Pure reward calculator
    │   ├── streak.py      # Pure streak eligibility rules
    │   ├── backoff.py     # Capped exponential backoff policy
    │   ├── clock.py       # Injectable time source
    │   └── cache.py       # In-memory settings cache
    └── services/
        ├── ledger_service.py         # Ledger store + idempotency guard
        ├── balance_service.py        # Exactly-once balance application
        ├── transfer.py               # Token transfer collaborator
        ├── disbursement.py           # Disbursement coordinator
        ├── streak_service.py         # Daily streak gate
        └── reconciliation_service.py # Offline balance repair
"""

__version__ = "0.1.0"
