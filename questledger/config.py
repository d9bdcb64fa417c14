"""
questledger.config — YAML Configuration Loader
===============================================

**Why this file exists:**
This module reads ``config.yaml`` for **infrastructure-only** settings
(reference timezone, storage and transfer timeouts, retry policy, the
treasury gateway URL).  All reward tuning values (base tokens, caps,
difficulty multipliers, XP tables) live in the ``settings`` database
table and are read through :class:`~questledger.engine.cache.ConfigCache`.

Secrets (``DATABASE_URL``, ``TREASURY_API_TOKEN``) never go in the YAML
file — they come from ``.env``.

Usage::

    from questledger.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.app_name)              # "Blazo Academy"
    print(cfg.retry.max_attempts)    # 3
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Capped exponential backoff for token transfers."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 8.0

    # Pending entries untouched for this long are picked up by reconciliation
    # (and may be retried by a resubmission of the same activity).
    retry_window_seconds: float = 300.0


@dataclass(frozen=True, slots=True)
class TransferConfig:
    """Treasury payout gateway used by :class:`HttpTransferService`."""

    gateway_url: str = ""
    timeout_seconds: float = 10.0
    network: str = "testnet"


@dataclass(frozen=True, slots=True)
class QuestLedgerConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str

    # Streak calendar days are counted in this timezone unless the user
    # has their own.
    reference_timezone: str = "UTC"

    # Every ledger/profile call is bounded by this timeout.
    storage_timeout_seconds: float = 5.0

    # Background reconciliation pass period.
    reconciliation_interval_seconds: int = 300

    # Streak grace window (hours) before a streak resets to 1.
    streak_grace_hours: int = 48

    transfer: TransferConfig = field(default_factory=TransferConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.reference_timezone)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> QuestLedgerConfig:
    """Read *path* and return a :class:`QuestLedgerConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``reference_timezone`` is not a known IANA zone.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return parse_config(raw)


def parse_config(raw: dict) -> QuestLedgerConfig:
    """Build a :class:`QuestLedgerConfig` from an already-parsed mapping."""
    transfer_raw = raw.get("transfer") or {}
    retry_raw = raw.get("retry") or {}

    tz_name = str(raw.get("reference_timezone", "UTC"))
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown reference_timezone: {tz_name!r}") from exc

    return QuestLedgerConfig(
        app_name=raw["app_name"],
        reference_timezone=tz_name,
        storage_timeout_seconds=float(raw.get("storage_timeout_seconds", 5.0)),
        reconciliation_interval_seconds=int(
            raw.get("reconciliation_interval_seconds", 300)
        ),
        streak_grace_hours=int(raw.get("streak_grace_hours", 48)),
        transfer=TransferConfig(
            gateway_url=str(transfer_raw.get("gateway_url", "")),
            timeout_seconds=float(transfer_raw.get("timeout_seconds", 10.0)),
            network=str(transfer_raw.get("network", "testnet")),
        ),
        retry=RetryConfig(
            max_attempts=int(retry_raw.get("max_attempts", 3)),
            base_delay_seconds=float(retry_raw.get("base_delay_seconds", 1.0)),
            multiplier=float(retry_raw.get("multiplier", 2.0)),
            max_delay_seconds=float(retry_raw.get("max_delay_seconds", 8.0)),
            retry_window_seconds=float(retry_raw.get("retry_window_seconds", 300.0)),
        ),
    )
