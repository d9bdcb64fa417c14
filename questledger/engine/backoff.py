"""
questledger.engine.backoff — Capped Exponential Backoff
========================================================

Replaces fixed sleeps between retries with a policy object parameterized by
attempt number.  Sleeping is done by the caller through a
:class:`~questledger.engine.clock.Clock`, so the policy itself is pure.
"""

from __future__ import annotations

from dataclasses import dataclass

from questledger.config import RetryConfig


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """``delay(n) = min(base * multiplier ** (n - 1), max_delay)``.

    ``max_attempts`` counts the first try, so ``max_attempts=3`` means one
    call plus two retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> BackoffPolicy:
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay_seconds,
            multiplier=cfg.multiplier,
            max_delay=cfg.max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after attempt number *attempt*."""
        return attempt < self.max_attempts
