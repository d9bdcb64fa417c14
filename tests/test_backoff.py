"""
tests/test_backoff.py — Capped Exponential Backoff
===================================================
"""

from __future__ import annotations

import pytest

from questledger.config import RetryConfig
from questledger.engine.backoff import BackoffPolicy


class TestBackoffPolicy:
    def test_delays_double_until_capped(self):
        policy = BackoffPolicy(max_attempts=6, base_delay=1.0, multiplier=2.0, max_delay=8.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_max_attempts_counts_first_call(self):
        policy = BackoffPolicy(max_attempts=3)
        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_single_attempt_never_retries(self):
        assert not BackoffPolicy(max_attempts=1).should_retry(1)

    def test_from_config(self):
        policy = BackoffPolicy.from_config(
            RetryConfig(max_attempts=4, base_delay_seconds=0.5, multiplier=3.0, max_delay_seconds=2.0)
        )
        assert policy.max_attempts == 4
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.5, 2.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            BackoffPolicy(max_attempts=0)
