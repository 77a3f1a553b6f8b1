"""
Unit tests for retry backoff
"""

import random

import pytest

from thermalsync.sync.backoff import RetryPolicy


class TestRetryPolicy:
    """Test exponential backoff, caps, jitter and the retry budget."""

    @pytest.mark.parametrize("attempt,expected", [(1, 1.0), (2, 2.0), (3, 4.0), (6, 32.0), (7, 60.0), (50, 60.0)])
    def test_exponential_delay_is_capped(self, attempt, expected):
        policy = RetryPolicy(base_delay_s=1, max_delay_s=60, jitter=0.0)
        assert policy.delay_s(attempt) == expected

    def test_quota_backs_off_harder(self):
        policy = RetryPolicy(base_delay_s=1, max_delay_s=60, jitter=0.0, quota_factor=4, quota_max_delay_s=300)
        assert policy.delay_s(1, quota=True) == 4.0
        assert policy.delay_s(3, quota=True) == 16.0
        assert policy.delay_s(20, quota=True) == 240.0

    def test_quota_cap(self):
        policy = RetryPolicy(base_delay_s=10, max_delay_s=200, jitter=0.0, quota_factor=4, quota_max_delay_s=300)
        assert policy.delay_s(10, quota=True) == 300.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay_s=1, max_delay_s=60, jitter=0.2, rng=random.Random(42))
        samples = [policy.delay_s(4) for _ in range(200)]
        assert all(6.4 <= s <= 9.6 for s in samples)
        assert len(set(samples)) > 1

    def test_next_attempt_at(self):
        policy = RetryPolicy(base_delay_s=1, jitter=0.0)
        assert policy.next_attempt_at(1_000, 2) == 3_000

    def test_retry_budget(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.is_exhausted(2)
        assert policy.is_exhausted(3)
