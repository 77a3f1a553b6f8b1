"""Exponential backoff with jitter for queued mutations"""

import random
from typing import Optional

from .. import config


class RetryPolicy:
    """
    Computes the delay before the next attempt of a failed item.

    delay = base * 2^(attempt-1), capped, then spread by +/- jitter.
    Quota errors multiply the delay and use a larger cap.
    """

    def __init__(
        self,
        base_delay_s: float = config.RETRY_BASE_DELAY_S,
        max_delay_s: float = config.RETRY_MAX_DELAY_S,
        jitter: float = config.RETRY_JITTER,
        quota_factor: float = config.QUOTA_BACKOFF_FACTOR,
        quota_max_delay_s: float = config.QUOTA_MAX_DELAY_S,
        max_attempts: int = config.MAX_SYNC_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ):
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.jitter = jitter
        self.quota_factor = quota_factor
        self.quota_max_delay_s = quota_max_delay_s
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()

    def delay_s(self, attempt: int, quota: bool = False) -> float:
        """Delay in seconds after the given (1-based) failed attempt."""
        attempt = max(1, attempt)
        # Bound the exponent so huge attempt counts cannot overflow
        exponential = self.base_delay_s * (2 ** min(attempt - 1, 32))
        capped = min(exponential, self.max_delay_s)
        if quota:
            capped = min(capped * self.quota_factor, self.quota_max_delay_s)

        spread = capped * self.jitter
        jittered = capped + self._rng.uniform(-spread, spread)
        return max(0.0, jittered)

    def next_attempt_at(self, now_ms: int, attempt: int, quota: bool = False) -> int:
        return now_ms + int(self.delay_s(attempt, quota) * 1000)

    def is_exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
