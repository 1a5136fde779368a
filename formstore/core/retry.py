"""
Retry policy with exponential backoff for transient statement failures.

Delay = min(base_delay * (multiplier ** attempt), max_delay) +/- jitter
"""

import random
from dataclasses import dataclass

from formstore.core.errors import QueryError


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with optional jitter.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay: Initial delay in seconds
        max_delay: Delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness so concurrent callers do not retry in lockstep
        jitter_range: Jitter as a fraction of the delay (0.0-1.0)
    """

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0 = first retry)."""
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)
        return delay

    def should_retry(self, attempt: int, error: Exception) -> bool:
        """Only transient QueryErrors are retried, and only *max_retries* times."""
        if attempt >= self.max_retries:
            return False
        return isinstance(error, QueryError) and error.transient


NO_RETRY = RetryPolicy(max_retries=0)
