"""Retry policy for REST calls.

A request is retried when the venue is throttling (429/418), failing
(5xx) or unreachable. Any other venue error carries an error code the
caller has to act on, so it is raised immediately. Delays grow
exponentially with ±jitter up to a cap and never undercut the server's
Retry-After.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from bsk.errors import ApiError, NetworkError, RateLimitError, ServerError


@dataclass
class RetryPolicy:
    """Backoff schedule and retry budget for one RestClient."""

    max_retries: int = 3
    base_delay: float = 0.25
    max_delay: float = 3.0
    multiplier: float = 2.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * self.rng.uniform(-1.0, 1.0)
        return max(0.0, delay)

    def delay_for(self, error: Exception, attempt: int) -> float:
        """Backoff for ``attempt``, raised to the server's Retry-After if longer."""
        delay = self.backoff(attempt)
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay


@dataclass
class RestCallStats:
    """Aggregate counters for REST calls made by one client."""

    total_calls: int = 0
    total_retries: int = 0
    total_rate_limited: int = 0
    total_5xx: int = 0
    total_errors: int = 0


def classify_error(error: Exception) -> tuple[bool, str]:
    """Sort a failed call into (retryable, category).

    Categories are "rate_limit", "server", "timeout", "network", "venue"
    and "other".
    """
    if isinstance(error, RateLimitError):
        return True, "rate_limit"
    if isinstance(error, ServerError):
        return True, "server"
    if isinstance(error, NetworkError):
        return True, "timeout" if "timed out" in str(error) else "network"
    if isinstance(error, ApiError):
        return False, "venue"
    return False, "other"
