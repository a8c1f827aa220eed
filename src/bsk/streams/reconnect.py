"""Reconnect policy for stream sessions.

Exponential backoff with a cap and ±jitter, bounded by an attempt budget
per outage. The attempt counter resets once a session has stayed OPEN for
``stability_threshold`` seconds, so a connection that flaps quickly keeps
backing off while one that recovered properly starts fresh next time.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from bsk.config import StreamSettings


@dataclass
class ReconnectPolicy:
    """Backoff schedule and attempt budget.

    Times passed to ``mark_open``/``on_drop`` are monotonic seconds.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.3
    max_attempts: int = 10
    stability_threshold: float = 60.0
    rng: random.Random = field(default_factory=random.Random, repr=False)
    attempts: int = 0
    _opened_at: float | None = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: StreamSettings) -> ReconnectPolicy:
        return cls(
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            multiplier=settings.reconnect_multiplier,
            jitter=settings.reconnect_jitter,
            max_attempts=settings.reconnect_max_attempts,
            stability_threshold=settings.stability_threshold,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> float:
        """Delay before the next attempt; consumes one attempt.

        Returns:
            Delay in seconds
        """
        delay = min(self.base_delay * (self.multiplier**self.attempts), self.max_delay)
        self.attempts += 1
        if self.jitter:
            delay += delay * self.jitter * self.rng.uniform(-1.0, 1.0)
        return max(0.0, delay)

    def mark_open(self, now: float) -> None:
        """Record that the session reached OPEN."""
        self._opened_at = now

    def on_drop(self, now: float) -> None:
        """Record a connection loss; resets the budget after a stable period."""
        if self._opened_at is not None and now - self._opened_at >= self.stability_threshold:
            self.attempts = 0
        self._opened_at = None

    def reset(self) -> None:
        self.attempts = 0
        self._opened_at = None
