"""
core/retry.py
-------------
Exponential backoff policy shared by the job queue (publish, consume setup,
redelivery of failed jobs).
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    """
    Delay schedule for reconnect attempts.

    max_attempts=None means retry forever (used when starting consumers,
    which may wait indefinitely for the broker to come back).
    """

    max_attempts: Optional[int] = 10
    backoff_base: float = 1.0        # seconds
    backoff_multiplier: float = 2.0  # exponential factor
    max_backoff: float = 30.0        # cap

    def next_delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.backoff_base * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff)

    def should_retry(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt < self.max_attempts
