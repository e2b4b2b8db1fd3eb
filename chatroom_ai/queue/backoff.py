"""
queue/backoff.py
----------------
Retry policy owned by the worker pool.

The policy only computes numbers; the delay is applied by rescheduling the
job in the queue, so no worker ever sleeps through a backoff.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.multiplier < 1:
            raise ValueError("base_delay must be >= 0 and multiplier >= 1")

    def should_retry(self, attempt: int) -> bool:
        """attempt is 1-based: the attempt that just failed."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the attempt after `attempt`."""
        delay = self.base_delay * self.multiplier ** max(0, attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay
