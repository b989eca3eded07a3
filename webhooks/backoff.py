"""Retry delay policy for failed webhook events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from mindbody.config import Settings


def compute_delay(
    retry_count: int,
    base_delay: int,
    exponential: bool = True,
    max_delay: Optional[int] = None,
) -> int:
    """Seconds to wait before the next attempt.

    Exponential mode doubles the base delay per previous retry; max_delay,
    when set, caps the result.
    """
    if exponential:
        delay = base_delay * (2 ** max(0, retry_count))
    else:
        delay = base_delay
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: int = 5
    exponential: bool = True
    max_delay: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.webhook_max_retry_attempts,
            base_delay=settings.webhook_retry_delay,
            exponential=settings.webhook_exponential_backoff,
            max_delay=settings.webhook_max_retry_delay,
        )

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts

    def delay_for(self, retry_count: int) -> int:
        return compute_delay(retry_count, self.base_delay, self.exponential, self.max_delay)
