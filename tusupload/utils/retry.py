"""Retry policy for transient tus failures"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: base_delay * 2 ** attempt, capped at max_delay"""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, config: Any) -> "RetryPolicy":
        return cls(
            max_attempts=config.tus_retry_attempts,
            base_delay=config.tus_retry_base_delay,
            max_delay=config.tus_retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number attempt (0-based)"""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def next_delay(self, retries_spent: int) -> Optional[float]:
        """Delay before the next retry, or None when the budget is spent"""
        if retries_spent >= self.max_attempts:
            return None
        return self.delay_for(retries_spent)


def is_retryable_status(status: Optional[int]) -> bool:
    """5xx responses and missing responses (transport errors) are worth retrying"""
    return status is None or 500 <= status < 600
