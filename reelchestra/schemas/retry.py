"""
RetryPolicy schema - bounded attempts and backoff for a job.

A job may be attempted at most max_retries + 1 times. Between attempts the
job waits in the `retrying` state for the delay computed by the policy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class BackoffStrategy(str, Enum):
    """How the delay between attempts grows."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for a job.

    Attributes:
        max_retries: Retries allowed after the first attempt (>= 0)
        backoff: Fixed or exponential delay between attempts
        base_delay_s: Delay before the first retry
        max_delay_s: Ceiling for exponential growth
    """
    max_retries: int = 3
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_s: float = 30.0
    max_delay_s: float = 3600.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_s < 0:
            raise ValueError("base_delay_s must be >= 0")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be >= base_delay_s")

    @property
    def max_attempts(self) -> int:
        """Total attempts a job may make."""
        return self.max_retries + 1

    def has_attempts_left(self, attempts: int) -> bool:
        """Whether a job that has made `attempts` attempts may be tried again."""
        return attempts < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """
        Delay in seconds before the retry that follows `attempt`.

        Args:
            attempt: The attempt that just failed (1-indexed)
        """
        if self.backoff == BackoffStrategy.FIXED:
            return self.base_delay_s
        exponent = max(attempt - 1, 0)
        return min(self.base_delay_s * (2 ** exponent), self.max_delay_s)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "max_retries": self.max_retries,
            "backoff": self.backoff.value,
            "base_delay_s": self.base_delay_s,
            "max_delay_s": self.max_delay_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryPolicy":
        """Deserialize from dictionary."""
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            backoff=BackoffStrategy(data.get("backoff", "exponential")),
            base_delay_s=float(data.get("base_delay_s", 30.0)),
            max_delay_s=float(data.get("max_delay_s", 3600.0)),
        )
