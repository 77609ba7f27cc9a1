from dataclasses import dataclass
from typing import TYPE_CHECKING

from .exceptions import is_retryable_error

if TYPE_CHECKING:
    from .config import AppConfig


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Bounded, exponential step-level retry.

    ``max_attempts`` counts the first attempt, so ``max_attempts=1`` means a
    failed step is never restarted.
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= self.backoff_base_seconds <= self.backoff_max_seconds:
            raise ValueError("backoff_base_seconds must be between 0 and backoff_max_seconds")

    @classmethod
    def from_config(cls, config: "AppConfig") -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            backoff_base_seconds=config.retry_backoff_base_seconds,
            backoff_max_seconds=config.retry_backoff_max_seconds,
        )

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return attempt < self.max_attempts and is_retryable_error(error)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** (attempt - 1)))
