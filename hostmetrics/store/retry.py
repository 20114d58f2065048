"""
Retry policy for transient document store failures.
"""

from pydantic import BaseModel, ConfigDict, Field

from hostmetrics.config import Settings


class RetryPolicy(BaseModel):
    """
    Exponential backoff with a bounded number of attempts.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Ceiling applied to every computed delay
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0.0)
    max_delay: float = Field(default=8.0, ge=0.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        return min(self.max_delay, self.base_delay * (2**attempt))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts - 1
