"""Retry policy for failed goal executions.

Implements capped exponential backoff and the retry budget that decides
between requeueing a goal and moving it to the dead-letter queue.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, Field


class GoalRetryPolicy(BaseModel):
    """Retry budget and backoff bounds for goal dispatch.

    Attributes:
        max_retries: Failures tolerated before dead-lettering (0-10)
        base_backoff_ms: Delay before the first retry (1000-900000)
        max_backoff_ms: Backoff cap (1000-3600000)
    """

    max_retries: int = Field(default=2, ge=0, le=10)
    base_backoff_ms: int = Field(default=15_000, ge=1000, le=900_000)
    max_backoff_ms: int = Field(default=300_000, ge=1000, le=3_600_000)

    def calculate_backoff_ms(self, failed_attempts: int) -> int:
        """Calculate the delay before the next attempt.

        Args:
            failed_attempts: Failures so far, including the one just seen (1-indexed)

        Returns:
            ``min(base * 2^(failed_attempts - 1), max)`` in milliseconds
        """
        exponent = max(0, failed_attempts - 1)
        return int(min(self.base_backoff_ms * (2**exponent), self.max_backoff_ms))

    def exhausted(self, failed_attempts: int) -> bool:
        """True when the goal should be dead-lettered instead of retried."""
        return failed_attempts > self.max_retries

    def next_attempt_at(self, now: datetime, failed_attempts: int) -> datetime:
        return now + timedelta(milliseconds=self.calculate_backoff_ms(failed_attempts))
