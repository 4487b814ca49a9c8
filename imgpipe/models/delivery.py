"""Delivery policies for publishing and consuming broker messages."""

from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OffsetCommitPolicy(str, Enum):
    """When a consumer commits the offset of a record it received."""

    # at-least-once: a crash mid-handling redelivers the record
    after_handling = "after_handling"
    # at-most-once: a crash mid-handling loses the record
    before_handling = "before_handling"


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for broker publishes."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.2, ge=0)
    max_delay: float = Field(default=3.0, ge=0)

    @model_validator(mode="after")
    def ensure_delay_bounds(self) -> "RetryPolicy":
        """Reject a cap smaller than the first delay."""

        if self.max_delay < self.base_delay:
            raise ValueError("'max_delay' must not be smaller than 'base_delay'.")
        return self

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""

        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def delays(self) -> List[float]:
        """All waits of a fully exhausted attempt sequence."""

        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts)]
