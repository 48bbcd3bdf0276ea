"""
Bounded redelivery policy and the records produced by delivery attempts.

The attempt counter travels with each delivery instead of living inside a
managed queue, so the retry and dead-letter rules can be exercised without
SQS.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential, capped backoff with a fixed attempt budget."""

    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 300.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            raise ValueError("backoff delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def is_exhausted(self, attempt: int) -> bool:
        """True once ``attempt`` deliveries have been made and none may follow."""
        return attempt >= self.max_attempts

    def backoff_for(self, attempt: int) -> float:
        """Delay in seconds before the delivery that follows ``attempt``."""
        delay = self.backoff_base_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.backoff_max_seconds)


class DeliveryOutcome(str, Enum):
    """What happened to a single delivery attempt."""

    ACKNOWLEDGED = "ACKNOWLEDGED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    DEAD_LETTERED = "DEAD_LETTERED"


@dataclass
class DeliveryAttempt:
    """Record of one delivery of a checkout event to a handler."""

    event_id: str
    attempt: int
    outcome: DeliveryOutcome
    result: Any = None
    error: Optional[str] = None


class DeadLetter(BaseModel):
    """A checkout event that will not be delivered again without intervention."""

    event_id: str
    payload: Union[Dict[str, Any], str] = Field(description="Event in its original wire form")
    reason: str = Field(description="Human-readable failure reason")
    error_code: str
    attempts: int = Field(ge=1)
    published_at: Optional[datetime] = Field(default=None, description="When the event was first published")
    dead_lettered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
