"""Retry policy for sync jobs: attempt ceiling, priority demotion and backoff.

Every external mutation goes through the sync job queue, so this is the
single place that decides whether a failed attempt is retried or the job is
parked as ``dead`` for an operator.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Lower value = claimed sooner.  Subscription downgrades outrank drift cleanup.
DOWNGRADE_PRIORITY = 1
DEFAULT_PRIORITY = 5


class SyncAction(str, Enum):
    """Mutation to apply to an external resource."""

    DISABLE = "disable"
    ENABLE = "enable"
    DELETE = "delete"
    UPDATE = "update"


class SyncJobStatus(str, Enum):
    """Queue state of a sync job."""

    PENDING = "pending"
    CLAIMED = "claimed"
    SUCCEEDED = "succeeded"
    DEAD = "dead"


class RetryDecision(str, Enum):
    """Result of :meth:`RetryPolicy.decide`."""

    RETRY = "retry"
    DEAD = "dead"


class RetryPolicy(BaseModel):
    """Tuneable parameters for sync job retries."""

    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts allowed before a job is moved to 'dead'.",
    )
    priority_demotion: int = Field(
        default=1,
        ge=0,
        description="Added to a job's priority after each failed attempt.",
    )
    max_priority: int = Field(
        default=100,
        ge=0,
        description="Upper bound on a demoted priority.",
    )
    base_delay: float = Field(
        default=30.0,
        ge=0.0,
        description="Base delay in seconds before a failed job is claimable again.",
    )
    max_delay: float = Field(
        default=900.0,
        ge=0.0,
        description="Upper bound on the backoff delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    def decide(self, retry_count: int) -> RetryDecision:
        """Return whether a job that has now failed *retry_count* times is retried."""
        if retry_count < self.max_attempts:
            return RetryDecision.RETRY
        return RetryDecision.DEAD

    def demoted_priority(self, priority: int) -> int:
        """Return *priority* after one demotion step, capped at ``max_priority``."""
        return min(priority + self.priority_demotion, max(self.max_priority, priority))

    def backoff(self, retry_count: int) -> float:
        """Return the delay in seconds before attempt ``retry_count + 1``."""
        if self.base_delay == 0:
            return 0.0
        delay: float = min(self.base_delay * (2 ** max(retry_count - 1, 0)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)  # noqa: S311
        return delay

    def next_available_at(self, retry_count: int, now: datetime) -> datetime:
        """Return the earliest time a retried job may be claimed again."""
        delay = self.backoff(retry_count)
        logger.debug("Sync job retry %d/%d backs off %.1fs", retry_count, self.max_attempts, delay)
        return now + timedelta(seconds=delay)
