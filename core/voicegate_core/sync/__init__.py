"""Sync job vocabulary and the retry policy shared by queue and processor."""

from voicegate_core.sync.retry_policy import (
    DEFAULT_PRIORITY,
    DOWNGRADE_PRIORITY,
    RetryDecision,
    RetryPolicy,
    SyncAction,
    SyncJobStatus,
)

__all__ = [
    "DEFAULT_PRIORITY",
    "DOWNGRADE_PRIORITY",
    "RetryDecision",
    "RetryPolicy",
    "SyncAction",
    "SyncJobStatus",
]
