"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from voicegate_core.state.database import get_engine, set_tenant_context
from voicegate_core.state.repository import (
    AuditRepository,
    ResourceRepository,
    SyncJobRepository,
    TenantUsageRepository,
    WebhookEventRepository,
)

__all__ = [
    "AuditRepository",
    "ResourceRepository",
    "SyncJobRepository",
    "TenantUsageRepository",
    "WebhookEventRepository",
    "get_engine",
    "set_tenant_context",
]
