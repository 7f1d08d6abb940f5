"""SQLAlchemy 2.0 ORM table definitions for the VoiceGate state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by the repository layer and by ``create_all`` in local/dev mode.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all VoiceGate tables."""


# ---------------------------------------------------------------------------
# Tenant usage
# ---------------------------------------------------------------------------


class TenantUsageTable(Base):
    """Per-tenant subscription state, limits and consumption counters.

    One row per tenant.  Limits and status are written by the subscription
    state machine, ``minutes_used`` by call accounting.  Both writers lock
    the row before updating so that neither loses the other's write.
    Rows are never deleted; ``closed_at`` marks a soft-closed account.
    """

    __tablename__ = "tenant_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    plan_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    subscription_status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    minutes_used: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    minutes_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    assistant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assistant_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("minutes_used >= 0", name="ck_tenant_usage_minutes_nonneg"),
        CheckConstraint("minutes_limit >= 0", name="ck_tenant_usage_minutes_limit_nonneg"),
        CheckConstraint("assistant_limit >= 0", name="ck_tenant_usage_assistant_limit_nonneg"),
        Index("ix_tenant_usage_stripe_customer", "stripe_customer_id"),
        Index("ix_tenant_usage_subscription", "external_subscription_id"),
    )


# ---------------------------------------------------------------------------
# External resources
# ---------------------------------------------------------------------------


class AssistantTable(Base):
    """Local mirror of a voice assistant provisioned at the voice provider."""

    __tablename__ = "assistants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set while capped for an exhausted monthly minutes allowance.
    usage_limited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    usage_limited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "sync_status IN ('synced', 'pending', 'deleted', 'drift')",
            name="ck_assistants_sync_status",
        ),
        Index("ix_assistants_tenant_active", "tenant_id", "active"),
        Index("ix_assistants_external", "external_id"),
    )


class PhoneNumberTable(Base):
    """Local mirror of a phone number provisioned at the voice provider."""

    __tablename__ = "phone_numbers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    number: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assigned_assistant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "sync_status IN ('synced', 'pending', 'deleted', 'drift')",
            name="ck_phone_numbers_sync_status",
        ),
        Index("ix_phone_numbers_tenant_active", "tenant_id", "active"),
        Index("ix_phone_numbers_external", "external_id"),
        Index("ix_phone_numbers_assistant", "assigned_assistant_id"),
    )


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------


class SyncJobTable(Base):
    """Durable, priority-ordered intent to mutate one external resource.

    The partial unique index ``uq_sync_jobs_inflight`` guarantees that at
    most one non-terminal job exists per ``(resource_type, resource_id)``.
    ``next_action`` / ``next_reason`` / ``next_payload`` hold an intent that
    arrived while the job was claimed; it is applied when the current
    attempt finishes.
    """

    __tablename__ = "sync_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_action: Mapped[str | None] = mapped_column(String(16), nullable=True)
    next_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "resource_type IN ('assistant', 'phone_number')",
            name="ck_sync_jobs_resource_type",
        ),
        CheckConstraint(
            "action IN ('disable', 'enable', 'delete', 'update')",
            name="ck_sync_jobs_action",
        ),
        CheckConstraint(
            "status IN ('pending', 'claimed', 'succeeded', 'dead')",
            name="ck_sync_jobs_status",
        ),
        Index(
            "uq_sync_jobs_inflight",
            "resource_type",
            "resource_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'claimed')"),
            sqlite_where=text("status IN ('pending', 'claimed')"),
        ),
        Index("ix_sync_jobs_claim_order", "status", "priority", "created_at"),
        Index("ix_sync_jobs_tenant", "tenant_id"),
    )


# ---------------------------------------------------------------------------
# Audit / sync event log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only record of resource and subscription transitions.

    Each row pairs a state change with its resource id, action, reason and
    outcome so that tenant-support staff can reconstruct why an assistant
    or phone number was disabled, deleted or re-synced.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_resource", "tenant_id", "resource_type", "resource_id"),
    )


# ---------------------------------------------------------------------------
# Processed payment events
# ---------------------------------------------------------------------------


class WebhookEventTable(Base):
    """Payment-processor event ids that have already been applied.

    Survives restarts, unlike the in-memory fingerprint cache, so a
    redelivered Stripe or PayPal event is acknowledged without being
    applied twice.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),)
