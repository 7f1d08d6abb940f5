"""Repository classes providing CRUD access to the VoiceGate state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_db_session`` dependency).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from voicegate_core.state.database import is_postgres
from voicegate_core.state.tables import (
    AssistantTable,
    AuditLogTable,
    PhoneNumberTable,
    SyncJobTable,
    TenantUsageTable,
    WebhookEventTable,
)

logger = logging.getLogger(__name__)

_RESOURCE_TABLES: dict[str, Any] = {
    "assistant": AssistantTable,
    "phone_number": PhoneNumberTable,
}

NON_TERMINAL_STATUSES: tuple[str, ...] = ("pending", "claimed")


def resource_table(resource_type: str) -> Any:
    """Return the ORM class backing *resource_type*.

    Raises
    ------
    ValueError
        If *resource_type* is not ``assistant`` or ``phone_number``.
    """
    try:
        return _RESOURCE_TABLES[resource_type]
    except KeyError:
        raise ValueError(f"Unknown resource_type: {resource_type!r}") from None


# ---------------------------------------------------------------------------
# Tenant usage
# ---------------------------------------------------------------------------


class TenantUsageRepository:
    """Access to the single ``tenant_usage`` row of one tenant."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self) -> TenantUsageTable | None:
        """Return the usage record without locking it."""
        stmt = select(TenantUsageTable).where(TenantUsageTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_update(self) -> TenantUsageTable | None:
        """Return the usage record holding a row lock until the transaction ends.

        On SQLite the ``FOR UPDATE`` clause is not rendered; the database's
        single-writer lock provides the same guarantee.
        """
        stmt = (
            select(TenantUsageTable)
            .where(TenantUsageTable.tenant_id == self._tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        plan_tier: str,
        minutes_limit: int,
        assistant_limit: int,
        subscription_status: str = "active",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> TenantUsageTable:
        """Provision the usage record for a new tenant."""
        row = TenantUsageTable(
            tenant_id=self._tenant_id,
            plan_tier=plan_tier,
            subscription_status=subscription_status,
            minutes_used=0.0,
            minutes_limit=minutes_limit,
            assistant_count=0,
            assistant_limit=assistant_limit,
            period_start=period_start,
            period_end=period_end,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def close(self) -> bool:
        """Soft-close the tenant's record.  Returns ``False`` if absent."""
        row = await self.get_for_update()
        if row is None:
            return False
        row.closed_at = datetime.now(UTC)
        await self._session.flush()
        return True

    @staticmethod
    async def resolve_by_stripe_customer(session: AsyncSession, customer_id: str) -> str | None:
        """Map a Stripe customer id to a tenant id."""
        result = await session.execute(
            select(TenantUsageTable.tenant_id).where(TenantUsageTable.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def resolve_by_subscription(session: AsyncSession, subscription_id: str) -> str | None:
        """Map a payment-processor subscription id to a tenant id."""
        result = await session.execute(
            select(TenantUsageTable.tenant_id).where(TenantUsageTable.external_subscription_id == subscription_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_open_tenant_ids(session: AsyncSession) -> list[str]:
        """Return every tenant whose account has not been closed."""
        result = await session.execute(
            select(TenantUsageTable.tenant_id)
            .where(TenantUsageTable.closed_at.is_(None))
            .order_by(TenantUsageTable.tenant_id)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# External resources (assistants, phone numbers)
# ---------------------------------------------------------------------------


class ResourceRepository:
    """Tenant-scoped access to the local mirrors of provider resources."""

    def __init__(self, session: AsyncSession, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, resource_type: str, resource_id: str) -> Any | None:
        """Return one assistant or phone number row by local id."""
        table = resource_table(resource_type)
        stmt = select(table).where(table.tenant_id == self._tenant_id, table.id == resource_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self, resource_type: str) -> list[Any]:
        """Return active rows ordered oldest first (ties broken by id)."""
        table = resource_table(resource_type)
        stmt = (
            select(table)
            .where(table.tenant_id == self._tenant_id, table.active.is_(True))
            .order_by(table.created_at.asc(), table.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_active_assistants(self) -> int:
        """Live count of active assistants for the tenant."""
        stmt = select(func.count()).select_from(AssistantTable).where(
            AssistantTable.tenant_id == self._tenant_id,
            AssistantTable.active.is_(True),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_usage_limited_assistants(self) -> list[AssistantTable]:
        """Return assistants capped for exhausted minutes, oldest first.

        Deleted assistants are excluded; there is nothing left to restore.
        """
        stmt = (
            select(AssistantTable)
            .where(
                AssistantTable.tenant_id == self._tenant_id,
                AssistantTable.usage_limited.is_(True),
                AssistantTable.sync_status != "deleted",
            )
            .order_by(AssistantTable.created_at.asc(), AssistantTable.id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_phone_numbers_for_assistant(self, assistant_id: str) -> list[PhoneNumberTable]:
        """Return active phone numbers routed to *assistant_id*."""
        stmt = select(PhoneNumberTable).where(
            PhoneNumberTable.tenant_id == self._tenant_id,
            PhoneNumberTable.assigned_assistant_id == assistant_id,
            PhoneNumberTable.active.is_(True),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark(
        self,
        resource_type: str,
        resource_id: str,
        *,
        active: bool | None = None,
        sync_status: str | None = None,
        synced: bool = False,
    ) -> bool:
        """Update ``active`` / ``sync_status`` / ``last_synced_at`` on one row.

        Returns ``False`` when the row does not exist for this tenant.
        """
        row = await self.get(resource_type, resource_id)
        if row is None:
            return False
        if active is not None:
            row.active = active
        if sync_status is not None:
            row.sync_status = sync_status
        if synced:
            row.last_synced_at = datetime.now(UTC)
        await self._session.flush()
        return True

    async def unassign_phone_numbers(self, assistant_id: str) -> int:
        """Detach every phone number routed to *assistant_id*.  Returns the count."""
        stmt = (
            update(PhoneNumberTable)
            .where(
                PhoneNumberTable.tenant_id == self._tenant_id,
                PhoneNumberTable.assigned_assistant_id == assistant_id,
            )
            .values(assigned_assistant_id=None, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    @staticmethod
    async def find_by_external_id(
        session: AsyncSession,
        resource_type: str,
        external_id: str,
    ) -> Any | None:
        """Cross-tenant lookup of an active row by provider-side id.

        Used by provider webhooks, where only the external id is known.
        """
        table = resource_table(resource_type)
        stmt = (
            select(table)
            .where(table.external_id == external_id, table.active.is_(True))
            .order_by(table.created_at.asc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------


class SyncJobRepository:
    """Row-level primitives for the sync job queue.

    The queue is shared by every tenant and every processor instance, so
    this repository is not tenant-scoped.  Claiming is an atomic
    compare-and-set on ``status``; callers never read-then-write.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, job_id: str) -> SyncJobTable | None:
        """Return one job by id, refreshed from the database."""
        stmt = select(SyncJobTable).where(SyncJobTable.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_in_flight(self, resource_type: str, resource_id: str) -> SyncJobTable | None:
        """Return the non-terminal job for a resource, if any."""
        stmt = (
            select(SyncJobTable)
            .where(
                SyncJobTable.resource_type == resource_type,
                SyncJobTable.resource_id == resource_id,
                SyncJobTable.status.in_(NON_TERMINAL_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        if is_postgres(self._session):
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(
        self,
        *,
        tenant_id: str,
        resource_type: str,
        resource_id: str,
        external_id: str | None,
        action: str,
        reason: str,
        priority: int,
        payload: dict[str, Any] | None = None,
    ) -> SyncJobTable:
        """Insert a new pending job.

        Raises
        ------
        IntegrityError
            If another non-terminal job for the same resource was inserted
            concurrently (partial unique index).  The insert runs inside a
            savepoint so the caller's transaction stays usable.
        """
        now = datetime.now(UTC)
        row = SyncJobTable(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            resource_type=resource_type,
            resource_id=resource_id,
            external_id=external_id,
            action=action,
            reason=reason,
            payload=payload,
            priority=priority,
            status="pending",
            retry_count=0,
            available_at=now,
            created_at=now,
            updated_at=now,
        )
        async with self._session.begin_nested():
            self._session.add(row)
            await self._session.flush()
        return row

    async def next_candidate_id(self, now: datetime) -> str | None:
        """Return the id of the next claimable job, or ``None``.

        Ordering is ascending priority, then oldest creation time.  On
        PostgreSQL the row is read with ``FOR UPDATE SKIP LOCKED`` so
        concurrent claimers fan out across different rows.
        """
        stmt = (
            select(SyncJobTable.id)
            .where(SyncJobTable.status == "pending", SyncJobTable.available_at <= now)
            .order_by(SyncJobTable.priority.asc(), SyncJobTable.created_at.asc(), SyncJobTable.id.asc())
            .limit(1)
        )
        if is_postgres(self._session):
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def try_claim(self, job_id: str, worker_id: str, now: datetime) -> bool:
        """Compare-and-set ``pending`` → ``claimed``.  ``True`` if this caller won."""
        stmt = (
            update(SyncJobTable)
            .where(SyncJobTable.id == job_id, SyncJobTable.status == "pending")
            .values(status="claimed", claimed_by=worker_id, claimed_at=now, updated_at=now)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1

    async def release_claims_before(self, cutoff: datetime) -> int:
        """Return claims taken before *cutoff* to ``pending``.  Returns the count."""
        stmt = (
            update(SyncJobTable)
            .where(SyncJobTable.status == "claimed", SyncJobTable.claimed_at < cutoff)
            .values(status="pending", claimed_by=None, claimed_at=None, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    async def status_counts(self) -> dict[str, int]:
        """Return ``{status: count}`` for every status present in the queue."""
        stmt = select(SyncJobTable.status, func.count()).group_by(SyncJobTable.status)
        result = await self._session.execute(stmt)
        return {status: int(count) for status, count in result.all()}

    async def list_by_status(self, status: str, limit: int = 100) -> list[SyncJobTable]:
        """Return jobs in *status*, most recently updated first."""
        stmt = (
            select(SyncJobTable)
            .where(SyncJobTable.status == status)
            .order_by(SyncJobTable.updated_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only writer for the ``audit_log`` table."""

    def __init__(self, session: AsyncSession, *, tenant_id: str = "default") -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def log(
        self,
        *,
        actor: str,
        source: str,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        outcome: str | None = None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Write an audit entry.  Returns the entry ID."""
        entry_id = uuid.uuid4().hex
        row = AuditLogTable(
            id=entry_id,
            tenant_id=self._tenant_id,
            actor=actor,
            source=source,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            reason=reason,
            metadata_json=metadata,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return entry_id

    async def list_for_resource(self, resource_type: str, resource_id: str) -> list[AuditLogTable]:
        """Return the audit trail of one resource, oldest first."""
        stmt = (
            select(AuditLogTable)
            .where(
                AuditLogTable.tenant_id == self._tenant_id,
                AuditLogTable.resource_type == resource_type,
                AuditLogTable.resource_id == resource_id,
            )
            .order_by(AuditLogTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Processed payment events
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Persistent idempotency keys for payment-processor events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_if_new(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        tenant_id: str | None = None,
    ) -> bool:
        """Record *event_id*; return ``False`` if it was already recorded."""
        existing = await self._session.execute(
            select(WebhookEventTable.id).where(
                WebhookEventTable.provider == provider,
                WebhookEventTable.event_id == event_id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return False

        row = WebhookEventTable(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            tenant_id=tenant_id,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except IntegrityError:
            logger.info("Concurrent delivery of %s event %s; treating as duplicate", provider, event_id)
            return False
        return True
