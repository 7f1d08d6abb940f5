"""Reconciliation sweeper: detects drift between local records and the provider.

For every open tenant, locally active assistants and phone numbers that
carry an external id are checked against the voice provider:

* assistants against the organisation's assistant listing, fetched once
  per sweep and reused for every tenant;
* phone numbers by a per-id existence check.

A resource missing upstream is marked ``drift`` and a ``delete`` job is
enqueued for it; the enforcement processor then converges the local record.
A resource already in ``drift`` with its ``delete`` job still in flight is
left alone, so repeated sweeps neither recount it nor touch the job.
The sweep never mutates the provider itself.  Errors are captured per
tenant so one broken tenant never stops the sweep.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from voicegate_core.state.database import set_tenant_context
from voicegate_core.state.repository import ResourceRepository, TenantUsageRepository
from voicegate_core.sync import DEFAULT_PRIORITY, RetryPolicy, SyncAction

from voicegate_api.middleware.prometheus import SWEEP_DRIFT_TOTAL
from voicegate_api.services.audit_service import AuditAction, AuditService, AuditSource
from voicegate_api.services.provider_client import ProviderError, VoiceProviderClient
from voicegate_api.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

DRIFT_REASON = "not found upstream"


@dataclass
class SweepSummary:
    """Counters returned by :meth:`ReconciliationSweeper.sweep`."""

    users_scanned: int = 0
    users_synced: int = 0
    assistants_removed: int = 0
    phone_numbers_removed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def merge(self, other: SweepSummary) -> None:
        self.users_scanned += other.users_scanned
        self.users_synced += other.users_synced
        self.assistants_removed += other.assistants_removed
        self.phone_numbers_removed += other.phone_numbers_removed
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _AssistantListing:
    """Provider assistant ids, fetched lazily and at most once per sweep.

    A failed fetch is not cached, so the next tenant retries it.
    """

    def __init__(self, provider: VoiceProviderClient) -> None:
        self._provider = provider
        self._ids: set[str] | None = None

    async def ids(self) -> set[str]:
        if self._ids is None:
            self._ids = await self._provider.list_assistant_ids()
            logger.debug("Fetched %d assistant ids from provider", len(self._ids))
        return self._ids


class ReconciliationSweeper:
    """Periodic drift detection across all tenants.

    Parameters
    ----------
    session_factory:
        Factory for per-tenant sessions.
    provider:
        Client for the voice provider API.
    policy:
        Retry policy for the queue that receives drift ``delete`` jobs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: VoiceProviderClient,
        *,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._policy = policy or RetryPolicy()

    async def sweep(self) -> SweepSummary:
        """Reconcile every open tenant and return the aggregate summary."""
        async with self._session_factory() as session:
            tenant_ids = await TenantUsageRepository.list_open_tenant_ids(session)

        listing = _AssistantListing(self._provider)
        summary = SweepSummary()
        for tenant_id in tenant_ids:
            summary.merge(await self._sweep_one(tenant_id, listing, AuditSource.SCHEDULED_SYNC))

        logger.info(
            "Reconciliation sweep: scanned=%d synced=%d assistants_removed=%d phone_numbers_removed=%d errors=%d",
            summary.users_scanned,
            summary.users_synced,
            summary.assistants_removed,
            summary.phone_numbers_removed,
            len(summary.errors),
        )
        return summary

    async def sweep_tenant(self, tenant_id: str, source: str = AuditSource.MANUAL_SYNC) -> SweepSummary:
        """Reconcile a single tenant, e.g. for a support-triggered re-sync."""
        return await self._sweep_one(tenant_id, _AssistantListing(self._provider), source)

    async def _sweep_one(self, tenant_id: str, listing: _AssistantListing, source: str) -> SweepSummary:
        result = SweepSummary(users_scanned=1)
        try:
            async with self._session_factory() as session:
                await set_tenant_context(session, tenant_id)
                removed_assistants, removed_numbers = await self._reconcile(session, tenant_id, listing, source)
                await session.commit()
        except (ProviderError, SQLAlchemyError, ValueError) as exc:
            logger.warning("Reconciliation failed for tenant=%s: %s", tenant_id, exc)
            result.errors.append({"tenant_id": tenant_id, "error": str(exc)})
            return result

        result.users_synced = 1
        result.assistants_removed = removed_assistants
        result.phone_numbers_removed = removed_numbers
        return result

    async def _reconcile(
        self,
        session: AsyncSession,
        tenant_id: str,
        listing: _AssistantListing,
        source: str,
    ) -> tuple[int, int]:
        resources = ResourceRepository(session, tenant_id)
        queue = SyncQueue(session, self._policy)
        audit = AuditService(session, tenant_id=tenant_id)

        removed_assistants = 0
        assistants = [a for a in await resources.list_active("assistant") if a.external_id]
        if assistants:
            upstream = await listing.ids()
            for assistant in assistants:
                if assistant.external_id in upstream:
                    await resources.mark("assistant", assistant.id, synced=True)
                    continue
                if await self._record_drift(queue, resources, audit, tenant_id, "assistant", assistant, source):
                    removed_assistants += 1

        removed_numbers = 0
        for number in await resources.list_active("phone_number"):
            if not number.external_id:
                continue
            if await self._provider.phone_number_exists(number.external_id):
                await resources.mark("phone_number", number.id, synced=True)
                continue
            if await self._record_drift(queue, resources, audit, tenant_id, "phone_number", number, source):
                removed_numbers += 1

        return removed_assistants, removed_numbers

    @staticmethod
    async def _record_drift(
        queue: SyncQueue,
        resources: ResourceRepository,
        audit: AuditService,
        tenant_id: str,
        resource_type: str,
        row: Any,
        source: str,
    ) -> bool:
        """Enqueue the drift ``delete`` for *row*; ``True`` if this sweep detected it."""
        if row.sync_status == "drift":
            in_flight = await queue.in_flight(resource_type, row.id)
            if in_flight is not None and SyncAction.DELETE.value in (in_flight.action, in_flight.next_action):
                logger.debug("%s %s already in drift with job %s in flight", resource_type, row.id, in_flight.id)
                return False

        await resources.mark(resource_type, row.id, sync_status="drift")
        enqueued = await queue.enqueue(
            tenant_id=tenant_id,
            resource_type=resource_type,
            resource_id=row.id,
            external_id=row.external_id,
            action=SyncAction.DELETE,
            reason=DRIFT_REASON,
            priority=DEFAULT_PRIORITY,
        )
        if not enqueued.action_changed:
            return False

        await audit.log(
            AuditAction.DRIFT,
            resource_type,
            row.id,
            source=source,
            outcome="delete_enqueued",
            reason=DRIFT_REASON,
            external_id=row.external_id,
            job_id=enqueued.job_id,
        )
        SWEEP_DRIFT_TOTAL.labels(resource_type=resource_type).inc()
        return True
