"""Enforcement processor: executes sync jobs against the voice provider.

Each job runs in three phases so that no database transaction stays open
across the network call:

1. **Claim** -- a short transaction claims the next job and commits.
2. **Execute** -- the provider call runs outside any transaction, bounded
   by ``asyncio.wait_for(job_timeout)``.
3. **Settle** -- a fresh transaction updates the local resource record,
   completes or fails the job and writes the audit entry.

A provider 404 on ``disable``/``delete``/``update`` means the resource is
already gone, which is the desired end state: the job converges instead of
failing.  Every other failure goes through :meth:`SyncQueue.fail`, so a job
that keeps failing reaches ``dead`` after exactly ``max_attempts`` attempts.

:meth:`EnforcementProcessor.drain` runs ``concurrency`` independent workers;
one stuck provider call never delays the jobs behind it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from voicegate_core.state.database import set_tenant_context
from voicegate_core.state.repository import ResourceRepository
from voicegate_core.state.tables import SyncJobTable
from voicegate_core.sync import RetryPolicy, SyncAction, SyncJobStatus

from voicegate_api.middleware.prometheus import SYNC_JOB_DURATION, SYNC_JOB_OUTCOMES_TOTAL
from voicegate_api.services.audit_service import AuditAction, AuditService, AuditSource
from voicegate_api.services.provider_client import (
    ProviderError,
    ProviderNotFoundError,
    ProviderRequestError,
    VoiceProviderClient,
)
from voicegate_api.services.sync_queue import SyncQueue
from voicegate_api.services.usage_ledger import TenantNotProvisionedError, UsageLedger

logger = logging.getLogger(__name__)

# Actions for which "not found upstream" is the desired end state.
_CONVERGE_ON_NOT_FOUND: frozenset[str] = frozenset(
    {SyncAction.DISABLE.value, SyncAction.DELETE.value, SyncAction.UPDATE.value}
)

_AUDIT_ACTIONS: dict[str, str] = {
    SyncAction.DISABLE.value: AuditAction.DISABLED,
    SyncAction.ENABLE.value: AuditAction.ENABLED,
    SyncAction.DELETE.value: AuditAction.DELETED,
    SyncAction.UPDATE.value: AuditAction.UPDATED,
}


class JobOutcome(str, Enum):
    """Result of one :meth:`EnforcementProcessor.process_one` call."""

    EMPTY = "empty"
    SUCCEEDED = "succeeded"
    CONVERGED = "converged"
    RETRY = "retry"
    DEAD = "dead"


@dataclass
class DrainSummary:
    """Counters returned by :meth:`EnforcementProcessor.drain`."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0

    def record(self, outcome: JobOutcome) -> None:
        self.processed += 1
        if outcome in (JobOutcome.SUCCEEDED, JobOutcome.CONVERGED):
            self.succeeded += 1
        elif outcome is JobOutcome.DEAD:
            self.failed += 1
            self.dead += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class _ClaimedJob:
    """Detached copy of a claimed job, safe to use after its session closes."""

    id: str
    tenant_id: str
    resource_type: str
    resource_id: str
    external_id: str | None
    action: str
    reason: str
    payload: dict[str, Any] | None
    retry_count: int
    worker_id: str

    @classmethod
    def from_row(cls, row: SyncJobTable, worker_id: str) -> _ClaimedJob:
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            external_id=row.external_id,
            action=row.action,
            reason=row.reason,
            payload=dict(row.payload) if row.payload else None,
            retry_count=row.retry_count,
            worker_id=worker_id,
        )


class EnforcementProcessor:
    """Claims sync jobs and applies them at the voice provider.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; one per phase.
    provider:
        Client for the voice provider API.
    policy:
        Retry policy handed to :class:`SyncQueue`.
    job_timeout:
        Upper bound in seconds on one provider call.
    concurrency:
        Number of independent workers used by :meth:`drain`.
    lease_seconds:
        Claims older than this are released at the start of each drain.
    disabled_max_duration / default_max_duration:
        ``maxDurationSeconds`` applied to disabled and re-enabled assistants.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: VoiceProviderClient,
        *,
        policy: RetryPolicy | None = None,
        job_timeout: float = 30.0,
        concurrency: int = 4,
        lease_seconds: int = 300,
        disabled_max_duration: int = 10,
        default_max_duration: int = 300,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._session_factory = session_factory
        self._provider = provider
        self._policy = policy or RetryPolicy()
        self._job_timeout = job_timeout
        self._concurrency = concurrency
        self._lease_seconds = lease_seconds
        self._disabled_max_duration = disabled_max_duration
        self._default_max_duration = default_max_duration
        self._instance = uuid.uuid4().hex[:8]

    # -- Public API ------------------------------------------------------------

    async def process_one(self, worker_id: str | None = None) -> JobOutcome:
        """Claim and execute a single job.  Returns ``EMPTY`` if none is due."""
        worker_id = worker_id or f"processor-{self._instance}"

        async with self._session_factory() as session:
            row = await SyncQueue(session, self._policy).claim_next(worker_id)
            if row is None:
                return JobOutcome.EMPTY
            job = _ClaimedJob.from_row(row, worker_id)
            await session.commit()

        logger.info(
            "Processing sync job %s: %s %s/%s external_id=%s attempt=%d",
            job.id,
            job.action,
            job.resource_type,
            job.resource_id,
            job.external_id,
            job.retry_count + 1,
        )

        start = time.monotonic()
        error: str | None = None
        converged = False
        external_id = job.external_id
        if not external_id:
            # Never provisioned upstream; nothing to call.
            converged = True
        else:
            try:
                await asyncio.wait_for(self._execute(job, external_id), timeout=self._job_timeout)
            except ProviderNotFoundError:
                if job.action in _CONVERGE_ON_NOT_FOUND:
                    converged = True
                else:
                    error = f"{job.resource_type} {job.external_id} not found upstream"
            except asyncio.TimeoutError:
                error = f"provider call timed out after {self._job_timeout:g}s"
            except ProviderRequestError as exc:
                error = f"{exc} (retryable={exc.retryable})"
            except ProviderError as exc:
                error = str(exc)
            except Exception as exc:
                logger.exception("Unexpected error executing sync job %s", job.id)
                error = f"{type(exc).__name__}: {exc}"
        SYNC_JOB_DURATION.labels(action=job.action).observe(time.monotonic() - start)

        async with self._session_factory() as session:
            await set_tenant_context(session, job.tenant_id)
            outcome = await self._settle(session, job, error=error, converged=converged)
            await session.commit()

        SYNC_JOB_OUTCOMES_TOTAL.labels(action=job.action, outcome=outcome.value).inc()
        return outcome

    async def drain(self, max_jobs: int | None = None) -> DrainSummary:
        """Process due jobs with ``concurrency`` workers until the queue is empty.

        Parameters
        ----------
        max_jobs:
            Optional cap on the number of jobs processed in this drain.
        """
        async with self._session_factory() as session:
            await SyncQueue(session, self._policy).release_stale_claims(self._lease_seconds)
            await session.commit()

        summary = DrainSummary()
        remaining = max_jobs

        async def _worker(index: int) -> None:
            nonlocal remaining
            worker_id = f"processor-{self._instance}-{index}"
            while True:
                if remaining is not None:
                    if remaining <= 0:
                        return
                    remaining -= 1
                outcome = await self.process_one(worker_id)
                if outcome is JobOutcome.EMPTY:
                    if remaining is not None:
                        remaining += 1
                    return
                summary.record(outcome)

        await asyncio.gather(*(_worker(i) for i in range(self._concurrency)))
        if summary.processed:
            logger.info(
                "Drain finished: processed=%d succeeded=%d failed=%d dead=%d",
                summary.processed,
                summary.succeeded,
                summary.failed,
                summary.dead,
            )
        return summary

    # -- Provider calls --------------------------------------------------------

    async def _execute(self, job: _ClaimedJob, external_id: str) -> None:
        payload = dict(job.payload or {})

        if job.resource_type == "assistant":
            if job.action == SyncAction.DISABLE.value:
                await self._provider.update_assistant(external_id, {"maxDurationSeconds": self._disabled_max_duration})
            elif job.action == SyncAction.ENABLE.value:
                changes = {"maxDurationSeconds": self._default_max_duration}
                changes.update(payload)
                await self._provider.update_assistant(external_id, changes)
            elif job.action == SyncAction.UPDATE.value:
                await self._provider.update_assistant(external_id, payload)
            else:
                await self._provider.delete_assistant(external_id)
            return

        if job.action == SyncAction.DISABLE.value:
            await self._provider.update_phone_number(external_id, {"assistantId": None})
        elif job.action in (SyncAction.ENABLE.value, SyncAction.UPDATE.value):
            await self._provider.update_phone_number(external_id, payload)
        else:
            await self._provider.delete_phone_number(external_id)

    # -- Settlement ------------------------------------------------------------

    async def _settle(
        self,
        session: AsyncSession,
        job: _ClaimedJob,
        *,
        error: str | None,
        converged: bool,
    ) -> JobOutcome:
        queue = SyncQueue(session, self._policy)
        audit = AuditService(session, tenant_id=job.tenant_id, actor=job.worker_id)

        current = await session.get(SyncJobTable, job.id, populate_existing=True)
        if current is None or current.status != SyncJobStatus.CLAIMED.value or current.claimed_by != job.worker_id:
            # The lease expired and the job was released; the next holder redoes it.
            logger.warning("Sync job %s no longer held by %s; discarding result", job.id, job.worker_id)
            return JobOutcome.RETRY

        if error is not None:
            result = await queue.fail(job.id, error)
            dead = result.status == SyncJobStatus.DEAD.value
            await audit.log(
                AuditAction.JOB_DEAD if dead else AuditAction.ERROR,
                job.resource_type,
                job.resource_id,
                source=AuditSource.ENFORCEMENT,
                outcome=result.status,
                reason=job.reason,
                job_id=job.id,
                sync_action=job.action,
                external_id=job.external_id,
                attempt=result.retry_count,
                error=error,
            )
            return JobOutcome.DEAD if dead else JobOutcome.RETRY

        resources = ResourceRepository(session, job.tenant_id)
        if converged and job.external_id:
            await resources.mark(job.resource_type, job.resource_id, active=False, sync_status="deleted", synced=True)
            if job.resource_type == "assistant":
                await resources.unassign_phone_numbers(job.resource_id)
        else:
            await self._apply_local_effect(resources, job)

        await queue.complete(job.id)
        outcome = JobOutcome.CONVERGED if converged else JobOutcome.SUCCEEDED
        await audit.log(
            _AUDIT_ACTIONS[job.action],
            job.resource_type,
            job.resource_id,
            source=AuditSource.ENFORCEMENT,
            outcome=outcome.value,
            reason=job.reason,
            job_id=job.id,
            external_id=job.external_id,
            attempt=job.retry_count + 1,
        )

        if job.resource_type == "assistant":
            try:
                await UsageLedger(session, tenant_id=job.tenant_id).refresh_assistant_count()
            except TenantNotProvisionedError:
                logger.warning("Skipping assistant count refresh for unprovisioned tenant=%s", job.tenant_id)

        logger.info("Sync job %s %s: %s %s/%s", job.id, outcome.value, job.action, job.resource_type, job.resource_id)
        return outcome

    @staticmethod
    async def _apply_local_effect(resources: ResourceRepository, job: _ClaimedJob) -> None:
        if job.action == SyncAction.DISABLE.value:
            await resources.mark(job.resource_type, job.resource_id, active=False, sync_status="synced", synced=True)
        elif job.action == SyncAction.DELETE.value:
            await resources.mark(job.resource_type, job.resource_id, active=False, sync_status="deleted", synced=True)
            if job.resource_type == "assistant":
                await resources.unassign_phone_numbers(job.resource_id)
        else:
            await resources.mark(job.resource_type, job.resource_id, active=True, sync_status="synced", synced=True)
