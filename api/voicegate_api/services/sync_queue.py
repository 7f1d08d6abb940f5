"""Durable sync job queue.

Every mutation of an external resource is expressed as a job row in
``sync_jobs`` and executed by the enforcement processor.  The queue keeps
at most one non-terminal job per resource:

* enqueueing for a resource with a *pending* job supersedes it in place
  (new action, reason and payload; the more urgent priority wins).  The
  retry counter and backoff are reset only when the action changes, so a
  producer repeating the same intent never extends the retry budget;
* enqueueing for a resource with a *claimed* job records the new intent in
  the ``next_*`` columns.  When the running attempt finishes, the job is
  re-armed as ``pending`` with that intent instead of terminating.  An
  intent identical to the running attempt is not recorded.

Claims are atomic compare-and-set updates, so two processors never hold the
same job.  Failures go through :class:`~voicegate_core.sync.RetryPolicy`:
the priority is demoted, the job is backed off and after ``max_attempts``
it lands in ``dead`` for an operator to inspect and requeue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from voicegate_core.state.repository import SyncJobRepository, resource_table
from voicegate_core.state.tables import SyncJobTable
from voicegate_core.sync import DEFAULT_PRIORITY, RetryDecision, RetryPolicy, SyncAction, SyncJobStatus

logger = logging.getLogger(__name__)

# Attempts at inserting a job when a concurrent enqueue races us on the
# partial unique index.
_ENQUEUE_ATTEMPTS = 3

# Maximum candidates examined by one claim_next() call.
_CLAIM_ATTEMPTS = 10


class JobNotFoundError(LookupError):
    """The referenced sync job does not exist."""


class InvalidJobStateError(ValueError):
    """The sync job is not in a state that allows the requested transition."""


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of :meth:`SyncQueue.enqueue`."""

    job_id: str
    created: bool
    superseded: bool
    deferred: bool = False
    # True when the call created the job or changed the action it will run.
    action_changed: bool = False


@dataclass(frozen=True)
class FailureResult:
    """Outcome of :meth:`SyncQueue.fail`."""

    job_id: str
    status: str
    retry_count: int
    priority: int
    available_at: datetime | None


def job_to_dict(job: SyncJobTable) -> dict[str, Any]:
    """Serialise a job row for API responses."""
    return {
        "id": job.id,
        "tenant_id": job.tenant_id,
        "resource_type": job.resource_type,
        "resource_id": job.resource_id,
        "external_id": job.external_id,
        "action": job.action,
        "reason": job.reason,
        "payload": job.payload,
        "priority": job.priority,
        "status": job.status,
        "retry_count": job.retry_count,
        "last_error": job.last_error,
        "available_at": job.available_at.isoformat() if job.available_at else None,
        "claimed_by": job.claimed_by,
        "claimed_at": job.claimed_at.isoformat() if job.claimed_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "next_action": job.next_action,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


class SyncQueue:
    """Enqueue, claim and settle sync jobs.

    Parameters
    ----------
    session:
        Active database session.  Every method flushes; the caller commits.
    policy:
        Retry ceiling, priority demotion and backoff for failed attempts.
    """

    def __init__(self, session: AsyncSession, policy: RetryPolicy | None = None) -> None:
        self._session = session
        self._repo = SyncJobRepository(session)
        self._policy = policy or RetryPolicy()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # -- Producers -------------------------------------------------------------

    async def enqueue(
        self,
        *,
        tenant_id: str,
        resource_type: str,
        resource_id: str,
        action: SyncAction | str,
        reason: str,
        external_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        payload: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """Add or supersede the in-flight job for one resource.

        Raises
        ------
        ValueError
            For an unknown resource type or action.
        """
        resource_table(resource_type)
        action_value = SyncAction(action).value

        for attempt in range(1, _ENQUEUE_ATTEMPTS + 1):
            existing = await self._repo.find_in_flight(resource_type, resource_id)
            if existing is not None:
                return await self._supersede(existing, action_value, reason, priority, payload, external_id)
            try:
                job = await self._repo.insert(
                    tenant_id=tenant_id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    external_id=external_id,
                    action=action_value,
                    reason=reason,
                    priority=priority,
                    payload=payload,
                )
            except IntegrityError:
                logger.info(
                    "Concurrent enqueue for %s/%s (attempt %d); re-reading in-flight job",
                    resource_type,
                    resource_id,
                    attempt,
                )
                continue
            logger.info(
                "Enqueued sync job %s: %s %s/%s priority=%d reason=%s",
                job.id,
                action_value,
                resource_type,
                resource_id,
                priority,
                reason,
            )
            return EnqueueResult(job_id=job.id, created=True, superseded=False, action_changed=True)

        raise RuntimeError(
            f"Could not enqueue sync job for {resource_type}/{resource_id} after {_ENQUEUE_ATTEMPTS} attempts"
        )

    async def in_flight(self, resource_type: str, resource_id: str) -> SyncJobTable | None:
        """Return the pending or claimed job for a resource, if any."""
        return await self._repo.find_in_flight(resource_type, resource_id)

    async def _supersede(
        self,
        job: SyncJobTable,
        action: str,
        reason: str,
        priority: int,
        payload: dict[str, Any] | None,
        external_id: str | None,
    ) -> EnqueueResult:
        now = datetime.now(UTC)
        job.priority = min(job.priority, priority)
        job.updated_at = now

        if job.status == SyncJobStatus.CLAIMED.value:
            if action == job.action and payload == job.payload:
                # The running attempt already carries this intent; a newer
                # identical request cancels any different deferred one.
                job.next_action = None
                job.next_reason = None
                job.next_payload = None
                await self._session.flush()
                logger.debug("Sync job %s already running %s; nothing deferred", job.id, action)
                return EnqueueResult(job_id=job.id, created=False, superseded=False)
            changed = action != (job.next_action or job.action)
            job.next_action = action
            job.next_reason = reason
            job.next_payload = payload
            await self._session.flush()
            logger.info("Deferred %s intent on claimed sync job %s until its attempt settles", action, job.id)
            return EnqueueResult(job_id=job.id, created=False, superseded=True, deferred=True, action_changed=changed)

        previous = job.action
        job.action = action
        job.reason = reason
        job.payload = payload
        if external_id is not None:
            job.external_id = external_id
        if action != previous:
            job.retry_count = 0
            job.last_error = None
            job.available_at = now
            logger.info("Superseded pending sync job %s: %s -> %s", job.id, previous, action)
        else:
            logger.debug("Merged repeated %s request into pending sync job %s", action, job.id)
        await self._session.flush()
        return EnqueueResult(job_id=job.id, created=False, superseded=True, action_changed=action != previous)

    # -- Consumers -------------------------------------------------------------

    async def claim_next(self, worker_id: str, *, now: datetime | None = None) -> SyncJobTable | None:
        """Claim the most urgent available job for *worker_id*.

        Returns ``None`` when nothing is claimable.  A candidate lost to a
        concurrent claimer is skipped and the next one is tried.
        """
        now = now or datetime.now(UTC)
        for _ in range(_CLAIM_ATTEMPTS):
            job_id = await self._repo.next_candidate_id(now)
            if job_id is None:
                return None
            if await self._repo.try_claim(job_id, worker_id, now):
                job = await self._repo.get(job_id)
                logger.debug("Worker %s claimed sync job %s", worker_id, job_id)
                return job
            logger.debug("Worker %s lost claim race for sync job %s", worker_id, job_id)
        return None

    async def _get_claimed(self, job_id: str) -> SyncJobTable:
        job = await self._repo.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        if job.status != SyncJobStatus.CLAIMED.value:
            raise InvalidJobStateError(f"Sync job {job_id} is {job.status}, expected claimed")
        return job

    def _rearm_with_deferred_intent(self, job: SyncJobTable, now: datetime) -> bool:
        """Turn a settled job into a fresh pending job if an intent was deferred."""
        if job.next_action is None:
            return False
        job.action = job.next_action
        job.reason = job.next_reason or job.reason
        job.payload = job.next_payload
        job.next_action = None
        job.next_reason = None
        job.next_payload = None
        job.status = SyncJobStatus.PENDING.value
        job.retry_count = 0
        job.last_error = None
        job.claimed_by = None
        job.claimed_at = None
        job.available_at = now
        job.updated_at = now
        return True

    async def complete(self, job_id: str) -> SyncJobTable:
        """Mark a claimed job ``succeeded`` (or re-arm it with a deferred intent)."""
        job = await self._get_claimed(job_id)
        now = datetime.now(UTC)
        if self._rearm_with_deferred_intent(job, now):
            logger.info("Sync job %s succeeded; re-queued deferred %s", job.id, job.action)
        else:
            job.status = SyncJobStatus.SUCCEEDED.value
            job.completed_at = now
            job.updated_at = now
            logger.info("Sync job %s succeeded", job.id)
        await self._session.flush()
        return job

    async def fail(self, job_id: str, error: str, *, now: datetime | None = None) -> FailureResult:
        """Record a failed attempt on a claimed job.

        The retry counter is incremented, the priority demoted and the job
        backed off.  Once the counter reaches ``max_attempts`` the job is
        moved to ``dead``.  A deferred intent takes precedence over both: it
        re-arms the job with a reset counter.
        """
        job = await self._get_claimed(job_id)
        now = now or datetime.now(UTC)

        if self._rearm_with_deferred_intent(job, now):
            await self._session.flush()
            logger.info("Sync job %s failed (%s); re-queued deferred %s", job.id, error, job.action)
            return FailureResult(job.id, job.status, job.retry_count, job.priority, job.available_at)

        job.retry_count += 1
        job.last_error = error[:2000]
        job.priority = self._policy.demoted_priority(job.priority)
        job.claimed_by = None
        job.claimed_at = None
        job.updated_at = now

        if self._policy.decide(job.retry_count) is RetryDecision.DEAD:
            job.status = SyncJobStatus.DEAD.value
            job.completed_at = now
            logger.error(
                "Sync job %s dead after %d attempts (%s %s/%s): %s",
                job.id,
                job.retry_count,
                job.action,
                job.resource_type,
                job.resource_id,
                error,
            )
            await self._session.flush()
            return FailureResult(job.id, job.status, job.retry_count, job.priority, None)

        job.status = SyncJobStatus.PENDING.value
        job.available_at = self._policy.next_available_at(job.retry_count, now)
        await self._session.flush()
        logger.warning(
            "Sync job %s failed attempt %d/%d, retry at %s priority=%d: %s",
            job.id,
            job.retry_count,
            self._policy.max_attempts,
            job.available_at.isoformat(),
            job.priority,
            error,
        )
        return FailureResult(job.id, job.status, job.retry_count, job.priority, job.available_at)

    # -- Maintenance -----------------------------------------------------------

    async def release_stale_claims(self, lease_seconds: int, *, now: datetime | None = None) -> int:
        """Return claims older than *lease_seconds* to ``pending``.

        Recovers jobs held by a processor that crashed mid-attempt.
        """
        now = now or datetime.now(UTC)
        released = await self._repo.release_claims_before(now - timedelta(seconds=lease_seconds))
        if released:
            logger.warning("Released %d stale sync job claim(s) older than %ds", released, lease_seconds)
        return released

    async def status_counts(self) -> dict[str, int]:
        """Return job counts for every status (zero-filled)."""
        counts = {status.value: 0 for status in SyncJobStatus}
        counts.update(await self._repo.status_counts())
        return counts

    async def list_dead(self, limit: int = 100) -> list[SyncJobTable]:
        return await self._repo.list_by_status(SyncJobStatus.DEAD.value, limit)

    async def requeue_dead(self, job_id: str) -> SyncJobTable:
        """Give a dead job a fresh set of attempts.

        Raises
        ------
        JobNotFoundError
            If the job does not exist.
        InvalidJobStateError
            If the job is not dead, or another job for the same resource is
            already in flight.
        """
        job = await self._repo.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        if job.status != SyncJobStatus.DEAD.value:
            raise InvalidJobStateError(f"Sync job {job_id} is {job.status}, only dead jobs can be requeued")
        in_flight = await self._repo.find_in_flight(job.resource_type, job.resource_id)
        if in_flight is not None:
            raise InvalidJobStateError(
                f"Sync job {in_flight.id} is already in flight for {job.resource_type}/{job.resource_id}"
            )

        now = datetime.now(UTC)
        job.status = SyncJobStatus.PENDING.value
        job.retry_count = 0
        job.last_error = None
        job.completed_at = None
        job.available_at = now
        job.updated_at = now
        await self._session.flush()
        logger.info("Requeued dead sync job %s", job.id)
        return job
