"""Internal operations endpoints: queue drain, queue inspection, manual sync.

Protected by the internal API token (``Authorization: Bearer <token>`` or
``x-internal-job-token``).  Never exposed to tenants.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from voicegate_core.state.database import set_tenant_context

from voicegate_api.dependencies import (
    ProcessorDep,
    RetryPolicyDep,
    SessionDep,
    SweeperDep,
    require_internal_token,
)
from voicegate_api.middleware.prometheus import record_queue_depth
from voicegate_api.services.audit_service import AuditAction, AuditService, AuditSource
from voicegate_api.services.sync_queue import InvalidJobStateError, JobNotFoundError, SyncQueue, job_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal_token)])


class DrainRequest(BaseModel):
    """Optional body for ``POST /internal/enforcement/process``."""

    max_jobs: int | None = Field(default=None, ge=1, description="Stop after this many jobs.")


# ---------------------------------------------------------------------------
# Enforcement queue
# ---------------------------------------------------------------------------


@router.post("/enforcement/process")
async def process_jobs(processor: ProcessorDep, body: DrainRequest | None = None) -> dict[str, Any]:
    """Drain due sync jobs now instead of waiting for the background worker."""
    summary = await processor.drain(max_jobs=body.max_jobs if body else None)
    return {"status": "completed", **summary.to_dict()}


@router.get("/enforcement/status")
async def queue_status(session: SessionDep, policy: RetryPolicyDep) -> dict[str, Any]:
    """Return job counts per queue status."""
    counts = await SyncQueue(session, policy).status_counts()
    record_queue_depth(counts)
    return {"counts": counts, "total": sum(counts.values()), "max_attempts": policy.max_attempts}


@router.get("/enforcement/dead")
async def dead_jobs(
    session: SessionDep,
    policy: RetryPolicyDep,
    limit: int = Query(default=100, ge=1, le=500),
) -> dict[str, Any]:
    """List jobs that exhausted their attempts, most recent first."""
    jobs = await SyncQueue(session, policy).list_dead(limit)
    return {"jobs": [job_to_dict(job) for job in jobs], "count": len(jobs)}


@router.post("/enforcement/jobs/{job_id}/requeue")
async def requeue_job(job_id: str, session: SessionDep, policy: RetryPolicyDep) -> dict[str, Any]:
    """Give a dead job a fresh set of attempts."""
    try:
        job = await SyncQueue(session, policy).requeue_dead(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    await set_tenant_context(session, job.tenant_id)
    await AuditService(session, tenant_id=job.tenant_id, actor="internal").log(
        AuditAction.JOB_REQUEUED,
        job.resource_type,
        job.resource_id,
        source=AuditSource.ENFORCEMENT,
        outcome="pending",
        reason=job.reason,
        job_id=job.id,
    )
    return {"status": "requeued", "job": job_to_dict(job)}


# ---------------------------------------------------------------------------
# Manual reconciliation
# ---------------------------------------------------------------------------


@router.post("/tenants/{tenant_id}/sync")
async def sync_tenant(tenant_id: str, sweeper: SweeperDep) -> dict[str, Any]:
    """Reconcile one tenant against the provider now."""
    summary = await sweeper.sweep_tenant(tenant_id)
    return {"status": "failed" if summary.errors else "completed", **summary.to_dict()}
