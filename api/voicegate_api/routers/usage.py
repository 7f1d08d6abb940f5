"""Usage ledger endpoints for internal callers.

The call-handling and resource-creation services ask here before acting:
``POST .../usage/check`` answers 200 when allowed and 403
``USAGE_LIMIT_EXCEEDED`` when refused.  Completed calls are reported to
``POST .../usage/minutes``; reaching the minutes limit caps the tenant's
assistants until ``POST .../usage/rollover`` starts the next period.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from voicegate_core.plans import UsageKind
from voicegate_core.state.database import set_tenant_context

from voicegate_api.dependencies import RetryPolicyDep, SessionDep, require_internal_token
from voicegate_api.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/tenants",
    tags=["usage"],
    dependencies=[Depends(require_internal_token)],
)


class UsageCheckRequest(BaseModel):
    """Request body for ``POST /internal/tenants/{tenant_id}/usage/check``."""

    action: UsageKind = Field(..., description="'minutes' or 'assistants'.")
    increment: float = Field(default=1, ge=0, description="Amount the action would add.")


class CallMinutesRequest(BaseModel):
    """Request body for ``POST /internal/tenants/{tenant_id}/usage/minutes``."""

    minutes: float = Field(..., ge=0, description="Billable minutes of a completed call.")
    call_id: str | None = Field(default=None, description="Provider call id, for logs.")


class PeriodRolloverRequest(BaseModel):
    """Request body for ``POST /internal/tenants/{tenant_id}/usage/rollover``."""

    period_start: datetime
    period_end: datetime


@router.get("/{tenant_id}/usage")
async def get_usage(tenant_id: str, session: SessionDep) -> dict[str, Any]:
    """Return used/limit/percentage/warning level for minutes and assistants."""
    await set_tenant_context(session, tenant_id)
    return await UsageLedger(session, tenant_id=tenant_id).usage_summary()


@router.post("/{tenant_id}/usage/check")
async def check_usage(tenant_id: str, body: UsageCheckRequest, session: SessionDep) -> dict[str, Any]:
    """Check whether an action fits within the tenant's limits.

    A refusal is raised as ``UsageLimitExceededError`` and rendered as 403.
    """
    await set_tenant_context(session, tenant_id)
    decision = await UsageLedger(session, tenant_id=tenant_id).can_perform(body.action, body.increment)
    decision.raise_if_refused()
    return decision.model_dump(mode="json")


@router.post("/{tenant_id}/usage/minutes")
async def record_minutes(
    tenant_id: str,
    body: CallMinutesRequest,
    session: SessionDep,
    policy: RetryPolicyDep,
) -> dict[str, Any]:
    """Add the minutes of a completed call to the tenant's period total."""
    await set_tenant_context(session, tenant_id)
    total = await UsageLedger(session, tenant_id=tenant_id, policy=policy).record_call_minutes(body.minutes)
    if body.call_id:
        logger.info("Accounted call %s for tenant=%s", body.call_id, tenant_id)
    return {"tenant_id": tenant_id, "minutes_used": total}


@router.post("/{tenant_id}/usage/rollover")
async def rollover_period(
    tenant_id: str,
    body: PeriodRolloverRequest,
    session: SessionDep,
    policy: RetryPolicyDep,
) -> dict[str, Any]:
    """Start a new billing period: reset minutes and restore capped assistants."""
    if body.period_end <= body.period_start:
        raise HTTPException(status_code=422, detail="period_end must be after period_start")
    await set_tenant_context(session, tenant_id)
    ledger = UsageLedger(session, tenant_id=tenant_id, policy=policy)
    restored = await ledger.rollover_period(body.period_start, body.period_end)
    return {"tenant_id": tenant_id, "restored_assistants": restored}
