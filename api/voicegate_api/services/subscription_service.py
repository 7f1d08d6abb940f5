"""Subscription state machine.

Applies a (tier, status) change to a tenant's usage record and, unless the
effective assistant limit grows, enqueues the ``disable`` jobs that bring
the tenant back within it.

The tenant record is row-locked for the whole transition so the write of
tier, status, limits and period happens in a single flush and cannot
interleave with call accounting or another transition.  Enforcement is
asynchronous: this service only enqueues jobs; the enforcement processor
executes them.

Retention is oldest-first: the ``limit`` oldest active assistants (by
creation time, ties broken by id) stay enabled, newer ones are disabled.
Phone numbers routed to a disabled assistant are disabled as well.
Upgrades disable nothing.  A transition that leaves the tenant with minutes
to spend lifts the caps placed on its assistants for exhausted minutes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from voicegate_core.plans import PlanTier, SubscriptionStatus, effective_limits
from voicegate_core.state.repository import ResourceRepository, TenantUsageRepository
from voicegate_core.sync import DOWNGRADE_PRIORITY, RetryPolicy, SyncAction

from voicegate_api.services.audit_service import AuditAction, AuditService, AuditSource
from voicegate_api.services.sync_queue import SyncQueue
from voicegate_api.services.usage_ledger import TenantNotProvisionedError, UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    """What :meth:`SubscriptionService.transition` changed."""

    previous_tier: str
    previous_status: str
    tier: str
    status: str
    assistant_limit: int
    minutes_limit: int
    disabled_assistants: list[str] = field(default_factory=list)
    disabled_phone_numbers: list[str] = field(default_factory=list)
    restored_assistants: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return (self.previous_tier, self.previous_status) != (self.tier, self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_tier": self.previous_tier,
            "previous_status": self.previous_status,
            "tier": self.tier,
            "status": self.status,
            "assistant_limit": self.assistant_limit,
            "minutes_limit": self.minutes_limit,
            "disabled_assistants": list(self.disabled_assistants),
            "disabled_phone_numbers": list(self.disabled_phone_numbers),
            "restored_assistants": list(self.restored_assistants),
        }


class SubscriptionService:
    """Subscription transitions for a single tenant.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    tenant_id:
        The tenant whose subscription changes.
    policy:
        Retry policy for the queue receiving downgrade jobs.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._policy = policy
        self._usage_repo = TenantUsageRepository(session, tenant_id)
        self._resources = ResourceRepository(session, tenant_id)
        self._queue = SyncQueue(session, policy)
        self._audit = AuditService(session, tenant_id=tenant_id)

    async def transition(
        self,
        tier: PlanTier | str,
        status: SubscriptionStatus | str,
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        payment_provider: str | None = None,
        external_subscription_id: str | None = None,
        stripe_customer_id: str | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        """Move the tenant to (*tier*, *status*) and enforce the new limits.

        Raises
        ------
        TenantNotProvisionedError
            If the tenant has no usage record.
        ValueError
            For an unknown tier or status value.
        """
        tier = PlanTier(tier)
        status = SubscriptionStatus(status)

        record = await self._usage_repo.get_for_update()
        if record is None:
            raise TenantNotProvisionedError(self._tenant_id)

        previous_tier = record.plan_tier
        previous_status = record.subscription_status
        previous_assistant_limit = record.assistant_limit
        limits = effective_limits(tier, status)

        record.plan_tier = tier.value
        record.subscription_status = status.value
        record.assistant_limit = limits.max_assistants
        record.minutes_limit = limits.max_minutes_monthly
        if period_start is not None:
            record.period_start = period_start
        if period_end is not None:
            record.period_end = period_end
        if payment_provider is not None:
            record.payment_provider = payment_provider
        if external_subscription_id is not None:
            record.external_subscription_id = external_subscription_id
        if stripe_customer_id is not None:
            record.stripe_customer_id = stripe_customer_id
        await self._session.flush()

        result = TransitionResult(
            previous_tier=previous_tier,
            previous_status=previous_status,
            tier=tier.value,
            status=status.value,
            assistant_limit=limits.max_assistants,
            minutes_limit=limits.max_minutes_monthly,
        )
        transition_reason = reason or f"subscription {previous_tier}/{previous_status} -> {tier.value}/{status.value}"

        if limits.max_assistants <= previous_assistant_limit:
            await self._enforce_assistant_limit(limits.max_assistants, transition_reason, result)
        if record.minutes_used < limits.max_minutes_monthly:
            ledger = UsageLedger(self._session, tenant_id=self._tenant_id, policy=self._policy)
            result.restored_assistants = await ledger.lift_usage_caps(transition_reason)

        await self._audit.log(
            AuditAction.TRANSITION,
            source=AuditSource.SUBSCRIPTION,
            outcome="applied",
            reason=transition_reason,
            previous_tier=previous_tier,
            previous_status=previous_status,
            tier=tier.value,
            status=status.value,
            assistant_limit=limits.max_assistants,
            minutes_limit=limits.max_minutes_monthly,
            disabled_assistants=len(result.disabled_assistants),
        )
        logger.info(
            "Subscription transition tenant=%s %s/%s -> %s/%s (assistants limit %d -> %d, %d disable job(s))",
            self._tenant_id,
            previous_tier,
            previous_status,
            tier.value,
            status.value,
            previous_assistant_limit,
            limits.max_assistants,
            len(result.disabled_assistants) + len(result.disabled_phone_numbers),
        )
        return result

    async def _enforce_assistant_limit(self, limit: int, reason: str, result: TransitionResult) -> None:
        active = await self._resources.list_active("assistant")
        excess = active[limit:]
        if not excess:
            return

        for assistant in excess:
            await self._queue.enqueue(
                tenant_id=self._tenant_id,
                resource_type="assistant",
                resource_id=assistant.id,
                external_id=assistant.external_id,
                action=SyncAction.DISABLE,
                reason=reason,
                priority=DOWNGRADE_PRIORITY,
            )
            result.disabled_assistants.append(assistant.id)

            for number in await self._resources.list_phone_numbers_for_assistant(assistant.id):
                await self._queue.enqueue(
                    tenant_id=self._tenant_id,
                    resource_type="phone_number",
                    resource_id=number.id,
                    external_id=number.external_id,
                    action=SyncAction.DISABLE,
                    reason=f"assigned assistant {assistant.id} disabled: {reason}",
                    priority=DOWNGRADE_PRIORITY,
                )
                result.disabled_phone_numbers.append(number.id)

        logger.warning(
            "Tenant %s has %d active assistant(s) over limit %d; disabling %s",
            self._tenant_id,
            len(active),
            limit,
            ", ".join(result.disabled_assistants),
        )
