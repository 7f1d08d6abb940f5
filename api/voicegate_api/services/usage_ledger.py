"""Usage ledger: per-tenant consumption against subscription limits.

Answers "can this tenant do X" before a resource-mutating action runs, and
records call minutes after a call has actually happened.

* ``minutes`` are read from the tenant's usage record.
* ``assistants`` are counted live from active assistant rows, so the check
  is never fooled by a stale cached counter.

A refused action is reported with the current usage and the limit so callers
can show which limit was hit.  A zero limit is never allowed.  A tenant
without a usage record was never provisioned; that is surfaced as
:class:`TenantNotProvisionedError` instead of silently defaulting to a plan.

Once recorded minutes reach the limit, every active assistant is capped:
a ``disable`` job is enqueued for it and its row is flagged
``usage_limited``.  :meth:`UsageLedger.rollover_period` enqueues ``enable``
jobs for the flagged assistants, oldest first and no more than the
assistant limit leaves room for.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from voicegate_core.plans import (
    PlanTier,
    UsageKind,
    WarningLevel,
    get_plan_limits,
    parse_tier,
    warning_level,
)
from voicegate_core.state.repository import ResourceRepository, TenantUsageRepository
from voicegate_core.state.tables import TenantUsageTable
from voicegate_core.sync import DOWNGRADE_PRIORITY, RetryPolicy, SyncAction

from voicegate_api.services.audit_service import AuditAction, AuditService, AuditSource
from voicegate_api.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

MINUTES_EXHAUSTED_REASON = "monthly call minutes exhausted"
PERIOD_ROLLOVER_REASON = "billing period rolled over"

__all__ = [
    "MINUTES_EXHAUSTED_REASON",
    "PERIOD_ROLLOVER_REASON",
    "TenantNotProvisionedError",
    "UsageDecision",
    "UsageLedger",
    "UsageLimitExceededError",
    "warning_level",
]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TenantNotProvisionedError(LookupError):
    """The tenant has no usage record."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant {tenant_id!r} has no usage record; it was never provisioned")
        self.tenant_id = tenant_id


class UsageLimitExceededError(Exception):
    """An action would push a tenant past a plan limit.

    Rendered by the API as HTTP 403 with code ``USAGE_LIMIT_EXCEEDED``.
    """

    code = "USAGE_LIMIT_EXCEEDED"

    def __init__(self, limit_type: str, current: float, limit: int, message: str | None = None) -> None:
        self.limit_type = limit_type
        self.current = current
        self.limit = limit
        self.message = message or _refusal_message(limit_type, current, limit)
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "limit_type": self.limit_type,
            "current": self.current,
            "limit": self.limit,
        }


def _format_usage(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def _refusal_message(limit_type: str, current: float, limit: int) -> str:
    if limit_type == UsageKind.MINUTES.value:
        return (
            f"Monthly call minutes limit reached ({_format_usage(current)}/{limit}). "
            "Upgrade your plan for more minutes."
        )
    return f"Assistant limit reached ({_format_usage(current)}/{limit}). Upgrade your plan to create more assistants."


# ---------------------------------------------------------------------------
# Result model
# ---------------------------------------------------------------------------


class UsageDecision(BaseModel):
    """Answer to :meth:`UsageLedger.can_perform`."""

    allowed: bool
    action: UsageKind
    current_usage: float
    limit: int
    increment: float
    message: str | None = None

    def raise_if_refused(self) -> None:
        """Raise :class:`UsageLimitExceededError` when ``allowed`` is false."""
        if not self.allowed:
            raise UsageLimitExceededError(self.action.value, self.current_usage, self.limit, self.message)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class UsageLedger:
    """Usage checks and call accounting for one tenant.

    Parameters
    ----------
    session:
        Active database session.
    tenant_id:
        The tenant whose usage is read or written.
    policy:
        Retry policy for the queue receiving usage-limit jobs.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str, policy: RetryPolicy | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._usage_repo = TenantUsageRepository(session, tenant_id)
        self._resource_repo = ResourceRepository(session, tenant_id)
        self._queue = SyncQueue(session, policy)
        self._audit = AuditService(session, tenant_id=tenant_id)

    async def _require_record(self, *, lock: bool = False) -> TenantUsageTable:
        record = await (self._usage_repo.get_for_update() if lock else self._usage_repo.get())
        if record is None:
            logger.error("Usage record missing for tenant=%s", self._tenant_id)
            raise TenantNotProvisionedError(self._tenant_id)
        return record

    async def can_perform(self, action: UsageKind | str, increment: float = 1) -> UsageDecision:
        """Check whether *action* with *increment* stays within the tenant's limit.

        Parameters
        ----------
        action:
            ``minutes`` or ``assistants``.
        increment:
            Amount the action would add (minutes, or number of assistants).

        Returns
        -------
        UsageDecision
            ``allowed`` is ``False`` when ``current + increment > limit`` or
            the limit is zero.
        """
        kind = UsageKind(action)
        if increment < 0:
            raise ValueError(f"increment must be non-negative, got {increment}")

        record = await self._require_record()
        if kind is UsageKind.MINUTES:
            current: float = float(record.minutes_used)
            limit = int(record.minutes_limit)
        else:
            current = float(await self._resource_repo.count_active_assistants())
            limit = int(record.assistant_limit)

        allowed = limit > 0 and current + increment <= limit
        message = None
        if not allowed:
            message = _refusal_message(kind.value, current, limit)
            logger.warning(
                "Usage limit refused: tenant=%s %s=%s+%s/%d",
                self._tenant_id,
                kind.value,
                _format_usage(current),
                _format_usage(increment),
                limit,
            )
        return UsageDecision(
            allowed=allowed,
            action=kind,
            current_usage=current,
            limit=limit,
            increment=increment,
            message=message,
        )

    async def usage_summary(self) -> dict[str, Any]:
        """Return used/limit/percentage/warning for minutes and assistants."""
        record = await self._require_record()
        assistants_used = await self._resource_repo.count_active_assistants()

        def _entry(used: float, limit: int, kind: UsageKind) -> dict[str, Any]:
            return {
                "used": used,
                "limit": limit,
                "percentage": round((used / limit) * 100, 1) if limit else None,
                "warning_level": warning_level(used, limit, kind).value,
            }

        return {
            "tenant_id": self._tenant_id,
            "plan_tier": record.plan_tier,
            "subscription_status": record.subscription_status,
            "period_start": record.period_start.isoformat() if record.period_start else None,
            "period_end": record.period_end.isoformat() if record.period_end else None,
            "minutes": _entry(float(record.minutes_used), record.minutes_limit, UsageKind.MINUTES),
            "assistants": _entry(float(assistants_used), record.assistant_limit, UsageKind.ASSISTANTS),
        }

    async def warning_for(self, kind: UsageKind | str) -> WarningLevel:
        """Return the current warning level for one dimension."""
        summary = await self.usage_summary()
        return WarningLevel(summary[UsageKind(kind).value]["warning_level"])

    async def record_call_minutes(self, minutes: float) -> float:
        """Add completed call minutes under a row lock.  Returns the new total.

        Consumption only grows within a period; only
        :meth:`rollover_period` resets it.  When the total reaches the
        minutes limit, assistants not yet capped get a ``disable`` job.
        """
        if minutes < 0:
            raise ValueError(f"minutes must be non-negative, got {minutes}")
        record = await self._require_record(lock=True)
        record.minutes_used = float(record.minutes_used) + float(minutes)
        await self._session.flush()
        logger.info(
            "Recorded %.2f call minutes for tenant=%s (total=%.2f/%d)",
            minutes,
            self._tenant_id,
            record.minutes_used,
            record.minutes_limit,
        )
        if record.minutes_used >= record.minutes_limit:
            await self._limit_assistants(record)
        return record.minutes_used

    async def _limit_assistants(self, record: TenantUsageTable) -> list[str]:
        now = datetime.now(UTC)
        limited: list[str] = []
        for assistant in await self._resource_repo.list_active("assistant"):
            if assistant.usage_limited:
                continue
            await self._queue.enqueue(
                tenant_id=self._tenant_id,
                resource_type="assistant",
                resource_id=assistant.id,
                external_id=assistant.external_id,
                action=SyncAction.DISABLE,
                reason=MINUTES_EXHAUSTED_REASON,
                priority=DOWNGRADE_PRIORITY,
            )
            assistant.usage_limited = True
            assistant.usage_limited_at = now
            await self._audit.log(
                AuditAction.USAGE_LIMITED,
                "assistant",
                assistant.id,
                source=AuditSource.USAGE,
                outcome="disable_enqueued",
                reason=MINUTES_EXHAUSTED_REASON,
                minutes_used=float(record.minutes_used),
                minutes_limit=record.minutes_limit,
            )
            limited.append(assistant.id)
        await self._session.flush()
        if limited:
            logger.warning(
                "Tenant %s exhausted %d call minutes; capping assistant(s) %s",
                self._tenant_id,
                record.minutes_limit,
                ", ".join(limited),
            )
        return limited

    async def refresh_assistant_count(self) -> int:
        """Recompute the cached ``assistant_count`` from active assistant rows."""
        record = await self._require_record(lock=True)
        record.assistant_count = await self._resource_repo.count_active_assistants()
        await self._session.flush()
        return record.assistant_count

    async def rollover_period(self, period_start: datetime, period_end: datetime) -> list[str]:
        """Start a new billing period, reset consumed minutes and lift usage caps.

        Assistants capped for exhausted minutes get an ``enable`` job, oldest
        first, while the assistant limit has room for them.  The rest stay
        disabled.  Every cap flag is cleared either way.

        Returns
        -------
        list[str]
            Ids of the assistants an ``enable`` job was enqueued for.
        """
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")
        record = await self._require_record(lock=True)
        record.minutes_used = 0.0
        record.period_start = period_start
        record.period_end = period_end
        await self._session.flush()
        restored = await self._restore_assistants(record, PERIOD_ROLLOVER_REASON)
        logger.info(
            "Rolled over billing period for tenant=%s (%d assistant(s) restored)",
            self._tenant_id,
            len(restored),
        )
        return restored

    async def lift_usage_caps(self, reason: str) -> list[str]:
        """Restore capped assistants mid-period once minutes are available again.

        A no-op while the tenant is still at or over its minutes limit.
        """
        record = await self._require_record(lock=True)
        if record.minutes_used >= record.minutes_limit:
            return []
        return await self._restore_assistants(record, reason)

    async def _restore_assistants(self, record: TenantUsageTable, reason: str) -> list[str]:
        limited = await self._resource_repo.list_usage_limited_assistants()
        if not limited:
            return []

        # A capped assistant whose disable job has not run yet is still active.
        uncapped = sum(1 for a in await self._resource_repo.list_active("assistant") if not a.usage_limited)
        room = max(0, record.assistant_limit - uncapped)
        restored: list[str] = []
        for assistant in limited:
            assistant.usage_limited = False
            assistant.usage_limited_at = None
            if len(restored) >= room:
                await self._audit.log(
                    AuditAction.USAGE_RESTORED,
                    "assistant",
                    assistant.id,
                    source=AuditSource.USAGE,
                    outcome="over_assistant_limit",
                    reason=reason,
                )
                continue
            await self._queue.enqueue(
                tenant_id=self._tenant_id,
                resource_type="assistant",
                resource_id=assistant.id,
                external_id=assistant.external_id,
                action=SyncAction.ENABLE,
                reason=reason,
            )
            await self._audit.log(
                AuditAction.USAGE_RESTORED,
                "assistant",
                assistant.id,
                source=AuditSource.USAGE,
                outcome="enable_enqueued",
                reason=reason,
            )
            restored.append(assistant.id)
        await self._session.flush()
        return restored

    async def provision(self, tier: PlanTier | str = PlanTier.FREE) -> TenantUsageTable:
        """Create the usage record of a new tenant on *tier*.

        Raises
        ------
        ValueError
            If the tenant already has a usage record.
        """
        if await self._usage_repo.get() is not None:
            raise ValueError(f"Tenant {self._tenant_id!r} is already provisioned")
        limits = get_plan_limits(parse_tier(tier) if isinstance(tier, str) else tier)
        return await self._usage_repo.create(
            plan_tier=limits.tier.value,
            minutes_limit=limits.max_minutes_monthly,
            assistant_limit=limits.max_assistants,
            period_start=datetime.now(UTC),
        )
