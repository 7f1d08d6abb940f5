"""Centralized audit logging service.

Wraps :class:`AuditRepository` with predefined source/action constants and a
simplified interface.  Every resource state transition (disable, delete,
re-sync, drift detection) and every subscription transition is funnelled
through this service so tenant-support staff can reconstruct what happened
to an assistant or phone number and why.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from voicegate_core.state.repository import AuditRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------


class AuditSource:
    """What triggered the logged transition."""

    MANUAL_SYNC = "manual_sync"
    WEBHOOK_SYNC = "webhook_sync"
    SCHEDULED_SYNC = "scheduled_sync"
    ENFORCEMENT = "enforcement"
    SUBSCRIPTION = "subscription"
    USAGE = "usage"


class AuditAction:
    """Well-known audit action identifiers.

    String constants rather than an enum so ad-hoc actions can be logged
    without a schema change.
    """

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    DISABLED = "disabled"
    ENABLED = "enabled"
    SYNCED = "synced"
    DRIFT = "drift"
    ERROR = "error"
    TRANSITION = "transition"
    JOB_DEAD = "job_dead"
    JOB_REQUEUED = "job_requeued"
    USAGE_LIMITED = "usage_limited"
    USAGE_RESTORED = "usage_restored"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditService:
    """Thin wrapper around :class:`AuditRepository`.

    Parameters
    ----------
    session:
        The async database session for the current unit of work.
    tenant_id:
        Tenant owning the resource being logged.
    actor:
        Identity of the principal performing the action.  Defaults to
        ``"system"`` for workers and webhooks.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor: str = "system",
    ) -> None:
        self._repo = AuditRepository(session, tenant_id=tenant_id)
        self._tenant_id = tenant_id
        self._actor = actor

    async def log(
        self,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        *,
        source: str,
        outcome: str | None = None,
        reason: str | None = None,
        **kwargs: object,
    ) -> str:
        """Record an audit event.

        Extra keyword arguments are stored in ``metadata_json`` (for example
        ``external_id``, ``job_id``, ``error``).

        Returns the generated audit entry ID.
        """
        metadata: dict | None = dict(kwargs) if kwargs else None  # type: ignore[arg-type]
        logger.info(
            "audit tenant=%s source=%s action=%s %s=%s outcome=%s reason=%s",
            self._tenant_id,
            source,
            action,
            resource_type,
            resource_id,
            outcome,
            reason,
        )
        return await self._repo.log(
            actor=self._actor,
            source=source,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            reason=reason,
            metadata=metadata,
        )
