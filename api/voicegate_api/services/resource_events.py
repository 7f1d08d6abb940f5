"""Voice provider resource webhooks.

The provider notifies us when an assistant or phone number is created,
updated or deleted on its side, including changes made outside this
platform (e.g. in the provider's dashboard).  Events are validated against
a closed set of types:

========================  =================
``assistant.*``           ``assistantId``
``phoneNumber.*``         ``phoneNumberId``
========================  =================

An unknown type is acknowledged and ignored so provider additions never
cause redelivery storms.  A known type with a malformed body is rejected.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from voicegate_core.state.database import set_tenant_context
from voicegate_core.state.repository import ResourceRepository

from voicegate_api.services.audit_service import AuditAction, AuditService, AuditSource
from voicegate_api.services.usage_ledger import TenantNotProvisionedError, UsageLedger

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event models
# ---------------------------------------------------------------------------


class _ResourceEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    timestamp: datetime | int | float | str
    resource_type: str = Field(alias="resourceType")
    resource_id: str = Field(alias="resourceId", min_length=1)
    org_id: str = Field(alias="orgId", min_length=1)
    action: Literal["created", "updated", "deleted"]


class AssistantEvent(_ResourceEventBase):
    type: Literal["assistant.created", "assistant.updated", "assistant.deleted"]
    assistant_id: str = Field(alias="assistantId", min_length=1)

    @property
    def local_type(self) -> str:
        return "assistant"

    @property
    def external_id(self) -> str:
        return self.assistant_id


class PhoneNumberEvent(_ResourceEventBase):
    type: Literal["phoneNumber.created", "phoneNumber.updated", "phoneNumber.deleted"]
    phone_number_id: str = Field(alias="phoneNumberId", min_length=1)

    @property
    def local_type(self) -> str:
        return "phone_number"

    @property
    def external_id(self) -> str:
        return self.phone_number_id


ResourceEvent = AssistantEvent | PhoneNumberEvent

_EVENT_MODELS: dict[str, type[AssistantEvent] | type[PhoneNumberEvent]] = {
    **{t: AssistantEvent for t in ("assistant.created", "assistant.updated", "assistant.deleted")},
    **{t: PhoneNumberEvent for t in ("phoneNumber.created", "phoneNumber.updated", "phoneNumber.deleted")},
}


class MalformedEventError(ValueError):
    """A known event type whose body fails validation."""


def parse_resource_event(payload: dict[str, Any]) -> ResourceEvent | None:
    """Validate *payload* against the closed event set.

    Returns
    -------
    AssistantEvent | PhoneNumberEvent | None
        ``None`` for an unknown event type.

    Raises
    ------
    MalformedEventError
        If the type is known but the body is invalid.
    """
    model = _EVENT_MODELS.get(str(payload.get("type", "")))
    if model is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedEventError(f"invalid {payload.get('type')} event: {fields}") from exc


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class ResourceEventHandler:
    """Applies provider resource events to the local mirrors."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Validate and apply one event.

        Returns
        -------
        dict
            ``status`` is ``processed`` or ``ignored``.

        Raises
        ------
        MalformedEventError
            For a known event type with an invalid body.
        """
        event = parse_resource_event(payload)
        if event is None:
            logger.debug("Ignoring unknown provider event type %r", payload.get("type"))
            return {"status": "ignored", "reason": "unknown_event_type"}

        row = await ResourceRepository.find_by_external_id(self._session, event.local_type, event.external_id)
        if row is None:
            logger.info(
                "Provider %s for unknown %s %s; nothing to sync", event.type, event.local_type, event.external_id
            )
            return {"status": "ignored", "reason": "unknown_resource"}

        tenant_id = row.tenant_id
        await set_tenant_context(self._session, tenant_id)
        resources = ResourceRepository(self._session, tenant_id)
        audit = AuditService(self._session, tenant_id=tenant_id, actor=f"provider:{event.org_id}")

        if event.action == "deleted":
            await resources.mark(event.local_type, row.id, active=False, sync_status="deleted", synced=True)
            unassigned = 0
            if event.local_type == "assistant":
                unassigned = await resources.unassign_phone_numbers(row.id)
                try:
                    await UsageLedger(self._session, tenant_id=tenant_id).refresh_assistant_count()
                except TenantNotProvisionedError:
                    logger.warning("Skipping assistant count refresh for unprovisioned tenant=%s", tenant_id)
            await audit.log(
                AuditAction.DELETED,
                event.local_type,
                row.id,
                source=AuditSource.WEBHOOK_SYNC,
                outcome="synced",
                reason=f"provider {event.type}",
                external_id=event.external_id,
                unassigned_phone_numbers=unassigned,
            )
        else:
            await resources.mark(event.local_type, row.id, sync_status="synced", synced=True)
            await audit.log(
                AuditAction.SYNCED,
                event.local_type,
                row.id,
                source=AuditSource.WEBHOOK_SYNC,
                outcome="synced",
                reason=f"provider {event.type}",
                external_id=event.external_id,
            )

        logger.info("Applied provider %s to %s %s (tenant=%s)", event.type, event.local_type, row.id, tenant_id)
        return {"status": "processed", "tenant_id": tenant_id, "resource_id": row.id}
