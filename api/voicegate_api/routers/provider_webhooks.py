"""Voice provider resource webhook endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from voicegate_api.dependencies import InboundWebhookDep, SessionDep, VoiceGateDep
from voicegate_api.routers.webhook_gate import accept_delivery
from voicegate_api.services.resource_events import MalformedEventError, ResourceEventHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/voice", tags=["webhooks"])


@router.get("/resource")
async def resource_webhook_ping() -> dict[str, str]:
    """Readiness ping used by the provider when the webhook URL is registered."""
    return {"status": "ok", "endpoint": "voice-resource-webhook"}


@router.post("/resource")
async def resource_webhook(
    request: Request,
    inbound: InboundWebhookDep,
    gate: VoiceGateDep,
    session: SessionDep,
) -> dict[str, Any]:
    """Apply an ``assistant.*`` or ``phoneNumber.*`` event to the local mirrors.

    Unknown event types are acknowledged and ignored; a known type with a
    malformed body is rejected with 400.
    """
    payload = await accept_delivery(gate, inbound)
    try:
        result = await ResourceEventHandler(session).handle(payload)
    except MalformedEventError as exc:
        logger.warning("Rejected malformed provider event: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    request.state.tenant_id = result.get("tenant_id")
    return result
