"""Shared handling of webhook security gate results for the webhook routers."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException
from voicegate_core.security import InboundWebhook, RejectionReason, WebhookSecurityGate

from voicegate_api.middleware.prometheus import WEBHOOK_REJECTIONS_TOTAL

# Rejections not listed here map to 400.
_REJECTION_STATUS: dict[RejectionReason, int] = {
    RejectionReason.INVALID_SIGNATURE: 401,
    RejectionReason.INSECURE_TRANSPORT: 403,
    RejectionReason.SOURCE_NOT_ALLOWED: 403,
    RejectionReason.PAYLOAD_TOO_LARGE: 413,
    RejectionReason.DUPLICATE: 409,
}


def rejection_status(reason: RejectionReason) -> int:
    """HTTP status code for a gate rejection."""
    return _REJECTION_STATUS.get(reason, 400)


async def accept_delivery(gate: WebhookSecurityGate, inbound: InboundWebhook) -> dict[str, Any]:
    """Run *inbound* through *gate* and return the parsed payload.

    Raises
    ------
    HTTPException
        With ``detail`` set to the rejection reason when the gate refuses.
    """
    result = await gate.validate(inbound)
    if result.accepted and result.payload is not None:
        return result.payload
    # An accepted result always carries a payload; anything else is a rejection.
    reason = result.reason or RejectionReason.MALFORMED_PAYLOAD
    WEBHOOK_REJECTIONS_TOTAL.labels(provider=gate.name, reason=reason.value).inc()
    raise HTTPException(status_code=rejection_status(reason), detail=reason.value)
