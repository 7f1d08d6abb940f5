"""Payment-processor webhook endpoints (Stripe and PayPal).

Both endpoints bypass every other form of authentication: a delivery is
trusted only after the webhook security gate verified its signature.
Unknown tenants are acknowledged with ``{"status": "ignored"}`` so the
processor stops redelivering an event nobody can apply.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request

from voicegate_api.dependencies import (
    InboundWebhookDep,
    PayPalGateDep,
    RetryPolicyDep,
    SessionDep,
    SettingsDep,
    StripeGateDep,
)
from voicegate_api.routers.webhook_gate import accept_delivery
from voicegate_api.services.billing_service import BillingEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    inbound: InboundWebhookDep,
    gate: StripeGateDep,
    session: SessionDep,
    settings: SettingsDep,
    policy: RetryPolicyDep,
) -> dict[str, Any]:
    """Handle a Stripe subscription or invoice event."""
    event = await accept_delivery(gate, inbound)
    result = await BillingEventService(session, settings, policy=policy).handle_stripe_event(event)
    request.state.tenant_id = result.get("tenant_id")
    return result


@router.post("/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    inbound: InboundWebhookDep,
    gate: PayPalGateDep,
    session: SessionDep,
    settings: SettingsDep,
    policy: RetryPolicyDep,
) -> dict[str, Any]:
    """Handle a PayPal subscription or payment event."""
    event = await accept_delivery(gate, inbound)
    result = await BillingEventService(session, settings, policy=policy).handle_paypal_event(event)
    request.state.tenant_id = result.get("tenant_id")
    return result
