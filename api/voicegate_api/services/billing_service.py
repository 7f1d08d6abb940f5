"""Payment-processor webhook handling (Stripe and PayPal).

Translates verified payment events into subscription transitions.  Events
arrive here only after the webhook security gate accepted them, so this
module deals with meaning, not authenticity:

* resolve the tenant the event belongs to;
* drop redeliveries using the persistent ``webhook_events`` table;
* map the processor's subscription state onto (tier, status) and hand it to
  :class:`~voicegate_api.services.subscription_service.SubscriptionService`.

An event whose tenant cannot be resolved is acknowledged as ``ignored``:
retrying it would not make the mapping appear.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from voicegate_core.plans import PlanTier, SubscriptionStatus
from voicegate_core.security.gate import parse_declared_timestamp
from voicegate_core.state.database import set_tenant_context
from voicegate_core.state.repository import TenantUsageRepository, WebhookEventRepository
from voicegate_core.state.tables import TenantUsageTable
from voicegate_core.sync import RetryPolicy

from voicegate_api.config import APISettings
from voicegate_api.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Status maps
# ---------------------------------------------------------------------------

_STRIPE_STATUS: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}

_PAYPAL_STATUS: dict[str, SubscriptionStatus] = {
    "ACTIVE": SubscriptionStatus.ACTIVE,
    "SUSPENDED": SubscriptionStatus.PAST_DUE,
    "CANCELLED": SubscriptionStatus.CANCELLED,
    "EXPIRED": SubscriptionStatus.CANCELLED,
}

# Status implied by the event type when the resource carries none.
_PAYPAL_EVENT_STATUS: dict[str, str] = {
    "BILLING.SUBSCRIPTION.ACTIVATED": "ACTIVE",
    "BILLING.SUBSCRIPTION.CANCELLED": "CANCELLED",
    "BILLING.SUBSCRIPTION.SUSPENDED": "SUSPENDED",
    "BILLING.SUBSCRIPTION.EXPIRED": "EXPIRED",
}

STRIPE_SUBSCRIPTION_EVENTS: frozenset[str] = frozenset(
    {"customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"}
)
STRIPE_INVOICE_EVENTS: frozenset[str] = frozenset({"invoice.paid", "invoice.payment_failed"})

PAYPAL_SUBSCRIPTION_EVENTS: frozenset[str] = frozenset(
    {"BILLING.SUBSCRIPTION.UPDATED", *_PAYPAL_EVENT_STATUS}
)
PAYPAL_PAYMENT_EVENTS: frozenset[str] = frozenset({"PAYMENT.SALE.COMPLETED", "PAYMENT.SALE.REFUNDED"})

TENANT_METADATA_KEY = "voicegate_tenant_id"


def map_stripe_status(status: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status; anything unrecognised is ``inactive``."""
    return _STRIPE_STATUS.get(status or "", SubscriptionStatus.INACTIVE)


def map_paypal_status(status: str | None) -> SubscriptionStatus:
    """Map a PayPal subscription status; anything unrecognised is ``inactive``."""
    return _PAYPAL_STATUS.get((status or "").upper(), SubscriptionStatus.INACTIVE)


def _to_datetime(value: Any) -> datetime | None:
    """Epoch seconds (Stripe) or ISO-8601 (PayPal) to an aware datetime."""
    if value in (None, ""):
        return None
    try:
        return parse_declared_timestamp(value)
    except ValueError:
        logger.warning("Ignoring unparseable billing timestamp %r", value)
        return None


def _ignored(reason: str, **extra: Any) -> dict[str, Any]:
    return {"status": "ignored", "reason": reason, **extra}


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BillingEventService:
    """Applies verified Stripe and PayPal events.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    settings:
        API settings holding the price and plan ids that identify Pro.
    policy:
        Retry policy for downgrade jobs.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._policy = policy
        self._events = WebhookEventRepository(session)

    async def _load_tenant(self, tenant_id: str | None) -> TenantUsageTable | None:
        if not tenant_id:
            return None
        return await TenantUsageRepository(self._session, tenant_id).get()

    async def _claim_event(self, provider: str, event: dict[str, Any], tenant_id: str) -> bool:
        event_id = str(event.get("id") or "")
        if not event_id:
            # Without an id the gate's fingerprint cache is the only replay guard.
            return True
        event_type = str(event.get("type") or event.get("event_type") or "")
        return await self._events.record_if_new(provider, event_id, event_type, tenant_id)

    # -- Stripe ----------------------------------------------------------------

    def _stripe_tier(self, subscription: dict[str, Any]) -> PlanTier:
        items = (subscription.get("items") or {}).get("data") or []
        price_id = ((items[0] if items else {}).get("price") or {}).get("id", "")
        if price_id and price_id == self._settings.stripe_price_id_pro:
            return PlanTier.PRO
        return PlanTier.FREE

    @staticmethod
    def _stripe_period(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
        start = subscription.get("current_period_start")
        end = subscription.get("current_period_end")
        if start is None or end is None:
            # Newer API versions carry the period on the subscription item.
            items = (subscription.get("items") or {}).get("data") or []
            first = items[0] if items else {}
            start = start if start is not None else first.get("current_period_start")
            end = end if end is not None else first.get("current_period_end")
        return _to_datetime(start), _to_datetime(end)

    async def _resolve_stripe_tenant(self, data_object: dict[str, Any]) -> tuple[str | None, str | None]:
        customer_id = data_object.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        if not customer_id and isinstance(data_object.get("subscription"), dict):
            customer_id = data_object["subscription"].get("customer")

        tenant_id: str | None = None
        if customer_id:
            tenant_id = await TenantUsageRepository.resolve_by_stripe_customer(self._session, customer_id)
        if tenant_id is None:
            metadata = data_object.get("metadata") or {}
            tenant_id = metadata.get(TENANT_METADATA_KEY)
        return tenant_id, customer_id

    async def handle_stripe_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Process a Stripe event.

        Supported events:
        - ``customer.subscription.created`` / ``updated`` / ``deleted``
        - ``invoice.payment_failed`` (tenant moves to ``past_due``)
        - ``invoice.paid`` (logged)

        Returns
        -------
        dict
            ``status`` is ``processed``, ``duplicate`` or ``ignored``.
        """
        event_type = str(event.get("type", ""))
        if event_type not in STRIPE_SUBSCRIPTION_EVENTS | STRIPE_INVOICE_EVENTS:
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return _ignored("unhandled_event", event_type=event_type)

        data_object = (event.get("data") or {}).get("object") or {}
        tenant_id, customer_id = await self._resolve_stripe_tenant(data_object)
        record = await self._load_tenant(tenant_id)
        if record is None:
            logger.warning(
                "Stripe webhook event type=%s has no resolvable tenant_id (stripe_customer_id=%s); skipping.",
                event_type,
                customer_id,
            )
            return _ignored("unknown_tenant")
        tenant_id = record.tenant_id

        await set_tenant_context(self._session, tenant_id)
        if not await self._claim_event("stripe", event, tenant_id):
            logger.info("Duplicate Stripe event %s (%s) for tenant=%s", event.get("id"), event_type, tenant_id)
            return {"status": "duplicate"}

        service = SubscriptionService(self._session, tenant_id=tenant_id, policy=self._policy)

        if event_type == "invoice.paid":
            logger.info(
                "Invoice paid: %s for customer %s (amount: %s %s)",
                data_object.get("id"),
                customer_id,
                data_object.get("amount_paid"),
                str(data_object.get("currency", "usd")).upper(),
            )
            return {"status": "processed", "tenant_id": tenant_id}

        if event_type == "invoice.payment_failed":
            logger.warning("Payment failed for tenant=%s (invoice %s)", tenant_id, data_object.get("id"))
            result = await service.transition(
                record.plan_tier,
                SubscriptionStatus.PAST_DUE,
                payment_provider="stripe",
                reason=f"stripe {event_type}",
            )
            return {"status": "processed", "tenant_id": tenant_id, "transition": result.to_dict()}

        if event_type == "customer.subscription.deleted":
            tier, status = PlanTier.FREE, SubscriptionStatus.CANCELLED
        else:
            tier, status = self._stripe_tier(data_object), map_stripe_status(data_object.get("status"))
        period_start, period_end = self._stripe_period(data_object)

        result = await service.transition(
            tier,
            status,
            period_start=period_start,
            period_end=period_end,
            payment_provider="stripe",
            external_subscription_id=data_object.get("id"),
            stripe_customer_id=customer_id,
            reason=f"stripe {event_type}",
        )
        return {"status": "processed", "tenant_id": tenant_id, "transition": result.to_dict()}

    # -- PayPal ----------------------------------------------------------------

    def _paypal_tier(self, resource: dict[str, Any]) -> PlanTier:
        plan_id = resource.get("plan_id", "")
        if plan_id and plan_id == self._settings.paypal_plan_id_pro:
            return PlanTier.PRO
        return PlanTier.FREE

    async def _resolve_paypal_tenant(self, subscription_id: str | None, resource: dict[str, Any]) -> str | None:
        tenant_id: str | None = None
        if subscription_id:
            tenant_id = await TenantUsageRepository.resolve_by_subscription(self._session, subscription_id)
        if tenant_id is None:
            tenant_id = resource.get("custom_id") or None
        return tenant_id

    async def handle_paypal_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Process a PayPal event.

        Supported events:
        - ``BILLING.SUBSCRIPTION.ACTIVATED`` / ``UPDATED`` / ``CANCELLED`` /
          ``SUSPENDED`` / ``EXPIRED``
        - ``PAYMENT.SALE.COMPLETED`` / ``REFUNDED`` (logged)
        """
        event_type = str(event.get("event_type", ""))
        if event_type not in PAYPAL_SUBSCRIPTION_EVENTS | PAYPAL_PAYMENT_EVENTS:
            logger.debug("Unhandled PayPal event type: %s", event_type)
            return _ignored("unhandled_event", event_type=event_type)

        resource = event.get("resource") or {}
        if event_type in PAYPAL_PAYMENT_EVENTS:
            subscription_id = resource.get("billing_agreement_id")
        else:
            subscription_id = resource.get("id")

        tenant_id = await self._resolve_paypal_tenant(subscription_id, resource)
        record = await self._load_tenant(tenant_id)
        if record is None:
            logger.warning(
                "PayPal webhook event type=%s has no resolvable tenant_id (subscription_id=%s); skipping processing.",
                event_type,
                subscription_id,
            )
            return _ignored("unknown_tenant")
        tenant_id = record.tenant_id

        await set_tenant_context(self._session, tenant_id)
        if not await self._claim_event("paypal", event, tenant_id):
            logger.info("Duplicate PayPal event %s (%s) for tenant=%s", event.get("id"), event_type, tenant_id)
            return {"status": "duplicate"}

        if event_type in PAYPAL_PAYMENT_EVENTS:
            amount = resource.get("amount") or {}
            logger.info(
                "PayPal %s: sale %s for subscription %s (amount: %s %s)",
                event_type,
                resource.get("id"),
                subscription_id,
                amount.get("total"),
                amount.get("currency"),
            )
            return {"status": "processed", "tenant_id": tenant_id}

        status = map_paypal_status(resource.get("status") or _PAYPAL_EVENT_STATUS.get(event_type))
        billing_info = resource.get("billing_info") or {}
        last_payment = billing_info.get("last_payment") or {}
        result = await SubscriptionService(self._session, tenant_id=tenant_id, policy=self._policy).transition(
            self._paypal_tier(resource),
            status,
            period_start=_to_datetime(last_payment.get("time") or resource.get("start_time")),
            period_end=_to_datetime(billing_info.get("next_billing_time")),
            payment_provider="paypal",
            external_subscription_id=subscription_id,
            reason=f"paypal {event_type}",
        )
        return {"status": "processed", "tenant_id": tenant_id, "transition": result.to_dict()}
