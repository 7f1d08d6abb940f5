"""PayPal REST client and webhook signature verifier.

PayPal does not publish a shared-secret signature scheme for subscription
webhooks; a delivery is verified by posting its transmission headers and
body back to ``/v1/notifications/verify-webhook-signature``.  The verifier
below plugs that round-trip into the generic webhook security gate.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
from voicegate_core.security.gate import InboundWebhook

logger = logging.getLogger(__name__)

_TRANSMISSION_HEADERS: tuple[str, ...] = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

# Refresh the OAuth token this many seconds before PayPal expires it.
_TOKEN_EXPIRY_MARGIN = 60


class PayPalClient:
    """Minimal async PayPal REST client (OAuth client-credentials).

    Parameters
    ----------
    base_url:
        ``https://api-m.paypal.com`` or the sandbox host.
    client_id / client_secret:
        REST app credentials.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 10.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        resp = await self._client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        data = resp.json()
        self._access_token = data["access_token"]
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - _TOKEN_EXPIRY_MARGIN, 0)
        return self._access_token

    async def verify_webhook_signature(
        self,
        headers: dict[str, str],
        event: dict[str, Any],
        webhook_id: str,
    ) -> bool:
        """Ask PayPal whether *event* was signed for *webhook_id*.

        Returns ``False`` on any transport or HTTP failure; the delivery is
        then rejected and PayPal redelivers it later.
        """
        body = {
            "auth_algo": headers.get("paypal-auth-algo", ""),
            "cert_url": headers.get("paypal-cert-url", ""),
            "transmission_id": headers.get("paypal-transmission-id", ""),
            "transmission_sig": headers.get("paypal-transmission-sig", ""),
            "transmission_time": headers.get("paypal-transmission-time", ""),
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        try:
            token = await self._get_access_token()
            resp = await self._client.post(
                "/v1/notifications/verify-webhook-signature",
                json=body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("PayPal webhook verification request failed: %s", exc)
            return False
        return resp.json().get("verification_status") == "SUCCESS"

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()


class PayPalSignatureVerifier:
    """Signature strategy delegating to :meth:`PayPalClient.verify_webhook_signature`."""

    name = "paypal"

    def __init__(self, client: PayPalClient, webhook_id: str) -> None:
        self._client = client
        self._webhook_id = webhook_id

    async def verify(self, inbound: InboundWebhook) -> bool:
        if not self._webhook_id or not self._client.configured:
            logger.error("PayPal webhook id or credentials not configured; rejecting delivery")
            return False
        headers = {name: inbound.header(name) for name in _TRANSMISSION_HEADERS}
        if not all(headers.values()):
            return False
        try:
            event = json.loads(inbound.body)
        except ValueError:
            return False
        return await self._client.verify_webhook_signature(headers, event, self._webhook_id)
