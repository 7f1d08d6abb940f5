"""Pluggable signature verification strategies for inbound webhooks.

One :class:`~voicegate_core.security.gate.WebhookSecurityGate` serves every
webhook source; only the verifier differs per provider:

* :class:`HmacSignatureVerifier` -- keyed SHA-256 over the raw body (voice
  provider ``x-vapi-signature``, generic ``X-Signature`` style headers).
* :class:`StripeSignatureVerifier` -- Stripe's timestamped ``v1`` scheme via
  the ``stripe`` SDK.

PayPal verification needs a network round-trip and lives with the PayPal
client in ``voicegate_api.services.paypal_client``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from voicegate_core.security.gate import InboundWebhook

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    """Strategy verifying that a delivery was produced by the expected sender."""

    name: str

    async def verify(self, inbound: InboundWebhook) -> bool: ...


def compute_hmac_sha256(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 digest of *body* keyed with *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_sha256(body: bytes, signature_header: str, secret: str) -> bool:
    """Compute HMAC-SHA256 and perform constant-time comparison.

    Parameters
    ----------
    body:
        Raw request body bytes.
    signature_header:
        Either ``sha256=<hex>`` or the bare hex digest.
    secret:
        Shared webhook secret.

    Returns
    -------
    bool
        ``True`` if the computed digest matches the header value.  An empty
        secret or header never matches.
    """
    if not secret or not signature_header:
        return False
    provided = signature_header.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = compute_hmac_sha256(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("ascii", "replace"))


class HmacSignatureVerifier:
    """HMAC-SHA256 over the raw body, read from a single header.

    Parameters
    ----------
    secret:
        Shared secret.  When empty every delivery is rejected.
    header:
        Name of the header carrying the signature (case-insensitive).
    """

    name = "hmac-sha256"

    def __init__(self, secret: str, header: str = "x-signature") -> None:
        self._secret = secret
        self._header = header.lower()

    async def verify(self, inbound: InboundWebhook) -> bool:
        if not self._secret:
            logger.warning("Webhook secret for header %s is not configured; rejecting", self._header)
            return False
        return verify_hmac_sha256(inbound.body, inbound.header(self._header), self._secret)


class StripeSignatureVerifier:
    """Verify the ``stripe-signature`` header with the Stripe SDK.

    Stripe signs ``"{t}.{body}"`` and enforces its own timestamp tolerance,
    independent of the gate's payload-timestamp check.
    """

    name = "stripe"

    def __init__(self, secret: str, tolerance_seconds: int = 300) -> None:
        self._secret = secret
        self._tolerance = tolerance_seconds

    async def verify(self, inbound: InboundWebhook) -> bool:
        sig_header = inbound.header("stripe-signature")
        if not self._secret or not sig_header:
            return False

        import stripe

        try:
            stripe.WebhookSignature.verify_header(
                inbound.body.decode("utf-8"),
                sig_header,
                self._secret,
                tolerance=self._tolerance,
            )
        except Exception as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            return False
        return True
