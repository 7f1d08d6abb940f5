"""Inbound webhook validation: security gate, replay cache and signature strategies."""

from voicegate_core.security.fingerprint_cache import BoundedFingerprintCache, FingerprintStore, TrimOldest
from voicegate_core.security.gate import (
    GateResult,
    InboundWebhook,
    RejectionReason,
    WebhookPolicy,
    WebhookSecurityGate,
)
from voicegate_core.security.signatures import (
    HmacSignatureVerifier,
    SignatureVerifier,
    StripeSignatureVerifier,
    verify_hmac_sha256,
)

__all__ = [
    "BoundedFingerprintCache",
    "FingerprintStore",
    "GateResult",
    "HmacSignatureVerifier",
    "InboundWebhook",
    "RejectionReason",
    "SignatureVerifier",
    "StripeSignatureVerifier",
    "TrimOldest",
    "WebhookPolicy",
    "WebhookSecurityGate",
    "verify_hmac_sha256",
]
