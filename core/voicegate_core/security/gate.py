"""Webhook security gate: transport, source, shape, replay and signature checks.

Every asynchronous notification from an untrusted peer (payment processors,
the voice provider) passes through :meth:`WebhookSecurityGate.validate`
before any business logic runs.  Checks run in a fixed order and stop at the
first failure:

1. transport (HTTPS when required)
2. source IP allowlist
3. content type, size and emptiness
4. JSON parseability
5. declared timestamp within tolerance
6. replay fingerprint not seen before
7. cryptographic signature

A fingerprint is recorded only after all seven checks pass, so rejected
deliveries (including bad signatures) never consume a replay slot.  The gate
never touches tenant state.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from voicegate_core.security.fingerprint_cache import BoundedFingerprintCache, FingerprintStore
from voicegate_core.security.signatures import SignatureVerifier

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 1024 * 1024  # 1 MiB
DEFAULT_TIMESTAMP_TOLERANCE = 300  # seconds

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 10**11


class RejectionReason(str, Enum):
    """Why a delivery was rejected."""

    INSECURE_TRANSPORT = "insecure_transport"
    SOURCE_NOT_ALLOWED = "source_not_allowed"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    EMPTY_PAYLOAD = "empty_payload"
    MALFORMED_PAYLOAD = "malformed_payload"
    INVALID_TIMESTAMP = "invalid_timestamp"
    STALE_TIMESTAMP = "stale_timestamp"
    DUPLICATE = "duplicate"
    INVALID_SIGNATURE = "invalid_signature"


class WebhookPolicy(BaseModel):
    """Per-endpoint validation settings."""

    require_https: bool = Field(default=False, description="Reject plain-HTTP deliveries.")
    ip_allowlist: list[str] = Field(
        default_factory=list,
        description="Allowed source IPs or CIDR blocks; empty allows every source.",
    )
    content_type: str = Field(default="application/json", description="Required media type.")
    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, gt=0)
    timestamp_tolerance_seconds: int = Field(default=DEFAULT_TIMESTAMP_TOLERANCE, ge=0)
    timestamp_fields: tuple[str, ...] = Field(
        default=("timestamp", "created_at"),
        description="Payload keys searched, in order, for the declared send time.",
    )


@dataclass
class InboundWebhook:
    """Framework-independent view of one webhook delivery.

    ``headers`` keys are lower-cased on construction.
    """

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    scheme: str = "https"
    peer_address: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")

    @property
    def client_ip(self) -> str | None:
        """First hop of ``x-forwarded-for``, else ``x-real-ip``, else the peer."""
        forwarded = self.header("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = self.header("x-real-ip").strip()
        if real_ip:
            return real_ip
        return self.peer_address

    @property
    def effective_scheme(self) -> str:
        """Scheme as seen by the client (first hop of ``x-forwarded-proto``)."""
        forwarded = self.header("x-forwarded-proto")
        if forwarded:
            return forwarded.split(",")[0].strip().lower()
        return self.scheme.lower()


@dataclass
class GateResult:
    """Outcome of :meth:`WebhookSecurityGate.validate`."""

    accepted: bool
    payload: dict[str, Any] | None = None
    reason: RejectionReason | None = None
    detail: str = ""
    fingerprint: str | None = None

    @classmethod
    def reject(cls, reason: RejectionReason, detail: str = "") -> GateResult:
        return cls(accepted=False, reason=reason, detail=detail or reason.value)


def compute_fingerprint(body: bytes, timestamp: str) -> str:
    """SHA-256 of ``"{body}:{timestamp}"``."""
    digest = hashlib.sha256()
    digest.update(body)
    digest.update(b":")
    digest.update(timestamp.encode("utf-8"))
    return digest.hexdigest()


def parse_declared_timestamp(value: Any) -> datetime:
    """Parse epoch seconds, epoch milliseconds or an ISO-8601 string.

    Raises
    ------
    ValueError
        If *value* cannot be interpreted as a point in time.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, int | float):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").replace(".", "", 1).isdigit():
            return parse_declared_timestamp(float(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


def _ip_allowed(client_ip: str | None, allowlist: list[str]) -> bool:
    if not allowlist:
        return True
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring invalid allowlist entry %r", entry)
    return False


class WebhookSecurityGate:
    """Validate inbound webhook deliveries for one source.

    Parameters
    ----------
    policy:
        Transport, shape and timestamp settings.
    verifier:
        Signature strategy for this source.
    cache:
        Replay fingerprint store.  A fresh :class:`BoundedFingerprintCache`
        is created when omitted.
    name:
        Label used in logs and metrics (``stripe``, ``paypal``, ``voice``).
    """

    def __init__(
        self,
        policy: WebhookPolicy,
        verifier: SignatureVerifier,
        cache: FingerprintStore | None = None,
        *,
        name: str = "webhook",
    ) -> None:
        self._policy = policy
        self._verifier = verifier
        self._cache: FingerprintStore = cache if cache is not None else BoundedFingerprintCache()
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def policy(self) -> WebhookPolicy:
        return self._policy

    async def validate(self, inbound: InboundWebhook) -> GateResult:
        """Run every check in order and return the first failure or acceptance."""
        policy = self._policy

        if policy.require_https and inbound.effective_scheme != "https":
            return self._rejected(RejectionReason.INSECURE_TRANSPORT, inbound)

        if not _ip_allowed(inbound.client_ip, policy.ip_allowlist):
            return self._rejected(RejectionReason.SOURCE_NOT_ALLOWED, inbound, f"source {inbound.client_ip}")

        content_type = inbound.header("content-type").lower()
        if policy.content_type.lower() not in content_type:
            return self._rejected(RejectionReason.UNSUPPORTED_CONTENT_TYPE, inbound, content_type or "missing")

        declared_length = inbound.header("content-length")
        if declared_length.isdigit() and int(declared_length) > policy.max_body_bytes:
            return self._rejected(RejectionReason.PAYLOAD_TOO_LARGE, inbound)
        if len(inbound.body) > policy.max_body_bytes:
            return self._rejected(RejectionReason.PAYLOAD_TOO_LARGE, inbound)
        if not inbound.body.strip():
            return self._rejected(RejectionReason.EMPTY_PAYLOAD, inbound)

        try:
            payload = json.loads(inbound.body)
        except (ValueError, UnicodeDecodeError):
            return self._rejected(RejectionReason.MALFORMED_PAYLOAD, inbound)
        if not isinstance(payload, dict):
            return self._rejected(RejectionReason.MALFORMED_PAYLOAD, inbound, "payload is not an object")

        declared = next(
            (payload[key] for key in policy.timestamp_fields if payload.get(key) not in (None, "")),
            None,
        )
        if declared is not None:
            try:
                sent_at = parse_declared_timestamp(declared)
            except (ValueError, OverflowError, OSError):
                return self._rejected(RejectionReason.INVALID_TIMESTAMP, inbound)
            skew = abs((inbound.received_at - sent_at).total_seconds())
            if skew > policy.timestamp_tolerance_seconds:
                return self._rejected(RejectionReason.STALE_TIMESTAMP, inbound, f"skew {skew:.0f}s")
            fingerprint_ts = str(declared)
        else:
            fingerprint_ts = inbound.received_at.isoformat()

        fingerprint = compute_fingerprint(inbound.body, fingerprint_ts)
        if fingerprint in self._cache:
            return self._rejected(RejectionReason.DUPLICATE, inbound)

        if not await self._verifier.verify(inbound):
            return self._rejected(RejectionReason.INVALID_SIGNATURE, inbound)

        # Insert-if-absent closes the window between the membership check
        # above and the signature round-trip.
        if not self._cache.add_if_absent(fingerprint):
            return self._rejected(RejectionReason.DUPLICATE, inbound)

        return GateResult(accepted=True, payload=payload, fingerprint=fingerprint)

    def _rejected(self, reason: RejectionReason, inbound: InboundWebhook, detail: str = "") -> GateResult:
        logger.warning(
            "Webhook rejected: gate=%s reason=%s client=%s %s",
            self._name,
            reason.value,
            inbound.client_ip,
            detail,
        )
        return GateResult.reject(reason, detail)
