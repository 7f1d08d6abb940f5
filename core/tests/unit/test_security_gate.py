"""Unit tests for the webhook security gate and signature strategies.

Covers:
- check ordering (transport, source, shape, timestamp, replay, signature)
- replay protection: fingerprints recorded only after acceptance
- HMAC and Stripe signature verification
- declared timestamp parsing (epoch seconds, milliseconds, ISO-8601)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from voicegate_core.security import (
    BoundedFingerprintCache,
    HmacSignatureVerifier,
    InboundWebhook,
    RejectionReason,
    StripeSignatureVerifier,
    WebhookPolicy,
    WebhookSecurityGate,
    verify_hmac_sha256,
)
from voicegate_core.security.gate import compute_fingerprint, parse_declared_timestamp
from voicegate_core.security.signatures import compute_hmac_sha256

_SECRET = "whsec_test_voice"
_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _body(**overrides: Any) -> bytes:
    payload: dict[str, Any] = {
        "type": "assistant.updated",
        "timestamp": _NOW.isoformat(),
        "assistantId": "asst_ext_1",
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def _inbound(body: bytes | None = None, *, sign: bool = True, **kwargs: Any) -> InboundWebhook:
    body = _body() if body is None else body
    headers: dict[str, str] = {"Content-Type": "application/json"}
    if sign:
        headers["X-Vapi-Signature"] = compute_hmac_sha256(body, _SECRET)
    headers.update(kwargs.pop("headers", {}))
    return InboundWebhook(
        body=body,
        headers=headers,
        scheme=kwargs.pop("scheme", "https"),
        peer_address=kwargs.pop("peer_address", "203.0.113.10"),
        received_at=kwargs.pop("received_at", _NOW),
    )


def _gate(**policy: Any) -> WebhookSecurityGate:
    return WebhookSecurityGate(
        WebhookPolicy(**policy),
        HmacSignatureVerifier(_SECRET, header="x-vapi-signature"),
        BoundedFingerprintCache(capacity=100),
        name="voice",
    )


# ---------------------------------------------------------------------------
# Acceptance and replay
# ---------------------------------------------------------------------------


class TestAcceptance:
    @pytest.mark.asyncio
    async def test_valid_delivery_accepted(self):
        result = await _gate().validate(_inbound())
        assert result.accepted is True
        assert result.payload is not None
        assert result.payload["assistantId"] == "asst_ext_1"
        assert result.fingerprint == compute_fingerprint(_body(), _NOW.isoformat())

    @pytest.mark.asyncio
    async def test_replay_rejected_as_duplicate(self):
        gate = _gate()
        assert (await gate.validate(_inbound())).accepted is True

        second = await gate.validate(_inbound())
        assert second.accepted is False
        assert second.reason is RejectionReason.DUPLICATE

    @pytest.mark.asyncio
    async def test_bad_signature_does_not_consume_fingerprint(self):
        gate = _gate()
        forged = _inbound(headers={"X-Vapi-Signature": "sha256=" + "0" * 64})
        rejected = await gate.validate(forged)
        assert rejected.reason is RejectionReason.INVALID_SIGNATURE

        # The genuine delivery with the same body still goes through.
        assert (await gate.validate(_inbound())).accepted is True

    @pytest.mark.asyncio
    async def test_gates_do_not_share_replay_state(self):
        first, second = _gate(), _gate()
        assert (await first.validate(_inbound())).accepted is True
        assert (await second.validate(_inbound())).accepted is True

    @pytest.mark.asyncio
    async def test_missing_timestamp_uses_receive_time(self):
        body = json.dumps({"type": "assistant.updated", "assistantId": "a"}).encode()
        gate = _gate()
        first = await gate.validate(_inbound(body, received_at=_NOW))
        second = await gate.validate(_inbound(body, received_at=_NOW + timedelta(seconds=1)))
        assert first.accepted and second.accepted
        assert first.fingerprint != second.fingerprint


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestRejections:
    @pytest.mark.asyncio
    async def test_http_rejected_when_https_required(self):
        result = await _gate(require_https=True).validate(_inbound(scheme="http"))
        assert result.reason is RejectionReason.INSECURE_TRANSPORT

    @pytest.mark.asyncio
    async def test_forwarded_proto_honoured(self):
        inbound = _inbound(scheme="http", headers={"X-Forwarded-Proto": "https"})
        assert (await _gate(require_https=True).validate(inbound)).accepted is True

    @pytest.mark.asyncio
    async def test_source_outside_allowlist(self):
        gate = _gate(ip_allowlist=["198.51.100.0/24"])
        result = await gate.validate(_inbound(peer_address="203.0.113.10"))
        assert result.reason is RejectionReason.SOURCE_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_allowlist_uses_first_forwarded_hop(self):
        gate = _gate(ip_allowlist=["198.51.100.0/24"])
        inbound = _inbound(headers={"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})
        assert (await gate.validate(inbound)).accepted is True

    @pytest.mark.asyncio
    async def test_wrong_content_type(self):
        inbound = _inbound(headers={"Content-Type": "text/plain"})
        result = await _gate().validate(inbound)
        assert result.reason is RejectionReason.UNSUPPORTED_CONTENT_TYPE

    @pytest.mark.asyncio
    async def test_oversized_body(self):
        result = await _gate(max_body_bytes=16).validate(_inbound())
        assert result.reason is RejectionReason.PAYLOAD_TOO_LARGE

    @pytest.mark.asyncio
    async def test_declared_content_length_too_large(self):
        inbound = _inbound(headers={"Content-Length": "999999"})
        result = await _gate(max_body_bytes=1024).validate(inbound)
        assert result.reason is RejectionReason.PAYLOAD_TOO_LARGE

    @pytest.mark.asyncio
    async def test_empty_body(self):
        result = await _gate().validate(_inbound(b"  "))
        assert result.reason is RejectionReason.EMPTY_PAYLOAD

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        result = await _gate().validate(_inbound(b"{not json"))
        assert result.reason is RejectionReason.MALFORMED_PAYLOAD

    @pytest.mark.asyncio
    async def test_json_array_is_malformed(self):
        result = await _gate().validate(_inbound(b"[1, 2]"))
        assert result.reason is RejectionReason.MALFORMED_PAYLOAD

    @pytest.mark.asyncio
    async def test_stale_timestamp(self):
        old = (_NOW - timedelta(minutes=10)).isoformat()
        result = await _gate().validate(_inbound(_body(timestamp=old)))
        assert result.reason is RejectionReason.STALE_TIMESTAMP

    @pytest.mark.asyncio
    async def test_future_timestamp_outside_tolerance(self):
        ahead = (_NOW + timedelta(minutes=6)).isoformat()
        result = await _gate().validate(_inbound(_body(timestamp=ahead)))
        assert result.reason is RejectionReason.STALE_TIMESTAMP

    @pytest.mark.asyncio
    async def test_unparseable_timestamp(self):
        result = await _gate().validate(_inbound(_body(timestamp="yesterday")))
        assert result.reason is RejectionReason.INVALID_TIMESTAMP

    @pytest.mark.asyncio
    async def test_timestamp_check_disabled_without_fields(self):
        old = (_NOW - timedelta(days=2)).isoformat()
        result = await _gate(timestamp_fields=()).validate(_inbound(_body(timestamp=old)))
        assert result.accepted is True

    @pytest.mark.asyncio
    async def test_transport_checked_before_signature(self):
        inbound = _inbound(sign=False, scheme="http")
        result = await _gate(require_https=True).validate(inbound)
        assert result.reason is RejectionReason.INSECURE_TRANSPORT


# ---------------------------------------------------------------------------
# Timestamp parsing
# ---------------------------------------------------------------------------


class TestParseDeclaredTimestamp:
    def test_epoch_seconds(self):
        assert parse_declared_timestamp(1_767_225_600) == datetime(2026, 1, 1, tzinfo=UTC)

    def test_epoch_milliseconds(self):
        assert parse_declared_timestamp(1_767_225_600_000) == datetime(2026, 1, 1, tzinfo=UTC)

    def test_numeric_string(self):
        assert parse_declared_timestamp("1767225600") == datetime(2026, 1, 1, tzinfo=UTC)

    def test_iso_with_z_suffix(self):
        assert parse_declared_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=UTC)

    def test_naive_iso_assumed_utc(self):
        assert parse_declared_timestamp("2026-01-01T00:00:00").tzinfo is UTC

    @pytest.mark.parametrize("value", [True, None, "soon", {"t": 1}])
    def test_rejects_non_timestamps(self, value):
        with pytest.raises(ValueError):
            parse_declared_timestamp(value)


# ---------------------------------------------------------------------------
# Signature strategies
# ---------------------------------------------------------------------------


class TestHmacSignature:
    def test_accepts_prefixed_and_bare_digest(self):
        body = b'{"a": 1}'
        digest = hmac.new(_SECRET.encode(), body, hashlib.sha256).hexdigest()
        assert verify_hmac_sha256(body, digest, _SECRET)
        assert verify_hmac_sha256(body, f"sha256={digest}", _SECRET)

    def test_empty_secret_never_matches(self):
        body = b"{}"
        assert not verify_hmac_sha256(body, compute_hmac_sha256(body, ""), "")

    @pytest.mark.asyncio
    async def test_unconfigured_verifier_rejects(self):
        verifier = HmacSignatureVerifier("", header="x-vapi-signature")
        assert await verifier.verify(_inbound()) is False


class TestStripeSignature:
    @staticmethod
    def _signed(body: bytes, secret: str, timestamp: int) -> InboundWebhook:
        signed_payload = f"{timestamp}.{body.decode()}".encode()
        signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        return InboundWebhook(
            body=body,
            headers={"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"},
        )

    @pytest.mark.asyncio
    async def test_valid_signature(self):
        body = b'{"id": "evt_1", "type": "invoice.paid"}'
        verifier = StripeSignatureVerifier("whsec_stripe", tolerance_seconds=300)
        assert await verifier.verify(self._signed(body, "whsec_stripe", int(time.time()))) is True

    @pytest.mark.asyncio
    async def test_wrong_secret(self):
        body = b'{"id": "evt_1"}'
        verifier = StripeSignatureVerifier("whsec_stripe")
        assert await verifier.verify(self._signed(body, "whsec_other", int(time.time()))) is False

    @pytest.mark.asyncio
    async def test_signature_outside_tolerance(self):
        body = b'{"id": "evt_1"}'
        verifier = StripeSignatureVerifier("whsec_stripe", tolerance_seconds=60)
        assert await verifier.verify(self._signed(body, "whsec_stripe", int(time.time()) - 3600)) is False

    @pytest.mark.asyncio
    async def test_missing_header(self):
        verifier = StripeSignatureVerifier("whsec_stripe")
        assert await verifier.verify(InboundWebhook(body=b"{}")) is False
