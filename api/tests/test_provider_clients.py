"""Tests for the voice provider and PayPal HTTP clients."""

from __future__ import annotations

import httpx
import pytest

from voicegate_api.services.paypal_client import PayPalClient
from voicegate_api.services.provider_client import (
    ProviderNotFoundError,
    ProviderRequestError,
    ProviderTimeoutError,
    VoiceProviderClient,
)


def _client(handler) -> VoiceProviderClient:
    return VoiceProviderClient("https://provider.test/", "key", transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Voice provider
# ---------------------------------------------------------------------------


class TestVoiceProviderClient:
    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        client = _client(handler)
        await client.list_assistants()
        await client.close()
        assert seen[0].headers["Authorization"] == "Bearer key"
        assert str(seen[0].url) == "https://provider.test/assistant"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [[{"id": "a"}, {"id": "b"}], {"results": [{"id": "a"}, {"id": "b"}]}],
        ids=["list", "paginated"],
    )
    async def test_list_assistant_ids_shapes(self, body):
        client = _client(lambda request: httpx.Response(200, json=body))
        assert await client.list_assistant_ids() == {"a", "b"}
        await client.close()

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = _client(lambda request: httpx.Response(404, json={"message": "Not Found"}))
        with pytest.raises(ProviderNotFoundError):
            await client.update_assistant("x", {"maxDurationSeconds": 10})
        assert await client.phone_number_exists("x") is False
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "retryable"),
        [(500, True), (503, True), (429, True), (400, False), (401, False)],
    )
    async def test_http_errors_classified(self, status, retryable):
        client = _client(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(ProviderRequestError) as excinfo:
            await client.delete_phone_number("p1")
        assert excinfo.value.status_code == status
        assert excinfo.value.retryable is retryable
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler)
        with pytest.raises(ProviderTimeoutError):
            await client.get_assistant("a1")
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)
        with pytest.raises(ProviderRequestError) as excinfo:
            await client.get_phone_number("p1")
        assert excinfo.value.retryable is True
        assert await client.health_check() is False
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_returns_none_on_204(self):
        client = _client(lambda request: httpx.Response(204))
        assert await client.delete_assistant("a1") is None
        await client.close()


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.paypal.com/certs/1",
    "paypal-transmission-id": "TX-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2026-03-01T12:00:00Z",
}


class TestPayPalClient:
    @pytest.mark.asyncio
    async def test_token_cached_between_verifications(self):
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 32400})
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(200, json={"verification_status": "SUCCESS"})

        client = PayPalClient("https://paypal.test", "id", "secret", transport=httpx.MockTransport(handler))
        assert await client.verify_webhook_signature(_HEADERS, {"id": "WH-1"}, "WH-ID") is True
        assert await client.verify_webhook_signature(_HEADERS, {"id": "WH-2"}, "WH-ID") is True
        await client.close()

        assert paths.count("/v1/oauth2/token") == 1

    @pytest.mark.asyncio
    async def test_http_failure_is_not_verified(self):
        client = PayPalClient(
            "https://paypal.test",
            "id",
            "secret",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert await client.verify_webhook_signature(_HEADERS, {"id": "WH-1"}, "WH-ID") is False
        await client.close()

    @pytest.mark.asyncio
    async def test_configured(self):
        unconfigured = PayPalClient("https://paypal.test", "", "")
        configured = PayPalClient("https://paypal.test", "id", "secret")
        assert (unconfigured.configured, configured.configured) == (False, True)
        await unconfigured.close()
        await configured.close()
