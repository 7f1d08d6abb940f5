"""Shared fixtures for VoiceGate API tests.

Provides a file-backed SQLite database (each session gets its own
connection, like PostgreSQL in production), a stubbed voice provider
behind ``httpx.MockTransport``, a stubbed PayPal API, test settings, a
FastAPI app with dependency overrides and an async httpx client bound to it.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator
from voicegate_core.plans import PlanTier, effective_limits
from voicegate_core.state.tables import AssistantTable, Base, PhoneNumberTable, TenantUsageTable
from voicegate_core.sync import RetryPolicy

from voicegate_api.config import APISettings
from voicegate_api.dependencies import (
    get_provider_client,
    get_session_factory,
    get_settings,
    init_security_gates,
)
from voicegate_api.main import create_app
from voicegate_api.services.paypal_client import PayPalClient
from voicegate_api.services.provider_client import VoiceProviderClient

# ---------------------------------------------------------------------------
# SQLite column patching
# ---------------------------------------------------------------------------


def _patch_columns_for_sqlite() -> None:
    """Substitute Postgres-specific column types for SQLite compatibility."""

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()

T0 = datetime(2026, 1, 1, tzinfo=UTC)

CRON_SECRET = "cron-secret-for-tests"
INTERNAL_TOKEN = "internal-token-for-tests"
VOICE_WEBHOOK_SECRET = "voice-webhook-secret"
STRIPE_WEBHOOK_SECRET = "whsec_stripe_tests"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    """Session factory over a fresh SQLite file with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    """A single session for service-level tests; the test commits when needed."""
    async with session_factory() as db_session:
        yield db_session


class Seeder:
    """Inserts committed fixture rows, each batch in its own transaction."""

    def __init__(self, factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = factory

    async def _add(self, *rows: Any) -> None:
        async with self._factory() as db_session:
            db_session.add_all(rows)
            await db_session.commit()

    async def tenant(
        self,
        tenant_id: str,
        tier: PlanTier = PlanTier.FREE,
        *,
        status: str = "active",
        minutes_used: float = 0.0,
        **columns: Any,
    ) -> None:
        limits = effective_limits(tier, status)
        values: dict[str, Any] = {
            "tenant_id": tenant_id,
            "plan_tier": tier.value,
            "subscription_status": status,
            "minutes_used": minutes_used,
            "minutes_limit": limits.max_minutes_monthly,
            "assistant_limit": limits.max_assistants,
            "period_start": T0,
            "period_end": T0 + timedelta(days=30),
        }
        values.update(columns)
        await self._add(TenantUsageTable(**values))

    async def assistant(
        self,
        tenant_id: str,
        assistant_id: str,
        *,
        age: int = 0,
        external_id: str | None = "",
        active: bool = True,
    ) -> None:
        await self._add(
            AssistantTable(
                id=assistant_id,
                tenant_id=tenant_id,
                name=assistant_id,
                external_id=f"ext-{assistant_id}" if external_id == "" else external_id,
                active=active,
                sync_status="synced",
                created_at=T0 + timedelta(minutes=age),
            )
        )

    async def phone_number(
        self,
        tenant_id: str,
        phone_id: str,
        *,
        assistant_id: str | None = None,
        external_id: str | None = "",
    ) -> None:
        await self._add(
            PhoneNumberTable(
                id=phone_id,
                tenant_id=tenant_id,
                number="+15555550100",
                external_id=f"ext-{phone_id}" if external_id == "" else external_id,
                assigned_assistant_id=assistant_id,
                active=True,
                sync_status="synced",
                created_at=T0,
            )
        )


@pytest.fixture()
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


# ---------------------------------------------------------------------------
# Stubbed voice provider
# ---------------------------------------------------------------------------


class FakeVoiceProvider:
    """In-memory stand-in for the voice provider REST API.

    ``assistants`` and ``phone_numbers`` map external ids to resource
    bodies.  Set ``status_override`` to answer every call with that HTTP
    status, ``delay`` to stall every call, or ``on_request`` to run a hook
    before each response.
    """

    def __init__(self) -> None:
        self.assistants: dict[str, dict[str, Any]] = {}
        self.phone_numbers: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, dict[str, Any] | None]] = []
        self.status_override: int | None = None
        self.delay: float = 0.0
        self.on_request: Callable[[httpx.Request], Awaitable[None]] | None = None

    def add_assistant(self, external_id: str, **body: Any) -> None:
        self.assistants[external_id] = {"id": external_id, "maxDurationSeconds": 300, **body}

    def add_phone_number(self, external_id: str, **body: Any) -> None:
        self.phone_numbers[external_id] = {"id": external_id, **body}

    def calls(self, method: str | None = None) -> list[tuple[str, str, dict[str, Any] | None]]:
        return [c for c in self.requests if method is None or c[0] == method]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.on_request is not None:
            await self.on_request(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"message": "stubbed failure"})

        parts = [p for p in request.url.path.split("/") if p]
        store = self.assistants if parts[0] == "assistant" else self.phone_numbers
        if len(parts) == 1 and request.method == "GET":
            return httpx.Response(200, json=list(store.values()))

        resource_id = parts[1]
        if resource_id not in store:
            return httpx.Response(404, json={"message": "Not Found"})
        if request.method == "GET":
            return httpx.Response(200, json=store[resource_id])
        if request.method == "PATCH":
            store[resource_id].update(body or {})
            return httpx.Response(200, json=store[resource_id])
        if request.method == "DELETE":
            del store[resource_id]
            return httpx.Response(204)
        return httpx.Response(405)


@pytest.fixture()
def fake_provider() -> FakeVoiceProvider:
    return FakeVoiceProvider()


@pytest_asyncio.fixture()
async def provider(fake_provider: FakeVoiceProvider) -> VoiceProviderClient:
    client = VoiceProviderClient(
        "https://provider.test",
        "provider-key",
        timeout=5.0,
        transport=httpx.MockTransport(fake_provider.handler),
    )
    yield client
    await client.close()


@pytest.fixture()
def policy() -> RetryPolicy:
    """Retry policy with no backoff so failed jobs are immediately claimable."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False)


# ---------------------------------------------------------------------------
# Stubbed PayPal
# ---------------------------------------------------------------------------


class FakePayPal:
    """Answers the OAuth and verify-webhook-signature calls."""

    def __init__(self) -> None:
        self.verification_status = "SUCCESS"
        self.verify_requests: list[dict[str, Any]] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        if request.url.path == "/v1/notifications/verify-webhook-signature":
            self.verify_requests.append(json.loads(request.content))
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404)


@pytest.fixture()
def fake_paypal() -> FakePayPal:
    return FakePayPal()


@pytest_asyncio.fixture()
async def paypal_client(fake_paypal: FakePayPal) -> PayPalClient:
    client = PayPalClient(
        "https://paypal.test",
        "paypal-client-id",
        "paypal-client-secret",
        transport=httpx.MockTransport(fake_paypal.handler),
    )
    yield client
    await client.close()


# ---------------------------------------------------------------------------
# Settings, app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        cron_secret=CRON_SECRET,
        internal_api_token=INTERNAL_TOKEN,
        provider_api_url="https://provider.test",
        provider_webhook_secret=VOICE_WEBHOOK_SECRET,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        stripe_price_id_pro="price_pro_monthly",
        paypal_api_url="https://paypal.test",
        paypal_client_id="paypal-client-id",
        paypal_client_secret="paypal-client-secret",
        paypal_webhook_id="WH-TEST",
        paypal_plan_id_pro="P-PRO",
        sync_max_attempts=3,
        sync_retry_base_delay=0.0,
        enforcement_concurrency=1,
        enforcement_job_timeout=2.0,
        enforcement_interval_seconds=0,
    )


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: VoiceProviderClient,
    paypal_client: PayPalClient,
):
    """Create a FastAPI app wired to the test database and stubbed providers."""
    application = create_app()
    init_security_gates(test_settings, paypal_client)

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_provider_client] = lambda: provider
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app over HTTPS."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="https://test") as ac:
        yield ac


@pytest.fixture()
def internal_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {INTERNAL_TOKEN}"}


@pytest.fixture()
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture()
def voice_signer():
    """Return ``sign(payload) -> (body, headers)`` for voice provider webhooks."""

    def _sign(payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(payload).encode("utf-8")
        signature = hmac.new(VOICE_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
        return body, {"Content-Type": "application/json", "x-vapi-signature": signature}

    return _sign


@pytest.fixture()
def stripe_signer():
    """Return ``sign(event) -> (body, headers)`` producing a valid Stripe signature."""

    def _sign(event: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
        body = json.dumps(event).encode("utf-8")
        timestamp = int(datetime.now(UTC).timestamp())
        signed = f"{timestamp}.{body.decode()}".encode()
        signature = hmac.new(STRIPE_WEBHOOK_SECRET.encode(), signed, hashlib.sha256).hexdigest()
        return body, {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"}

    return _sign
