"""FastAPI dependency injection for settings, sessions, clients and webhook gates."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from voicegate_core.security import (
    BoundedFingerprintCache,
    HmacSignatureVerifier,
    InboundWebhook,
    StripeSignatureVerifier,
    TrimOldest,
    WebhookPolicy,
    WebhookSecurityGate,
)
from voicegate_core.state.database import get_engine
from voicegate_core.sync import RetryPolicy

from voicegate_api.config import APISettings, load_api_settings
from voicegate_api.services.enforcement_processor import EnforcementProcessor
from voicegate_api.services.paypal_client import PayPalClient, PayPalSignatureVerifier
from voicegate_api.services.provider_client import VoiceProviderClient
from voicegate_api.services.reconciliation_sweeper import ReconciliationSweeper

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used directly by components that manage their own transactions (the
    enforcement processor, the sweeper, webhook routes).
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    Tenant-scoped handlers call ``set_tenant_context()`` themselves once
    the tenant is known (from the path, or resolved from a webhook).

    The session commits on clean exit and rolls back on exception.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Voice provider client
# ---------------------------------------------------------------------------

_provider_client: VoiceProviderClient | None = None


def init_provider_client(settings: APISettings) -> VoiceProviderClient:
    """Create and cache the global :class:`VoiceProviderClient`."""
    global _provider_client  # noqa: PLW0603
    _provider_client = VoiceProviderClient(
        base_url=settings.provider_api_url,
        api_key=settings.provider_api_key.get_secret_value(),
        timeout=settings.provider_timeout,
    )
    return _provider_client


async def dispose_provider_client() -> None:
    """Close the provider client's underlying HTTP pool."""
    global _provider_client  # noqa: PLW0603
    if _provider_client is not None:
        await _provider_client.close()
        _provider_client = None


def get_provider_client() -> VoiceProviderClient:
    """Return the cached :class:`VoiceProviderClient` singleton."""
    if _provider_client is None:
        raise RuntimeError(
            "Provider client has not been initialised. "
            "Ensure init_provider_client() is called during application startup."
        )
    return _provider_client


ProviderDep = Annotated[VoiceProviderClient, Depends(get_provider_client)]

# ---------------------------------------------------------------------------
# PayPal client
# ---------------------------------------------------------------------------

_paypal_client: PayPalClient | None = None


def init_paypal_client(settings: APISettings) -> PayPalClient:
    """Create and cache the global :class:`PayPalClient`."""
    global _paypal_client  # noqa: PLW0603
    _paypal_client = PayPalClient(
        base_url=settings.paypal_api_url,
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret.get_secret_value(),
        timeout=settings.provider_timeout,
    )
    return _paypal_client


async def dispose_paypal_client() -> None:
    """Close the PayPal client's underlying HTTP pool."""
    global _paypal_client  # noqa: PLW0603
    if _paypal_client is not None:
        await _paypal_client.close()
        _paypal_client = None


# ---------------------------------------------------------------------------
# Webhook security gates
# ---------------------------------------------------------------------------

STRIPE_GATE = "stripe"
PAYPAL_GATE = "paypal"
VOICE_GATE = "voice"

_gates: dict[str, WebhookSecurityGate] = {}


def _webhook_policy(settings: APISettings, timestamp_fields: tuple[str, ...]) -> WebhookPolicy:
    return WebhookPolicy(
        require_https=settings.webhook_require_https,
        ip_allowlist=list(settings.webhook_ip_allowlist),
        max_body_bytes=settings.webhook_max_body_bytes,
        timestamp_tolerance_seconds=settings.webhook_timestamp_tolerance_seconds,
        timestamp_fields=timestamp_fields,
    )


def _fingerprint_cache(settings: APISettings) -> BoundedFingerprintCache:
    return BoundedFingerprintCache(
        capacity=settings.webhook_fingerprint_capacity,
        eviction=TrimOldest(batch=settings.webhook_fingerprint_trim_batch),
    )


def init_security_gates(settings: APISettings, paypal_client: PayPalClient) -> dict[str, WebhookSecurityGate]:
    """Build one gate per webhook source, each with its own replay cache.

    Stripe and PayPal retry a failed delivery with the original body for
    days, so their payload timestamps are not checked for staleness.
    Stripe's signature carries its own tolerance and both are deduplicated
    by event id in ``webhook_events``.
    """
    _gates.clear()
    _gates[STRIPE_GATE] = WebhookSecurityGate(
        _webhook_policy(settings, ()),
        StripeSignatureVerifier(
            settings.stripe_webhook_secret.get_secret_value(),
            tolerance_seconds=settings.webhook_timestamp_tolerance_seconds,
        ),
        _fingerprint_cache(settings),
        name=STRIPE_GATE,
    )
    _gates[PAYPAL_GATE] = WebhookSecurityGate(
        _webhook_policy(settings, ()),
        PayPalSignatureVerifier(paypal_client, settings.paypal_webhook_id),
        _fingerprint_cache(settings),
        name=PAYPAL_GATE,
    )
    _gates[VOICE_GATE] = WebhookSecurityGate(
        _webhook_policy(settings, ("timestamp",)),
        HmacSignatureVerifier(settings.provider_webhook_secret.get_secret_value(), header="x-vapi-signature"),
        _fingerprint_cache(settings),
        name=VOICE_GATE,
    )
    return dict(_gates)


def _get_gate(name: str) -> WebhookSecurityGate:
    gate = _gates.get(name)
    if gate is None:
        raise RuntimeError(
            f"Webhook gate {name!r} has not been initialised. "
            "Ensure init_security_gates() is called during application startup."
        )
    return gate


def get_stripe_gate() -> WebhookSecurityGate:
    return _get_gate(STRIPE_GATE)


def get_paypal_gate() -> WebhookSecurityGate:
    return _get_gate(PAYPAL_GATE)


def get_voice_gate() -> WebhookSecurityGate:
    return _get_gate(VOICE_GATE)


StripeGateDep = Annotated[WebhookSecurityGate, Depends(get_stripe_gate)]
PayPalGateDep = Annotated[WebhookSecurityGate, Depends(get_paypal_gate)]
VoiceGateDep = Annotated[WebhookSecurityGate, Depends(get_voice_gate)]


async def build_inbound_webhook(request: Request) -> InboundWebhook:
    """Capture the raw delivery from a Starlette request."""
    return InboundWebhook(
        body=await request.body(),
        headers=dict(request.headers),
        scheme=request.url.scheme,
        peer_address=request.client.host if request.client else None,
    )


InboundWebhookDep = Annotated[InboundWebhook, Depends(build_inbound_webhook)]

# ---------------------------------------------------------------------------
# Queue policy, processor and sweeper
# ---------------------------------------------------------------------------


def get_retry_policy(settings: SettingsDep) -> RetryPolicy:
    """Build the sync job retry policy from settings."""
    return RetryPolicy(
        max_attempts=settings.sync_max_attempts,
        base_delay=settings.sync_retry_base_delay,
        max_delay=settings.sync_retry_max_delay,
    )


RetryPolicyDep = Annotated[RetryPolicy, Depends(get_retry_policy)]


def build_processor(
    settings: APISettings,
    factory: async_sessionmaker[AsyncSession],
    provider: VoiceProviderClient,
) -> EnforcementProcessor:
    """Construct an :class:`EnforcementProcessor` configured from *settings*."""
    return EnforcementProcessor(
        factory,
        provider,
        policy=get_retry_policy(settings),
        job_timeout=settings.enforcement_job_timeout,
        concurrency=settings.enforcement_concurrency,
        lease_seconds=settings.sync_claim_lease_seconds,
        disabled_max_duration=settings.provider_disabled_max_duration_seconds,
        default_max_duration=settings.provider_default_max_duration_seconds,
    )


def get_enforcement_processor(
    settings: SettingsDep,
    factory: SessionFactoryDep,
    provider: ProviderDep,
) -> EnforcementProcessor:
    return build_processor(settings, factory, provider)


def get_reconciliation_sweeper(
    factory: SessionFactoryDep,
    provider: ProviderDep,
    policy: RetryPolicyDep,
) -> ReconciliationSweeper:
    return ReconciliationSweeper(factory, provider, policy=policy)


ProcessorDep = Annotated[EnforcementProcessor, Depends(get_enforcement_processor)]
SweeperDep = Annotated[ReconciliationSweeper, Depends(get_reconciliation_sweeper)]

# ---------------------------------------------------------------------------
# Shared-secret authentication
# ---------------------------------------------------------------------------


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def _secret_matches(presented: str, expected: str) -> bool:
    if not expected or not presented:
        return False
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def require_cron_secret(request: Request, settings: SettingsDep) -> None:
    """Allow the request only with ``Authorization: Bearer <cron_secret>``."""
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        logger.error("Cron trigger called but API_CRON_SECRET is not configured")
    if not _secret_matches(_bearer_token(request), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_internal_token(request: Request, settings: SettingsDep) -> None:
    """Allow the request with the internal token as Bearer or ``x-internal-job-token``."""
    expected = settings.internal_api_token.get_secret_value()
    if not expected:
        logger.error("Internal endpoint called but API_INTERNAL_API_TOKEN is not configured")
    presented = _bearer_token(request) or request.headers.get("x-internal-job-token", "")
    if not _secret_matches(presented, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
