"""FastAPI application entry-point for the VoiceGate enforcement service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from voicegate_api import __version__
from voicegate_api.config import APISettings, PlatformEnv
from voicegate_api.dependencies import (
    build_processor,
    dispose_engine,
    dispose_paypal_client,
    dispose_provider_client,
    get_provider_client,
    get_retry_policy,
    get_session_factory,
    get_settings,
    init_engine,
    init_paypal_client,
    init_provider_client,
    init_security_gates,
)
from voicegate_api.middleware.logging import RequestLoggingMiddleware
from voicegate_api.middleware.prometheus import PrometheusMiddleware
from voicegate_api.routers import billing, cron, health, internal, provider_webhooks, usage
from voicegate_api.routers import metrics as metrics_router
from voicegate_api.services.background_worker import PeriodicWorker
from voicegate_api.services.reconciliation_sweeper import ReconciliationSweeper
from voicegate_api.services.usage_ledger import TenantNotProvisionedError, UsageLimitExceededError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _build_workers(settings: APISettings) -> list[PeriodicWorker]:
    factory = get_session_factory()
    provider = get_provider_client()
    workers: list[PeriodicWorker] = []
    if settings.enforcement_interval_seconds > 0:
        processor = build_processor(settings, factory, provider)
        workers.append(PeriodicWorker("EnforcementDrain", processor.drain, settings.enforcement_interval_seconds))
    if settings.sweep_interval_seconds > 0:
        sweeper = ReconciliationSweeper(factory, provider, policy=get_retry_policy(settings))
        workers.append(PeriodicWorker("ReconciliationSweep", sweeper.sweep, settings.sweep_interval_seconds))
    return workers


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev and local SQLite).
    - Initialise the voice provider and PayPal HTTP clients.
    - Build the webhook security gates.
    - Start the in-process enforcement and sweep workers, if enabled.

    On shutdown the workers are stopped before the clients and the engine
    are closed.
    """
    settings = get_settings()

    if settings.structured_logging:
        from voicegate_api.middleware.json_formatter import configure_structured_logging

        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url.split("@")[-1][:40],
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from voicegate_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-create")

    init_provider_client(settings)
    logger.info("Voice provider client initialised (%s)", settings.provider_api_url)
    paypal_client = init_paypal_client(settings)
    gates = init_security_gates(settings, paypal_client)
    logger.info("Webhook security gates initialised: %s", ", ".join(sorted(gates)))

    workers = _build_workers(settings)
    for worker in workers:
        await worker.start()

    yield

    for worker in workers:
        await worker.stop()
    await dispose_paypal_client()
    await dispose_provider_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="VoiceGate API",
        description="Usage enforcement and resource reconciliation for hosted voice assistants.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(provider_webhooks.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")
    app.include_router(internal.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")

    # Metrics endpoint -- outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # Infrastructure endpoints -- outside versioning (probes, root-level).
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(UsageLimitExceededError)
    async def usage_limit_handler(request: Request, exc: UsageLimitExceededError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"error": exc.to_dict()})

    @app.exception_handler(TenantNotProvisionedError)
    async def tenant_not_provisioned_handler(request: Request, exc: TenantNotProvisionedError) -> JSONResponse:
        logger.error("Tenant %s not provisioned (%s)", exc.tenant_id, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "tenant_not_provisioned"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn voicegate_api.main:app``.
app = create_app()
