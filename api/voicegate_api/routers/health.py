"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a Kubernetes-style
readiness probe registered at the application root so that orchestrators
can gate traffic independently of the API version.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from voicegate_api import __version__
from voicegate_api.dependencies import ProviderDep, SessionDep

logger = logging.getLogger(__name__)

# Short timeout for the provider check so probes respond quickly.
_PROVIDER_HEALTH_TIMEOUT = 2.0

router = APIRouter(tags=["health"])


async def _check_provider_health(provider: ProviderDep) -> bool:
    try:
        return await asyncio.wait_for(provider.health_check(), timeout=_PROVIDER_HEALTH_TIMEOUT)
    except TimeoutError:
        return False


@router.get("/health")
async def health(session: SessionDep, provider: ProviderDep) -> dict[str, Any]:
    """Return service health with dependency checks.

    Always HTTP 200 so load-balancers see the service as alive; ``db`` and
    ``provider`` report whether downstream dependencies are reachable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "provider": "ok",
    }

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"

    if not await _check_provider_health(provider):
        result["provider"] = "unavailable"

    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: SessionDep, provider: ProviderDep) -> JSONResponse:
    """Kubernetes-style readiness probe.

    The database gates readiness (HTTP 503 ``not_ready``).  An unreachable
    voice provider only degrades it: webhooks and usage checks still work
    and enforcement jobs wait in the queue.
    """
    checks: dict[str, str] = {"db": "ok", "provider": "ok"}
    overall = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    if not await _check_provider_health(provider):
        checks["provider"] = "unavailable"
        if overall == "ready":
            overall = "degraded"

    return JSONResponse(
        status_code=200 if overall != "not_ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
