"""Prometheus metrics for HTTP traffic and the enforcement engine.

HTTP requests are recorded as RED metrics (rate, errors, duration) by
:class:`PrometheusMiddleware`.  Domain counters cover the webhook gate,
sync job outcomes and reconciliation drift; the queue depth gauge is set
whenever queue status is read.

Path normalisation collapses path parameters (e.g.
``/internal/enforcement/jobs/3f2a.../requeue`` -> ``.../jobs/{id}/requeue``)
to prevent unbounded label cardinality.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "voicegate_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "voicegate_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_REJECTIONS_TOTAL = Counter(
    "voicegate_webhook_rejections_total",
    "Inbound webhooks rejected by the security gate",
    ["provider", "reason"],
)

SYNC_JOB_OUTCOMES_TOTAL = Counter(
    "voicegate_sync_job_outcomes_total",
    "Processed sync jobs by action and outcome",
    ["action", "outcome"],
)

SYNC_JOB_DURATION = Histogram(
    "voicegate_sync_job_duration_seconds",
    "Wall-clock time of one sync job attempt, including the provider call",
    ["action"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

SWEEP_DRIFT_TOTAL = Counter(
    "voicegate_sweep_drift_total",
    "Resources found missing upstream by the reconciliation sweep",
    ["resource_type"],
)

SYNC_QUEUE_DEPTH = Gauge(
    "voicegate_sync_queue_depth",
    "Sync jobs per queue status at the last status read",
    ["status"],
)


def record_queue_depth(counts: dict[str, int]) -> None:
    """Publish ``status_counts()`` output to the queue depth gauge."""
    for status, count in counts.items():
        SYNC_QUEUE_DEPTH.labels(status=status).set(count)


# ---------------------------------------------------------------------------
# Path normalisation: collapse UUIDs, hex IDs, and numeric segments
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Job ids are uuid4 hex.
    (re.compile(r"/[0-9a-f]{12,64}(?=/|$)"), "/{id}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]

# Tenant ids are free-form; collapse the segment after /tenants/.
_TENANT_SEGMENT = re.compile(r"(/tenants/)[^/]+")


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    path = _TENANT_SEGMENT.sub(r"\1{tenant_id}", path)
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)

        return response
