"""API router modules for the VoiceGate service."""

from __future__ import annotations

from voicegate_api.routers import (
    billing,
    cron,
    health,
    internal,
    metrics,
    provider_webhooks,
    usage,
)

__all__ = [
    "billing",
    "cron",
    "health",
    "internal",
    "metrics",
    "provider_webhooks",
    "usage",
]
