"""Middleware components for the VoiceGate API."""

from __future__ import annotations

from voicegate_api.middleware.logging import RequestLoggingMiddleware
from voicegate_api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
