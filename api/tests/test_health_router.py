"""Tests for health, readiness and metrics endpoints."""

from __future__ import annotations

import pytest

from voicegate_api import __version__


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_ok(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "version": __version__, "db": "ok", "provider": "ok"}

    @pytest.mark.asyncio
    async def test_health_reports_provider_outage(self, client, fake_provider):
        fake_provider.status_override = 503
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["provider"] == "unavailable"

    @pytest.mark.asyncio
    async def test_health_check_uses_limited_listing(self, client, fake_provider):
        await client.get("/api/v1/health")
        assert fake_provider.calls("GET") == [("GET", "/assistant", None)]


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"
        assert resp.json()["checks"] == {"db": "ok", "provider": "ok"}

    @pytest.mark.asyncio
    async def test_provider_outage_degrades_but_stays_ready(self, client, fake_provider):
        fake_provider.status_override = 500
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"


class TestMetrics:
    @pytest.mark.asyncio
    async def test_exposition_format(self, client):
        await client.get("/api/v1/health")
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "voicegate_http_requests_total" in resp.text
