"""Tests for storypress_api/routers/health.py

Covers:
- GET /api/v1/health liveness with DB check
- GET /ready readiness: ready, degraded when vendor or email is unconfigured
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from pydantic import SecretStr

from storypress_api import __version__
from storypress_api.dependencies import get_email_transport, get_lulu_client
from storypress_api.services.notification_service import ResendEmailTransport
from storypress_api.services.print_vendor import LuluClient


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "version": __version__, "db": "ok"}

    @pytest.mark.asyncio
    async def test_health_needs_no_token(self, client: AsyncClient):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, client: AsyncClient):
        resp = await client.get("/ready")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"db": "ok", "print_vendor": "ok", "email": "ok"}

    @pytest.mark.asyncio
    async def test_degraded_without_email(self, app, client: AsyncClient):
        transport = ResendEmailTransport("", "")
        app.dependency_overrides[get_email_transport] = lambda: transport
        try:
            resp = await client.get("/ready")
        finally:
            await transport.close()

        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"
        assert resp.json()["checks"]["email"] == "not_configured"

    @pytest.mark.asyncio
    async def test_degraded_without_vendor_credentials(self, app, client: AsyncClient, test_settings):
        settings = test_settings.model_copy(update={"lulu_client_secret": SecretStr("")})
        lulu = LuluClient(settings)
        app.dependency_overrides[get_lulu_client] = lambda: lulu
        try:
            resp = await client.get("/ready")
        finally:
            await lulu.close()

        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"
        assert resp.json()["checks"]["print_vendor"] == "not_configured"
