"""Tests for tenant-scoped endpoints: the Auth Bridge and the data-plane health check."""

from __future__ import annotations

import jwt
import pytest
from httpx import AsyncClient
from tenantry_core.onboarding.stages import OnboardingStage

from tenantry_api.security import TokenKind


class TestTenantToken:
    @pytest.mark.asyncio
    async def test_issue_tenant_token(self, client: AsyncClient, seed, auth_headers, token_manager):
        tenant = await seed("acme", stage=OnboardingStage.ACTIVATED, tenant_status="ACTIVE")

        resp = await client.post("/api/v1/tenants/acme/token", headers=auth_headers(tenant))

        assert resp.status_code == 200
        body = resp.json()
        assert jwt.decode(body["token"], options={"verify_signature": False})["aud"] == "tenantry:tenant"
        assert body["user"]["tenantSlug"] == "acme"
        claims = token_manager.validate_token(body["token"], TokenKind.TENANT)
        assert claims.tenant_id == tenant.tenant_id

    @pytest.mark.asyncio
    async def test_other_tenant_forbidden(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme", tenant_status="ACTIVE")
        await seed("globex", tenant_status="ACTIVE")

        resp = await client.post("/api/v1/tenants/globex/token", headers=auth_headers(tenant))

        assert resp.status_code == 403
        assert resp.json() == {"detail": "Session does not belong to this tenant", "code": "forbidden"}

    @pytest.mark.asyncio
    async def test_inactive_tenant_forbidden(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme")
        resp = await client.post("/api/v1/tenants/acme/token", headers=auth_headers(tenant))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_tenant_token_cannot_call_control_plane(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme", stage=OnboardingStage.ACTIVATED, tenant_status="ACTIVE")
        token = (await client.post("/api/v1/tenants/acme/token", headers=auth_headers(tenant))).json()["token"]

        resp = await client.get("/api/v1/onboarding/status", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 401


class TestDataPlaneHealth:
    @pytest.mark.asyncio
    async def test_data_plane_health_after_provisioning(self, client: AsyncClient, seed, auth_headers, provisioning_service):
        tenant = await seed("acme", stage=OnboardingStage.PAYMENT_COMPLETED)
        await provisioning_service.provision(tenant.tenant_id)

        resp = await client.get("/api/v1/tenants/acme/data-plane/health", headers=auth_headers(tenant))

        assert resp.status_code == 200
        assert resp.json() == {"tenantSlug": "acme", "status": "ok", "generation": 1}

    @pytest.mark.asyncio
    async def test_data_plane_health_unprovisioned_tenant(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme")

        resp = await client.get("/api/v1/tenants/acme/data-plane/health", headers=auth_headers(tenant))

        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_data_plane_health_other_tenant(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme")
        resp = await client.get("/api/v1/tenants/globex/data-plane/health", headers=auth_headers(tenant))
        assert resp.status_code == 403
