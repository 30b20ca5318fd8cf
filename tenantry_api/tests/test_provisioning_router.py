"""Tests for the provisioning endpoints."""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from tenantry_core.onboarding.stages import OnboardingStage


class TestStartProvisioning:
    @pytest.mark.asyncio
    async def test_schedules_and_activates(self, client: AsyncClient, seed, auth_headers, app):
        tenant = await seed("acme", stage=OnboardingStage.PAYMENT_COMPLETED)
        headers = auth_headers(tenant)

        resp = await client.post("/api/v1/provisioning", headers=headers)

        assert resp.status_code == 202
        assert resp.json()["scheduled"] is True
        await app.state.provisioning.wait_idle()

        status = (await client.get("/api/v1/provisioning", headers=headers)).json()
        assert status == {
            "tenantSlug": "acme",
            "tenantStatus": "ACTIVE",
            "stage": "ACTIVATED",
            "redirectUrl": "/acme/Dashboard/Library",
            "scheduled": False,
        }

    @pytest.mark.asyncio
    async def test_resume_from_provisioning(self, client: AsyncClient, seed, auth_headers, app):
        tenant = await seed("acme", stage=OnboardingStage.PROVISIONING)

        resp = await client.post("/api/v1/provisioning", headers=auth_headers(tenant))

        assert resp.status_code == 202
        await app.state.provisioning.wait_idle()
        status = (await client.get("/api/v1/provisioning", headers=auth_headers(tenant))).json()
        assert status["stage"] == "ACTIVATED"

    @pytest.mark.asyncio
    async def test_already_activated(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme", stage=OnboardingStage.ACTIVATED, tenant_status="ACTIVE")

        resp = await client.post("/api/v1/provisioning", headers=auth_headers(tenant))

        assert resp.json()["scheduled"] is False

    @pytest.mark.asyncio
    async def test_before_payment(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme", stage=OnboardingStage.PLAN_SELECTED)

        resp = await client.post("/api/v1/provisioning", headers=auth_headers(tenant))

        assert resp.status_code == 409
        assert resp.json()["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_member_cannot_provision(self, client: AsyncClient, seed, add_member, auth_headers):
        tenant = await seed("acme", stage=OnboardingStage.PAYMENT_COMPLETED)
        member = await add_member(tenant, "bob@acme.io")

        resp = await client.post("/api/v1/provisioning", headers=auth_headers(member))

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_member_can_poll(self, client: AsyncClient, seed, add_member, auth_headers):
        tenant = await seed("acme", stage=OnboardingStage.PROVISIONING)
        member = await add_member(tenant, "bob@acme.io")

        resp = await client.get("/api/v1/provisioning", headers=auth_headers(member))

        assert resp.status_code == 200
        assert resp.json()["redirectUrl"] == "/provisioning"
