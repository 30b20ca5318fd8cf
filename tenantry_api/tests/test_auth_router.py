"""Tests for the authentication endpoints."""

from __future__ import annotations

import jwt
import pytest
from httpx import AsyncClient
from tenantry_core.onboarding.stages import OnboardingStage


def _sent_code(mock_email) -> str:
    return mock_email.send_verification_code.await_args.args[1]


class TestSignup:
    @pytest.mark.asyncio
    async def test_signup(self, client: AsyncClient, mock_email):
        resp = await client.post(
            "/api/v1/auth/signup",
            json={"email": "ada@acme.io", "fullName": "Ada", "workspaceName": "Acme Corp"},
        )

        assert resp.status_code == 201
        assert resp.json() == {"success": True, "tenantSlug": "acme-corp", "redirectUrl": "/verify-email"}
        mock_email.send_verification_code.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_signup(self, client: AsyncClient):
        body = {"email": "ada@acme.io", "fullName": "Ada"}
        await client.post("/api/v1/auth/signup", json=body)

        resp = await client.post("/api/v1/auth/signup", json=body)

        assert resp.status_code == 409
        assert resp.json()["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, client: AsyncClient):
        resp = await client.post("/api/v1/auth/signup", json={"email": "nope", "fullName": "Ada"})
        assert resp.status_code == 422


class TestVerify:
    @pytest.mark.asyncio
    async def test_verify_returns_session(self, client: AsyncClient, mock_email):
        await client.post("/api/v1/auth/signup", json={"email": "ada@acme.io", "fullName": "Ada"})

        resp = await client.post(
            "/api/v1/auth/verify-otp", json={"email": "ada@acme.io", "code": _sent_code(mock_email)}
        )

        body = resp.json()
        assert resp.status_code == 200
        assert jwt.get_unverified_header(body["token"])["alg"] == "HS256"
        assert body["expiresIn"] == 7 * 24 * 3600
        assert body["stage"] == "EMAIL_VERIFIED"
        assert body["user"]["fullName"] == "Ada"
        assert body["user"]["tenantSlug"] == "ada"

    @pytest.mark.asyncio
    async def test_wrong_code_is_unauthorized(self, client: AsyncClient, mock_email):
        await client.post("/api/v1/auth/signup", json={"email": "ada@acme.io", "fullName": "Ada"})
        wrong = "000000" if _sent_code(mock_email) != "000000" else "111111"

        resp = await client.post("/api/v1/auth/verify-otp", json={"email": "ada@acme.io", "code": wrong})

        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_resend_then_verify_new_code(self, client: AsyncClient, mock_email):
        await client.post("/api/v1/auth/signup", json={"email": "ada@acme.io", "fullName": "Ada"})

        resp = await client.post("/api/v1/auth/resend-otp", json={"email": "ada@acme.io"})
        assert resp.json() == {"success": True}

        resp = await client.post(
            "/api/v1/auth/verify-otp", json={"email": "ada@acme.io", "code": _sent_code(mock_email)}
        )
        assert resp.status_code == 200


class TestSignin:
    @pytest.mark.asyncio
    async def test_signin_flow(self, client: AsyncClient, seed, mock_email):
        tenant = await seed("acme", stage=OnboardingStage.ACTIVATED, tenant_status="ACTIVE")

        resp = await client.post("/api/v1/auth/signin", json={"email": tenant.email})
        assert resp.status_code == 200

        resp = await client.post(
            "/api/v1/auth/verify-otp",
            json={"email": tenant.email, "code": _sent_code(mock_email), "purpose": "signin"},
        )
        assert resp.json()["redirectUrl"] == "/acme/Dashboard/Library"

    @pytest.mark.asyncio
    async def test_signin_unknown_email(self, client: AsyncClient):
        resp = await client.post("/api/v1/auth/signin", json={"email": "ghost@acme.io"})
        assert resp.status_code == 404


class TestSession:
    @pytest.mark.asyncio
    async def test_session_info(self, client: AsyncClient, seed, auth_headers):
        tenant = await seed("acme", stage=OnboardingStage.WORKFLOW_SETUP)

        resp = await client.get("/api/v1/auth/session", headers=auth_headers(tenant))

        body = resp.json()
        assert body["stage"] == "WORKFLOW_SETUP"
        assert body["tenantStatus"] == "PROVISIONING"
        assert body["redirectUrl"] == "/workspace-setup"

    @pytest.mark.asyncio
    async def test_session_requires_token(self, client: AsyncClient):
        resp = await client.get("/api/v1/auth/session")
        assert resp.status_code == 401
