"""Authentication endpoints: signup, sign-in, one-time-code verification, session.

Signup, sign-in, verify and resend are public.  ``/auth/session`` needs a
valid session token.  Verification returns the session token in the JSON
body; the client sends it back as ``Authorization: Bearer``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from tenantry_api.dependencies import (
    EmailDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    TokenManagerDep,
    UserDep,
)
from tenantry_api.schemas import (
    ResendCodeRequest,
    SessionInfoResponse,
    SessionTokenResponse,
    SigninRequest,
    SignupRequest,
    SignupResponse,
    SuccessResponse,
    VerifyCodeRequest,
)
from tenantry_api.services.auth_service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/signup", response_model=SignupResponse, status_code=201)
async def signup(
    body: SignupRequest,
    session: SessionDep,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    email: EmailDep,
) -> dict[str, Any]:
    """Create an account and workspace, then email a verification code."""
    service = AuthService(session, settings, token_manager=tokens, notifier=email)
    return await service.signup(body.email, body.full_name, body.workspace_name)


@router.post("/signin", response_model=SuccessResponse)
async def signin(
    body: SigninRequest,
    session: SessionDep,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    email: EmailDep,
) -> dict[str, Any]:
    service = AuthService(session, settings, token_manager=tokens, notifier=email)
    return await service.request_signin(body.email)


@router.post("/verify-otp", response_model=SessionTokenResponse)
async def verify_otp(
    body: VerifyCodeRequest,
    session: SessionDep,
    settings: SettingsDep,
    tokens: TokenManagerDep,
) -> dict[str, Any]:
    """Consume a one-time code and return a session token plus the next route."""
    service = AuthService(session, settings, token_manager=tokens)
    return await service.verify_code(body.email, body.code, body.purpose)


@router.post("/resend-otp", response_model=SuccessResponse)
async def resend_otp(
    body: ResendCodeRequest,
    session: SessionDep,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    email: EmailDep,
) -> dict[str, Any]:
    service = AuthService(session, settings, token_manager=tokens, notifier=email)
    return await service.resend_code(body.email, body.purpose)


@router.get("/session", response_model=SessionInfoResponse)
async def get_session(
    session: SessionDep,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    user_id: UserDep,
    tenant_id: TenantDep,
) -> dict[str, Any]:
    """Return the signed-in user, tenant status and onboarding redirect."""
    service = AuthService(session, settings, token_manager=tokens)
    return await service.get_session_info(user_id=user_id, tenant_id=tenant_id)
