"""Signup, one-time-code verification, sessions and the Auth Bridge.

Signup creates the user, the tenant (status PROVISIONING, no secret), the
owner membership and the onboarding session in the caller's transaction,
then emails a 6-digit code.  Verifying that code consumes it exactly once,
advances onboarding to EMAIL_VERIFIED and returns a signed session token.

The Auth Bridge (:meth:`AuthService.issue_tenant_token`) exchanges a
session for a short-lived token scoped to one ACTIVE tenant, which
data-plane services verify without calling back into the directory.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from tenantry_core.onboarding.stages import OnboardingStage, parse_stage, route_for_stage
from tenantry_core.state.repository import (
    MembershipRepository,
    OnboardingRepository,
    TenantRepository,
    UserRepository,
    VerificationTokenRepository,
)
from tenantry_core.state.tables import TenantTable, UserTable

from tenantry_api.config import APISettings
from tenantry_api.errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from tenantry_api.security import TokenClaims, TokenKind, TokenManager
from tenantry_api.services.email_service import EmailService
from tenantry_api.services.infra_client import MAX_SLUG_LENGTH

logger = logging.getLogger(__name__)

OTP_PURPOSES = frozenset({"signup", "signin"})
_OTP_DIGITS = 6
_SLUG_SUFFIX_ATTEMPTS = 5
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# ---------------------------------------------------------------------------
# Slugs and codes
# ---------------------------------------------------------------------------


def slugify(text: str) -> str:
    """Lowercase, hyphenate whitespace/underscores and drop everything else."""
    slug = text.lower().strip()
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]+", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:MAX_SLUG_LENGTH].rstrip("-")


def _base36(value: int) -> str:
    digits = ""
    while value:
        value, rem = divmod(value, 36)
        digits = _BASE36[rem] + digits
    return digits or "0"


def generate_otp() -> str:
    """Return a uniformly random zero-padded 6-digit code."""
    return f"{secrets.randbelow(10**_OTP_DIGITS):0{_OTP_DIGITS}d}"


def _normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if "@" not in normalized or len(normalized) > 320:
        raise ValidationError("A valid email address is required")
    return normalized


def _check_purpose(purpose: str) -> str:
    if purpose not in OTP_PURPOSES:
        raise ValidationError(f"Unknown verification purpose '{purpose}'")
    return purpose


class AuthService:
    """Identity operations for the control plane.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings (code lifetime and attempt limit).
    token_manager:
        Signs session and tenant tokens.
    notifier:
        Delivers one-time codes.  Delivery failures never fail the call.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        token_manager: TokenManager,
        notifier: EmailService | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tokens = token_manager
        self._notifier = notifier
        self._users = UserRepository(session)
        self._tenants = TenantRepository(session)
        self._memberships = MembershipRepository(session)
        self._codes = VerificationTokenRepository(session)

    # -- Signup and sign-in --------------------------------------------------

    async def _unique_slug(self, base: str) -> str:
        base = base or "workspace"
        if not await self._tenants.slug_exists(base):
            return base
        for _ in range(_SLUG_SUFFIX_ATTEMPTS):
            suffix = _base36(secrets.randbits(30))
            candidate = f"{base[: MAX_SLUG_LENGTH - len(suffix) - 1].rstrip('-')}-{suffix}"
            if not await self._tenants.slug_exists(candidate):
                return candidate
        raise Conflict("Could not allocate a unique workspace slug; try a different name")

    async def signup(self, email: str, full_name: str, workspace_name: str | None = None) -> dict[str, Any]:
        """Create the account, its tenant and onboarding session, and send a code."""
        email = _normalize_email(email)
        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationError("Full name is required")
        if await self._users.get_by_email(email) is not None:
            raise Conflict("An account with this email already exists. Please sign in instead.")

        name = (workspace_name or "").strip() or f"{full_name}'s workspace"
        slug = await self._unique_slug(slugify(workspace_name or email.split("@", 1)[0]))

        user = await self._users.create(email, full_name)
        tenant = await self._tenants.create(slug, name[:256], email)
        await self._memberships.add(tenant.id, user.id, role="owner")
        await OnboardingRepository(self._session).create(tenant.id)
        logger.info("Signup created tenant %s", slug, extra={"tenant_slug": slug})

        await self._issue_code(email, "signup")
        return {
            "success": True,
            "tenant_slug": slug,
            "redirect_url": route_for_stage(OnboardingStage.SIGNUP_STARTED),
        }

    async def request_signin(self, email: str) -> dict[str, Any]:
        """Send a sign-in code to an existing user."""
        email = _normalize_email(email)
        user = await self._users.get_by_email(email)
        if user is None or not user.is_active:
            raise NotFound("No account found with this email. Please sign up first.")
        await self._issue_code(email, "signin")
        return {"success": True}

    async def resend_code(self, email: str, purpose: str) -> dict[str, Any]:
        """Issue a fresh code; earlier unconsumed codes for the purpose stop working."""
        email = _normalize_email(email)
        purpose = _check_purpose(purpose)
        user = await self._users.get_by_email(email)
        if user is None:
            raise NotFound("No account found with this email")
        if purpose == "signup" and user.email_verified:
            raise Conflict("Email is already verified. Please sign in instead.")
        await self._issue_code(email, purpose)
        return {"success": True}

    async def _issue_code(self, email: str, purpose: str) -> None:
        code = generate_otp()
        await self._codes.issue(email, purpose, code, ttl=timedelta(seconds=self._settings.otp_ttl_seconds))
        if self._notifier is not None:
            await self._notifier.send_verification_code(email, code, purpose=purpose)

    # -- Verification --------------------------------------------------------

    async def verify_code(self, email: str, code: str, purpose: str) -> dict[str, Any]:
        """Consume a one-time code and return a session.

        Wrong codes count against the code's attempt limit and the count
        is committed even though the call fails.

        Raises
        ------
        Unauthorized
            If no live code exists, or the code is wrong, expired,
            exhausted or already used.
        """
        email = _normalize_email(email)
        purpose = _check_purpose(purpose)
        code = (code or "").strip()
        if not re.fullmatch(rf"\d{{{_OTP_DIGITS}}}", code):
            raise ValidationError(f"Verification code must be {_OTP_DIGITS} digits")

        token = await self._codes.get_latest_unconsumed(email, purpose)
        if token is None:
            raise Unauthorized("No verification code found. Please request a new one.")
        if token.expires_at <= datetime.now(UTC):
            raise Unauthorized("Verification code has expired. Please request a new one.")
        if token.attempts >= self._settings.otp_max_attempts:
            raise Unauthorized("Too many attempts. Please request a new code.")

        if not VerificationTokenRepository.verify_code(code, token.code_hash):
            await self._codes.record_failed_attempt(token.id)
            await self._session.commit()
            logger.info("Wrong verification code for %s (%s)", email, purpose)
            raise Unauthorized("Invalid verification code. Please try again.")

        if not await self._codes.consume(token.id):
            raise Unauthorized("This code has already been used. Please request a new one.")

        user = await self._users.get_by_email(email)
        if user is None:
            raise NotFound("User not found")
        await self._users.mark_verified(user.id)

        membership = await self._memberships.get_primary_for_user(user.id)
        if membership is None:
            raise NotFound("No workspace is associated with this account")
        tenant = await self._tenants.get_by_id(membership.tenant_id)
        if tenant is None:
            raise NotFound("Workspace not found")

        onboarding = OnboardingRepository(self._session)
        row = await onboarding.get(tenant.id)
        if row is not None:
            current = parse_stage(row.stage)
            if current is OnboardingStage.SIGNUP_STARTED:
                await onboarding.write_stage(tenant.id, expected=current, target=OnboardingStage.EMAIL_VERIFIED)
                row = await onboarding.get(tenant.id)

        stage = parse_stage(row.stage) if row is not None else OnboardingStage.ACTIVATED
        token_value = self._tokens.generate_token(
            TokenKind.SESSION,
            sub=user.id,
            email=user.email,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
            role=membership.role,
        )
        logger.info("Session issued for tenant %s (%s)", tenant.slug, purpose, extra={"tenant_slug": tenant.slug})
        return {
            "token": token_value,
            "expires_in": self._settings.session_ttl_seconds,
            "user": self._user_summary(user, tenant, membership.role),
            "stage": stage.value,
            "redirect_url": route_for_stage(stage, tenant.slug),
        }

    # -- Session -------------------------------------------------------------

    async def get_session_info(self, *, user_id: str, tenant_id: str | None) -> dict[str, Any]:
        user = await self._users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise Unauthorized("Session user no longer exists")
        if tenant_id is None:
            raise Unauthorized("Session has no workspace")
        tenant = await self._tenants.get_by_id(tenant_id)
        membership = await self._memberships.get(tenant_id, user_id)
        if tenant is None or membership is None:
            raise Forbidden("Session workspace is no longer accessible")
        row = await OnboardingRepository(self._session).get(tenant_id)
        stage = parse_stage(row.stage) if row is not None else OnboardingStage.ACTIVATED
        return {
            "user": self._user_summary(user, tenant, membership.role),
            "tenant_status": tenant.status,
            "stage": stage.value,
            "redirect_url": route_for_stage(stage, tenant.slug),
        }

    # -- Auth Bridge ---------------------------------------------------------

    async def issue_tenant_token(self, claims: TokenClaims, tenant_slug: str) -> dict[str, Any]:
        """Mint a short-lived token scoped to *tenant_slug*.

        Raises
        ------
        Forbidden
            If the session belongs to another tenant, the caller is no
            longer a member, or the tenant is not ACTIVE.
        NotFound
            If the slug does not exist.
        """
        if claims.tenant_slug != tenant_slug:
            logger.warning(
                "Cross-tenant token request: session tenant %s asked for %s",
                claims.tenant_slug,
                tenant_slug,
            )
            raise Forbidden("Session does not belong to this tenant")

        tenant = await self._tenants.get_by_slug(tenant_slug)
        if tenant is None:
            raise NotFound(f"Tenant '{tenant_slug}' not found")
        if tenant.id != claims.tenant_id:
            raise Forbidden("Session does not belong to this tenant")
        if tenant.status != "ACTIVE":
            raise Forbidden("Tenant is not active")

        membership = await self._memberships.get(tenant.id, claims.sub)
        user = await self._users.get_by_id(claims.sub)
        if membership is None or user is None or not user.is_active:
            raise Forbidden("Not a member of this tenant")

        ttl = self._settings.tenant_token_ttl_seconds
        token_value = self._tokens.generate_token(
            TokenKind.TENANT,
            sub=user.id,
            email=user.email,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
            role=membership.role,
            ttl_seconds=ttl,
        )
        return {
            "token": token_value,
            "expires_in": ttl,
            "user": self._user_summary(user, tenant, membership.role),
        }

    @staticmethod
    def _user_summary(user: UserTable, tenant: TenantTable, role: str) -> dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "role": role,
            "tenant_slug": tenant.slug,
        }
