"""FastAPI dependency injection for settings, sessions, collaborators and identity."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from tenantry_core.state.database import get_engine

from tenantry_api.config import APISettings, load_api_settings
from tenantry_api.errors import Unauthorized
from tenantry_api.security import CredentialVault, TokenClaims, TokenConfig, TokenKind, TokenManager
from tenantry_api.services.billing_service import TenantLockRegistry
from tenantry_api.services.email_service import EmailService
from tenantry_api.services.payment_gateway import PaymentGateway
from tenantry_api.services.provisioning_service import ProvisioningService
from tenantry_api.services.tenant_router import TenantRouter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global control-plane engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by application-scoped components (router, provisioning) that
    open their own sessions outside a request.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Credential vault and token signing
# ---------------------------------------------------------------------------

_vault: CredentialVault | None = None
_token_manager: TokenManager | None = None


def get_vault(settings: SettingsDep) -> CredentialVault:
    """Return the process-wide vault; key derivation happens once."""
    global _vault  # noqa: PLW0603
    if _vault is None:
        _vault = CredentialVault(settings.credential_encryption_key.get_secret_value())
    return _vault


VaultDep = Annotated[CredentialVault, Depends(get_vault)]


def build_token_manager(settings: APISettings) -> TokenManager:
    return TokenManager(
        TokenConfig(
            secret=settings.session_secret,
            session_ttl_seconds=settings.session_ttl_seconds,
            tenant_ttl_seconds=settings.tenant_token_ttl_seconds,
        )
    )


def get_token_manager(settings: SettingsDep) -> TokenManager:
    global _token_manager  # noqa: PLW0603
    if _token_manager is None:
        _token_manager = build_token_manager(settings)
    return _token_manager


TokenManagerDep = Annotated[TokenManager, Depends(get_token_manager)]

# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------

_email_service: EmailService | None = None


def init_email_service(settings: APISettings) -> EmailService:
    global _email_service  # noqa: PLW0603
    _email_service = EmailService(
        settings.email_api_url,
        settings.email_api_key.get_secret_value(),
        sender=settings.email_from,
        app_url=settings.app_url,
    )
    return _email_service


async def dispose_email_service() -> None:
    global _email_service  # noqa: PLW0603
    if _email_service is not None:
        await _email_service.close()
        _email_service = None


def get_email_service() -> EmailService:
    if _email_service is None:
        raise RuntimeError("Email service has not been initialised.")
    return _email_service


EmailDep = Annotated[EmailService, Depends(get_email_service)]

# ---------------------------------------------------------------------------
# Payment processor
# ---------------------------------------------------------------------------


def get_payment_gateway(settings: SettingsDep) -> PaymentGateway:
    return PaymentGateway(settings)


PaymentGatewayDep = Annotated[PaymentGateway, Depends(get_payment_gateway)]

# ---------------------------------------------------------------------------
# Application-scoped components (owned by app.state)
# ---------------------------------------------------------------------------


def get_tenant_router(request: Request) -> TenantRouter:
    """Return the data-plane router created in the application lifespan."""
    return request.app.state.tenant_router


TenantRouterDep = Annotated[TenantRouter, Depends(get_tenant_router)]


def get_provisioning_service(request: Request) -> ProvisioningService:
    return request.app.state.provisioning


ProvisioningDep = Annotated[ProvisioningService, Depends(get_provisioning_service)]


def get_tenant_locks(request: Request) -> TenantLockRegistry:
    return request.app.state.tenant_locks


TenantLocksDep = Annotated[TenantLockRegistry, Depends(get_tenant_locks)]

# ---------------------------------------------------------------------------
# Identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_user_id(request: Request) -> str:
    """Extract the authenticated user id from request state."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise Unauthorized("Authentication required")
    return user_id


UserDep = Annotated[str, Depends(get_user_id)]


def get_tenant_id(request: Request) -> str:
    """Extract the session's tenant id from request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise Unauthorized("Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_session_claims(request: Request, user_id: UserDep) -> TokenClaims:
    """Rebuild the validated session claims from request state."""
    return TokenClaims(
        sub=user_id,
        email=getattr(request.state, "email", "") or "",
        kind=TokenKind.SESSION,
        tenant_id=getattr(request.state, "tenant_id", None),
        tenant_slug=getattr(request.state, "tenant_slug", None),
        role=getattr(request.state, "role", None),
        iat=0,
        exp=0,
        jti="request",
    )


ClaimsDep = Annotated[TokenClaims, Depends(get_session_claims)]
