"""Tenant-scoped endpoints: Auth Bridge token issuance and the data-plane health check."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import text

from tenantry_api.dependencies import ClaimsDep, SessionDep, SettingsDep, TenantRouterDep, TokenManagerDep
from tenantry_api.errors import Forbidden
from tenantry_api.middleware.rbac import Permission, Role, require_permission
from tenantry_api.schemas import DataPlaneHealthResponse, TenantTokenResponse
from tenantry_api.services.auth_service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("/{slug}/token", response_model=TenantTokenResponse)
async def issue_tenant_token(
    slug: str,
    session: SessionDep,
    settings: SettingsDep,
    tokens: TokenManagerDep,
    claims: ClaimsDep,
    _role: Role = Depends(require_permission(Permission.ACCESS_DATA_PLANE)),
) -> dict[str, Any]:
    """Exchange the caller's session for a short-lived token scoped to *slug*."""
    service = AuthService(session, settings, token_manager=tokens)
    return await service.issue_tenant_token(claims, slug)


@router.get("/{slug}/data-plane/health", response_model=DataPlaneHealthResponse)
async def data_plane_health(
    slug: str,
    claims: ClaimsDep,
    tenant_router: TenantRouterDep,
    _role: Role = Depends(require_permission(Permission.ACCESS_DATA_PLANE)),
) -> dict[str, Any]:
    """Resolve the tenant's database handle and run ``SELECT 1`` through it."""
    if claims.tenant_slug != slug:
        raise Forbidden("Session does not belong to this tenant")

    async with tenant_router.connect(slug) as conn:
        await conn.execute(text("SELECT 1"))
    return {
        "tenant_slug": slug,
        "status": "ok",
        "generation": tenant_router.cached_generation(slug) or 0,
    }
