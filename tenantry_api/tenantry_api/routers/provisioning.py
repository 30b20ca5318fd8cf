"""Provisioning endpoints: kick off (or resume) provisioning and poll its progress."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from tenantry_core.onboarding.stages import PROVISIONABLE_STAGES, OnboardingStage, parse_stage, route_for_stage
from tenantry_core.state.repository import OnboardingRepository, TenantRepository

from tenantry_api.dependencies import ProvisioningDep, SessionDep, TenantDep
from tenantry_api.errors import Conflict, NotFound
from tenantry_api.middleware.rbac import Permission, Role, require_permission
from tenantry_api.schemas import ProvisioningStatusResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provisioning", tags=["provisioning"])


async def _status(session: Any, tenant_id: str) -> dict[str, Any]:
    tenant = await TenantRepository(session).get_by_id(tenant_id)
    onboarding = await OnboardingRepository(session).get(tenant_id)
    if tenant is None or onboarding is None:
        raise NotFound("Tenant not found")
    stage = parse_stage(onboarding.stage)
    return {
        "tenant_slug": tenant.slug,
        "tenant_status": tenant.status,
        "stage": stage.value,
        "redirect_url": route_for_stage(stage, tenant.slug),
    }


@router.post("", response_model=ProvisioningStatusResponse, status_code=202)
async def start_provisioning(
    session: SessionDep,
    tenant_id: TenantDep,
    provisioning: ProvisioningDep,
    _role: Role = Depends(require_permission(Permission.PROVISION_TENANT)),
) -> dict[str, Any]:
    """Schedule provisioning in the background and return immediately.

    Calling this again while the tenant is at PROVISIONING resumes an
    interrupted or failed run.
    """
    result = await _status(session, tenant_id)
    stage = OnboardingStage(result["stage"])
    if stage is OnboardingStage.ACTIVATED:
        return {**result, "scheduled": False}
    if stage not in PROVISIONABLE_STAGES:
        raise Conflict(f"Tenant is at {stage.value}; payment must complete before provisioning")

    provisioning.schedule(tenant_id)
    logger.info("Provisioning scheduled for tenant %s", result["tenant_slug"], extra={"tenant_id": tenant_id})
    return {**result, "scheduled": True}


@router.get("", response_model=ProvisioningStatusResponse)
async def get_provisioning_status(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_WORKSPACE)),
) -> dict[str, Any]:
    return await _status(session, tenant_id)
