"""Onboarding wizard endpoints.

Every step answers ``{success, redirectUrl, stage}``.  Steps submitted out
of order succeed without writing anything and route the client to the
stage it is actually at.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from tenantry_core.onboarding.stages import PROVISIONABLE_STAGES, OnboardingStage, route_for_stage
from tenantry_core.state.repository import SubscriptionRepository, TenantRepository

from tenantry_api.dependencies import (
    ClaimsDep,
    EmailDep,
    PaymentGatewayDep,
    ProvisioningDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    TenantLocksDep,
    UserDep,
)
from tenantry_api.errors import Conflict, Forbidden, NotFound
from tenantry_api.middleware.rbac import Permission, Role, require_permission
from tenantry_api.schemas import (
    CheckoutResponse,
    CheckoutVerifyRequest,
    DataroomRequest,
    OnboardingStatusResponse,
    PlanSelectRequest,
    StageAdvanceResponse,
    TeamInviteRequest,
    TeamInviteResponse,
    UseCaseRequest,
    WorkflowRequest,
)
from tenantry_api.services.billing_service import (
    SubscriptionReconciler,
    parse_billing_cycle,
    parse_plan,
)
from tenantry_api.services.onboarding_service import OnboardingService, mark_payment_completed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onboarding", tags=["onboarding"])

_PAID_STATUSES = frozenset({"paid", "no_payment_required"})


@router.get("/status", response_model=OnboardingStatusResponse)
async def get_status(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.READ_WORKSPACE)),
) -> dict[str, Any]:
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    return await service.get_status()


@router.post("/dataroom", response_model=StageAdvanceResponse)
async def create_dataroom(
    body: DataroomRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    return await service.create_dataroom(body.name)


@router.post("/use-case", response_model=StageAdvanceResponse)
async def select_use_cases(
    body: UseCaseRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    return await service.select_use_cases(body.use_cases)


@router.post("/workflow", response_model=StageAdvanceResponse)
async def setup_workflow(
    body: WorkflowRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Record the workflow configuration; resubmitting overwrites it."""
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    return await service.setup_workflow(body.config)


@router.post("/team", response_model=TeamInviteResponse)
async def invite_team(
    body: TeamInviteRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    email: EmailDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Record pending invites.  An empty list skips the step."""
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id, notifier=email)
    return await service.invite_team([(entry.email, entry.role) for entry in body.invites if entry.email])


@router.post("/plan", response_model=StageAdvanceResponse)
async def select_plan(
    body: PlanSelectRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    gateway: PaymentGatewayDep,
    locks: TenantLocksDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Record the plan and create or update the tenant's subscription."""
    plan = parse_plan(body.plan)
    cycle = parse_billing_cycle(body.billing_cycle)
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    written, response = await service.select_plan(plan.value, cycle.value)
    if written:
        reconciler = SubscriptionReconciler(
            session,
            settings,
            tenant_id=tenant_id,
            user_id=user_id,
            gateway=gateway,
            locks=locks,
        )
        await reconciler.select_plan(plan, cycle)
    return response


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    claims: ClaimsDep,
    gateway: PaymentGatewayDep,
    provisioning: ProvisioningDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Start payment for the selected plan.

    The free plan is marked paid immediately and provisioning is scheduled
    in the background.  Paid plans get a processor checkout URL; the
    processor webhook (or ``/checkout/verify``) completes the step.
    """
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    stage = await service.current_stage()
    if stage is not OnboardingStage.PLAN_SELECTED:
        if stage.ordinal < OnboardingStage.PLAN_SELECTED.ordinal:
            raise Conflict("Select a plan before checking out")
        tenant = await TenantRepository(session).get_by_id(tenant_id)
        return {
            "success": True,
            "redirect_url": route_for_stage(stage, tenant.slug if tenant else None),
            "stage": stage.value,
        }

    subscription = await SubscriptionRepository(session).get(tenant_id)
    if subscription is None:
        raise NotFound("No subscription for this tenant")
    plan = parse_plan(subscription.plan)

    if plan.is_free:
        response = await service.complete_payment()
        await session.commit()
        if OnboardingStage(response["stage"]) in PROVISIONABLE_STAGES:
            provisioning.schedule(tenant_id)
        return response

    app_url = settings.app_url.rstrip("/")
    result = await gateway.create_checkout_session(
        tenant_id=tenant_id,
        price_id=settings.price_id_for(subscription.plan, subscription.billing_cycle),
        customer_email=claims.email,
        customer_id=subscription.processor_customer_id,
        success_url=f"{app_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{app_url}/pricing",
    )
    logger.info("Checkout session created for tenant %s", tenant_id, extra={"tenant_id": tenant_id})
    return {"success": True, "checkout_url": result["url"], "session_id": result["id"]}


@router.post("/checkout/verify", response_model=StageAdvanceResponse)
async def verify_checkout(
    body: CheckoutVerifyRequest,
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    gateway: PaymentGatewayDep,
    locks: TenantLocksDep,
    provisioning: ProvisioningDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ONBOARDING)),
) -> dict[str, Any]:
    """Confirm a completed checkout when the client returns before the webhook."""
    service = OnboardingService(session, settings, tenant_id=tenant_id, user_id=user_id)
    checkout_session = await gateway.retrieve_checkout_session(body.session_id)

    metadata = checkout_session.get("metadata") or {}
    owner = metadata.get("tenant_id") or checkout_session.get("client_reference_id")
    if owner != tenant_id:
        logger.warning("Tenant %s tried to verify checkout session of another tenant", tenant_id)
        raise Forbidden("Checkout session does not belong to this tenant")
    if checkout_session.get("payment_status") not in _PAID_STATUSES:
        raise Conflict("Payment has not completed yet")

    async with locks.lock_for(tenant_id):
        await SubscriptionRepository(session).record_processor_ids(
            tenant_id,
            customer_id=checkout_session.get("customer"),
            subscription_id=checkout_session.get("subscription"),
        )
        stage = await mark_payment_completed(session, tenant_id)
        await session.commit()

    if stage in PROVISIONABLE_STAGES:
        provisioning.schedule(tenant_id)
    tenant = await TenantRepository(session).get_by_id(tenant_id)
    current = stage or await service.current_stage()
    return {
        "success": True,
        "redirect_url": route_for_stage(current, tenant.slug if tenant else None),
        "stage": current.value,
    }
