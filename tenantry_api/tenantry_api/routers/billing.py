"""Subscription endpoints and the payment processor webhook.

``/subscriptions`` mutations are serialized per tenant by the
reconciler.  ``/billing/webhooks`` bypasses session authentication; the
processor signature is verified instead.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from tenantry_api.dependencies import (
    PaymentGatewayDep,
    ProvisioningDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    TenantLocksDep,
    UserDep,
)
from tenantry_api.errors import ValidationError
from tenantry_api.middleware.rbac import Permission, Role, require_permission
from tenantry_api.schemas import (
    CancelRequest,
    InvoiceListResponse,
    PortalRequest,
    PortalSessionResponse,
    SubscriptionResponse,
)
from tenantry_api.services.billing_service import BillingWebhookHandler, SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["billing"])
webhook_router = APIRouter(prefix="/billing", tags=["billing"])


def _reconciler(
    session: SessionDep,
    settings: SettingsDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    gateway: PaymentGatewayDep,
    locks: TenantLocksDep,
) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        session,
        settings,
        tenant_id=tenant_id,
        user_id=user_id,
        gateway=gateway,
        locks=locks,
    )


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(
    reconciler: SubscriptionReconciler = Depends(_reconciler),
    _role: Role = Depends(require_permission(Permission.READ_WORKSPACE)),
) -> dict[str, Any]:
    return await reconciler.get_subscription()


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    body: CancelRequest,
    reconciler: SubscriptionReconciler = Depends(_reconciler),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    """Cancel now (``immediate``) or at the end of the paid period."""
    return await reconciler.cancel(immediate=body.immediate)


@router.post("/resume", response_model=SubscriptionResponse)
async def resume_subscription(
    reconciler: SubscriptionReconciler = Depends(_reconciler),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, Any]:
    return await reconciler.resume()


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal_session(
    body: PortalRequest,
    reconciler: SubscriptionReconciler = Depends(_reconciler),
    _role: Role = Depends(require_permission(Permission.MANAGE_BILLING)),
) -> dict[str, str]:
    """Return a processor customer-portal URL the client should redirect to."""
    return {"url": await reconciler.create_portal_session(return_url=body.return_url)}


@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    limit: int = Query(default=10, ge=1, le=100),
    reconciler: SubscriptionReconciler = Depends(_reconciler),
    _role: Role = Depends(require_permission(Permission.READ_WORKSPACE)),
) -> dict[str, Any]:
    """Recent processor invoices, newest first."""
    return await reconciler.list_invoices(limit=limit)


# ---------------------------------------------------------------------------
# Processor webhook
# ---------------------------------------------------------------------------


@webhook_router.post("/webhooks")
async def processor_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: PaymentGatewayDep,
    locks: TenantLocksDep,
    provisioning: ProvisioningDep,
) -> dict[str, Any]:
    """Verify and apply a processor event.

    Unknown event types and events for unknown tenants are acknowledged
    with 200 so the processor stops redelivering them.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    signature = request.headers.get("stripe-signature", "")
    if not signature:
        raise ValidationError("Missing processor signature")
    event = gateway.construct_event(await request.body(), signature)

    handler = BillingWebhookHandler(session, settings, locks=locks)
    result = await handler.handle_event(event)

    if result.get("provision") and result.get("tenant_id"):
        provisioning.schedule(result["tenant_id"])
    response = {"status": result["status"]}
    if "reason" in result:
        response["reason"] = result["reason"]
    return response
