"""Subscription reconciliation with the payment processor.

:class:`SubscriptionReconciler` owns user-initiated plan changes,
cancellation and resumption.  :class:`BillingWebhookHandler` applies the
processor's asynchronous view of the same subscription.  Both write through
compare-and-set statements so neither can clobber a state the other has
already moved past.

Mutations for one tenant are serialized by a :class:`TenantLockRegistry`
held by the application, and each mutation commits inside its lock.
Terminal cancellation is claimed in the database *before* the processor is
called, so two concurrent immediate cancels make one processor call even
when they run in different processes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from tenantry_core.onboarding.stages import PROVISIONABLE_STAGES
from tenantry_core.state.repository import MembershipRepository, SubscriptionRepository, TenantRepository
from tenantry_core.state.tables import SubscriptionTable

from tenantry_api.config import APISettings
from tenantry_api.errors import Conflict, Forbidden, NotFound, ServiceUnavailable, ValidationError
from tenantry_api.services.onboarding_service import mark_payment_completed
from tenantry_api.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Plan(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

    @property
    def is_free(self) -> bool:
        return self is Plan.STARTER


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


_PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.UNPAID,
}

_MANAGER_ROLES = frozenset({"owner", "admin"})


def map_processor_status(raw: str | None) -> SubscriptionStatus:
    """Translate a processor subscription status into the local vocabulary.

    Unrecognized statuses map to ``past_due`` so they never grant access.
    """
    status = _PROCESSOR_STATUS_MAP.get((raw or "").lower())
    if status is None:
        logger.warning("Unrecognised processor status '%s'; treating as past_due", raw)
        return SubscriptionStatus.PAST_DUE
    return status


def parse_plan(raw: str) -> Plan:
    try:
        return Plan((raw or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown plan '{raw}'. Valid plans: {[p.value for p in Plan]}") from None


def parse_billing_cycle(raw: str) -> BillingCycle:
    try:
        return BillingCycle((raw or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown billing cycle '{raw}'. Valid cycles: {[c.value for c in BillingCycle]}") from None


def subscription_state(row: SubscriptionTable) -> dict[str, Any]:
    """Render a subscription row as the API's mutation response."""
    return {
        "status": row.status,
        "cancel_at_period_end": row.cancel_at_period_end,
        "plan": row.plan,
        "billing_cycle": row.billing_cycle,
        "current_period_end": row.current_period_end.isoformat() if row.current_period_end else None,
        "canceled_at": row.canceled_at.isoformat() if row.canceled_at else None,
        "has_processor_subscription": bool(row.processor_subscription_id),
    }


def _from_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


# ---------------------------------------------------------------------------
# Per-tenant locks
# ---------------------------------------------------------------------------


class TenantLockRegistry:
    """One :class:`asyncio.Lock` per tenant id.

    Operations on distinct tenants never share a lock.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# ---------------------------------------------------------------------------
# User-initiated operations
# ---------------------------------------------------------------------------


class SubscriptionReconciler:
    """Plan selection, cancellation and resumption for one tenant.

    Parameters
    ----------
    session:
        Active database session.  Mutations commit it before releasing the
        tenant lock.
    settings:
        API settings (price ids, app URL).
    tenant_id:
        Tenant whose subscription is managed.
    user_id:
        The caller.  Mutations require an owner or admin membership.
    gateway:
        Payment processor interface.
    locks:
        Application-wide lock registry.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
        user_id: str,
        gateway: PaymentGateway,
        locks: TenantLockRegistry,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._user_id = user_id
        self._gateway = gateway
        self._locks = locks
        self._repo = SubscriptionRepository(session)

    async def _require_member(self, roles: frozenset[str] | None = None) -> str:
        membership = await MembershipRepository(self._session).get(self._tenant_id, self._user_id)
        if membership is None:
            raise Forbidden("Not a member of this tenant")
        if roles is not None and membership.role not in roles:
            raise Forbidden("Only owners and admins can manage the subscription")
        return membership.role

    async def _load(self) -> SubscriptionTable:
        row = await self._repo.get(self._tenant_id)
        if row is None:
            raise NotFound("No subscription for this tenant")
        return row

    def _require_processor(self, row: SubscriptionTable) -> str | None:
        """Return the processor subscription id, failing if it cannot be reached."""
        subscription_id = row.processor_subscription_id
        if subscription_id and not self._gateway.configured:
            raise ServiceUnavailable("Payment processor is not configured")
        return subscription_id

    async def _locked(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self._locks.lock_for(self._tenant_id):
            try:
                result = await operation()
                await self._session.commit()
            except Exception:
                await self._session.rollback()
                raise
            return result

    # -- Reads ---------------------------------------------------------------

    async def get_subscription(self) -> dict[str, Any]:
        await self._require_member()
        return subscription_state(await self._load())

    # -- Mutations -----------------------------------------------------------

    async def select_plan(self, plan: Plan | str, billing_cycle: BillingCycle | str) -> dict[str, Any]:
        """Create the subscription or switch its plan.

        A subscription already live at the processor is switched there
        first, so local state never claims a plan the processor does not bill.
        """
        plan = parse_plan(plan.value if isinstance(plan, Plan) else plan)
        billing_cycle = parse_billing_cycle(
            billing_cycle.value if isinstance(billing_cycle, BillingCycle) else billing_cycle
        )
        await self._require_member(_MANAGER_ROLES)

        async def _apply() -> dict[str, Any]:
            row = await self._repo.get(self._tenant_id)
            if row is not None and row.status != SubscriptionStatus.CANCELED.value:
                subscription_id = self._require_processor(row)
                changed = (row.plan, row.billing_cycle) != (plan.value, billing_cycle.value)
                if subscription_id and changed:
                    price_id = self._settings.price_id_for(plan.value, billing_cycle.value)
                    if not price_id:
                        raise ValidationError("No processor price is configured for the selected plan")
                    await self._gateway.change_price(subscription_id, price_id)
            row = await self._repo.upsert_plan(self._tenant_id, plan.value, billing_cycle.value)
            logger.info("Tenant %s selected %s/%s", self._tenant_id, plan.value, billing_cycle.value)
            return subscription_state(row)

        return await self._locked(_apply)

    async def cancel(self, *, immediate: bool) -> dict[str, Any]:
        """Cancel now (*immediate*) or at the end of the paid period.

        Without a processor subscription there is nothing to defer, so the
        subscription is canceled locally right away.  Canceling an already
        canceled subscription returns its state unchanged.
        """
        await self._require_member(_MANAGER_ROLES)

        async def _apply() -> dict[str, Any]:
            row = await self._load()
            if row.status == SubscriptionStatus.CANCELED.value:
                return subscription_state(row)
            subscription_id = self._require_processor(row)

            if immediate or not subscription_id:
                if await self._repo.claim_cancellation(self._tenant_id):
                    if subscription_id:
                        await self._gateway.cancel_immediately(subscription_id)
                    logger.info("Subscription for tenant %s canceled", self._tenant_id)
                else:
                    logger.info("Subscription for tenant %s was already canceled", self._tenant_id)
            elif not row.cancel_at_period_end:
                await self._gateway.cancel_at_period_end(subscription_id)
                await self._repo.update_if(
                    self._tenant_id,
                    expected={"status": row.status, "cancel_at_period_end": False},
                    values={"cancel_at_period_end": True},
                )
                logger.info("Subscription for tenant %s cancels at period end", self._tenant_id)
            return subscription_state(await self._load())

        return await self._locked(_apply)

    async def resume(self) -> dict[str, Any]:
        """Undo a pending period-end cancellation.

        Raises
        ------
        Conflict
            If no period-end cancellation is pending.
        """
        await self._require_member(_MANAGER_ROLES)

        async def _apply() -> dict[str, Any]:
            row = await self._load()
            if not row.cancel_at_period_end:
                raise Conflict("Subscription is not scheduled for cancellation")
            subscription_id = self._require_processor(row)
            if subscription_id:
                await self._gateway.resume(subscription_id)
            await self._repo.update_if(
                self._tenant_id,
                expected={"cancel_at_period_end": True},
                values={"cancel_at_period_end": False},
            )
            logger.info("Subscription for tenant %s resumed", self._tenant_id)
            return subscription_state(await self._load())

        return await self._locked(_apply)

    async def create_portal_session(self, return_url: str | None = None) -> str:
        """Return a processor customer-portal URL for this tenant."""
        await self._require_member(_MANAGER_ROLES)
        row = await self._load()
        if not row.processor_customer_id:
            raise NotFound("No billing account exists for this tenant")
        if return_url is None:
            tenant = await TenantRepository(self._session).get_by_id(self._tenant_id)
            slug = tenant.slug if tenant is not None else ""
            return_url = f"{self._settings.app_url.rstrip('/')}/{slug}/Dashboard/Settings"
        return await self._gateway.create_portal_session(row.processor_customer_id, return_url)

    # -- Invoices ------------------------------------------------------------

    async def list_invoices(self, limit: int = 10) -> dict[str, Any]:
        """Return the tenant's recent processor invoices.

        Read-only and open to every member.  A tenant that never reached the
        processor, or a deployment without billing configured, gets an empty
        list with an explanatory ``message`` instead of an error.
        """
        await self._require_member()
        row = await self._repo.get(self._tenant_id)
        if row is None or not row.processor_customer_id:
            return {"invoices": [], "message": "No billing history available"}
        if not self._gateway.configured:
            return {"invoices": [], "message": "Payment processing is not configured"}
        return {"invoices": await self._gateway.list_invoices(row.processor_customer_id, limit=limit)}


# ---------------------------------------------------------------------------
# Processor webhooks
# ---------------------------------------------------------------------------


class BillingWebhookHandler:
    """Apply verified processor events to local subscription state.

    Returns ``{"status": ..., "tenant_id": ..., "provision": bool}``; the
    router schedules provisioning after the session commits when
    ``provision`` is set.
    """

    def __init__(self, session: AsyncSession, settings: APISettings, *, locks: TenantLockRegistry) -> None:
        self._session = session
        self._settings = settings
        self._locks = locks
        self._repo = SubscriptionRepository(session)

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        event_type = event.get("type", "")
        data_object = event.get("data", {}).get("object", {}) or {}

        handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_succeeded,
            "invoice.paid": self._invoice_succeeded,
            "invoice.payment_failed": self._invoice_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.debug("Unhandled processor event type: %s", event_type)
            return {"status": "ignored", "tenant_id": None, "provision": False}

        result = await handler(data_object)
        logger.info(
            "Processed %s for tenant %s (%s)",
            event_type,
            result.get("tenant_id"),
            result["status"],
        )
        return result

    async def _find(self, obj: dict[str, Any], *, subscription_key: str = "id") -> SubscriptionTable | None:
        subscription_id = obj.get(subscription_key)
        if isinstance(subscription_id, str) and subscription_id:
            row = await self._repo.get_by_processor_subscription(subscription_id)
            if row is not None:
                return row
        tenant_id = (obj.get("metadata") or {}).get("tenant_id")
        if tenant_id:
            return await self._repo.get(tenant_id)
        customer_id = obj.get("customer")
        if isinstance(customer_id, str) and customer_id:
            return await self._repo.get_by_processor_customer(customer_id)
        return None

    @staticmethod
    def _ignored(reason: str, tenant_id: str | None = None) -> dict[str, Any]:
        return {"status": "ignored", "reason": reason, "tenant_id": tenant_id, "provision": False}

    async def _checkout_completed(self, obj: dict[str, Any]) -> dict[str, Any]:
        tenant_id = (obj.get("metadata") or {}).get("tenant_id") or obj.get("client_reference_id")
        if not tenant_id:
            logger.warning("Checkout session %s carries no tenant id", obj.get("id"))
            return self._ignored("unknown_tenant")
        if obj.get("payment_status") == "unpaid":
            return self._ignored("payment_pending", tenant_id)

        async with self._locks.lock_for(tenant_id):
            if await self._repo.get(tenant_id) is None:
                logger.warning("Checkout completed for tenant %s without a subscription", tenant_id)
                return self._ignored("unknown_subscription", tenant_id)
            await self._repo.record_processor_ids(
                tenant_id,
                customer_id=obj.get("customer"),
                subscription_id=obj.get("subscription"),
            )
            stage = await mark_payment_completed(self._session, tenant_id)
            await self._session.commit()

        return {"status": "processed", "tenant_id": tenant_id, "provision": stage in PROVISIONABLE_STAGES}

    async def _subscription_updated(self, obj: dict[str, Any]) -> dict[str, Any]:
        row = await self._find(obj)
        if row is None:
            return self._ignored("unknown_subscription")
        tenant_id = row.tenant_id
        status = map_processor_status(obj.get("status"))

        async with self._locks.lock_for(tenant_id):
            row = await self._repo.get(tenant_id)
            if row is None:
                return self._ignored("unknown_subscription", tenant_id)
            if row.status == SubscriptionStatus.CANCELED.value and status != SubscriptionStatus.CANCELED:
                # Canceled is terminal locally; a late event cannot revive it.
                return self._ignored("stale_event", tenant_id)

            values: dict[str, Any] = {
                "status": status.value,
                "cancel_at_period_end": bool(obj.get("cancel_at_period_end")) and status != SubscriptionStatus.CANCELED,
            }
            if obj.get("id"):
                values["processor_subscription_id"] = obj["id"]
            period_start = _from_timestamp(obj.get("current_period_start"))
            period_end = _from_timestamp(obj.get("current_period_end"))
            if period_start is not None:
                values["current_period_start"] = period_start
            if period_end is not None:
                values["current_period_end"] = period_end
            if status == SubscriptionStatus.CANCELED and row.canceled_at is None:
                values["canceled_at"] = datetime.now(UTC)

            price_id = ((((obj.get("items") or {}).get("data") or [{}])[0]).get("price") or {}).get("id")
            mapped = self._settings.plan_for_price_id(price_id or "")
            if mapped is not None:
                values["plan"], values["billing_cycle"] = mapped

            written = await self._repo.update_if(tenant_id, expected={"status": row.status}, values=values)
            await self._session.commit()

        return {"status": "processed" if written else "ignored", "tenant_id": tenant_id, "provision": False}

    async def _subscription_deleted(self, obj: dict[str, Any]) -> dict[str, Any]:
        row = await self._find(obj)
        if row is None:
            return self._ignored("unknown_subscription")
        tenant_id = row.tenant_id
        async with self._locks.lock_for(tenant_id):
            await self._repo.claim_cancellation(tenant_id)
            await TenantRepository(self._session).set_status(tenant_id, "SUSPENDED")
            await self._session.commit()
        logger.warning("Subscription deleted at processor; tenant %s suspended", tenant_id)
        return {"status": "processed", "tenant_id": tenant_id, "provision": False}

    async def _set_invoice_status(self, obj: dict[str, Any], status: SubscriptionStatus) -> dict[str, Any]:
        row = await self._find(obj, subscription_key="subscription")
        if row is None:
            return self._ignored("unknown_subscription")
        tenant_id = row.tenant_id
        async with self._locks.lock_for(tenant_id):
            row = await self._repo.get(tenant_id)
            if row is None or row.status == SubscriptionStatus.CANCELED.value:
                return self._ignored("subscription_canceled", tenant_id)
            written = await self._repo.update_if(
                tenant_id,
                expected={"status": row.status},
                values={"status": status.value},
            )
            await self._session.commit()
        return {"status": "processed" if written else "ignored", "tenant_id": tenant_id, "provision": False}

    async def _invoice_succeeded(self, obj: dict[str, Any]) -> dict[str, Any]:
        return await self._set_invoice_status(obj, SubscriptionStatus.ACTIVE)

    async def _invoice_failed(self, obj: dict[str, Any]) -> dict[str, Any]:
        logger.warning("Payment failed for customer %s (invoice %s)", obj.get("customer"), obj.get("id"))
        return await self._set_invoice_status(obj, SubscriptionStatus.PAST_DUE)
