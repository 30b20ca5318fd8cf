"""Tests for processor webhook handling."""

from __future__ import annotations

import pytest
from tenantry_core.onboarding.stages import OnboardingStage
from tenantry_core.state.repository import OnboardingRepository, SubscriptionRepository, TenantRepository

from tenantry_api.services.billing_service import BillingWebhookHandler, TenantLockRegistry

_LIVE = {"processor_subscription_id": "sub_123", "processor_customer_id": "cus_123"}


def _event(event_type: str, obj: dict) -> dict:
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


@pytest.fixture()
def handler(db_session, test_settings) -> BillingWebhookHandler:
    return BillingWebhookHandler(db_session, test_settings, locks=TenantLockRegistry())


async def _subscription(session_factory, tenant_id: str):
    async with session_factory() as session:
        return await SubscriptionRepository(session).get(tenant_id)


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_records_ids_and_completes_payment(self, seed, handler, session_factory):
        tenant = await seed("acme", stage=OnboardingStage.PLAN_SELECTED, plan="professional")

        result = await handler.handle_event(
            _event(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "customer": "cus_9",
                    "subscription": "sub_9",
                    "payment_status": "paid",
                    "metadata": {"tenant_id": tenant.tenant_id},
                },
            )
        )

        assert result == {"status": "processed", "tenant_id": tenant.tenant_id, "provision": True}
        row = await _subscription(session_factory, tenant.tenant_id)
        assert (row.processor_customer_id, row.processor_subscription_id) == ("cus_9", "sub_9")
        async with session_factory() as session:
            onboarding = await OnboardingRepository(session).get(tenant.tenant_id)
        assert onboarding.stage == "PAYMENT_COMPLETED"

    @pytest.mark.asyncio
    async def test_client_reference_id_fallback(self, seed, handler):
        tenant = await seed("acme", stage=OnboardingStage.PLAN_SELECTED, plan="professional")
        result = await handler.handle_event(
            _event(
                "checkout.session.completed",
                {"id": "cs_1", "client_reference_id": tenant.tenant_id, "payment_status": "paid"},
            )
        )
        assert result["status"] == "processed"

    @pytest.mark.asyncio
    async def test_redelivery_after_activation_does_not_reprovision(self, seed, handler):
        tenant = await seed("acme", stage=OnboardingStage.ACTIVATED, plan="professional")
        result = await handler.handle_event(
            _event("checkout.session.completed", {"metadata": {"tenant_id": tenant.tenant_id}})
        )
        assert result["provision"] is False

    @pytest.mark.asyncio
    async def test_unpaid_session_ignored(self, seed, handler):
        tenant = await seed("acme", stage=OnboardingStage.PLAN_SELECTED, plan="professional")
        result = await handler.handle_event(
            _event(
                "checkout.session.completed",
                {"payment_status": "unpaid", "metadata": {"tenant_id": tenant.tenant_id}},
            )
        )
        assert result["status"] == "ignored"
        assert result["reason"] == "payment_pending"

    @pytest.mark.asyncio
    async def test_missing_tenant_ignored(self, handler):
        result = await handler.handle_event(_event("checkout.session.completed", {"id": "cs_1"}))
        assert result["reason"] == "unknown_tenant"


class TestSubscriptionUpdated:
    @pytest.mark.asyncio
    async def test_status_period_and_plan_applied(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional", subscription=_LIVE)

        result = await handler.handle_event(
            _event(
                "customer.subscription.updated",
                {
                    "id": "sub_123",
                    "status": "past_due",
                    "cancel_at_period_end": True,
                    "current_period_start": 1_700_000_000,
                    "current_period_end": 1_702_592_000,
                    "items": {"data": [{"price": {"id": "price_pro_yearly"}}]},
                },
            )
        )

        assert result["status"] == "processed"
        row = await _subscription(session_factory, tenant.tenant_id)
        assert row.status == "past_due"
        assert row.cancel_at_period_end is True
        assert row.billing_cycle == "yearly"
        assert int(row.current_period_end.timestamp()) == 1_702_592_000

    @pytest.mark.asyncio
    async def test_unknown_processor_status_maps_to_past_due(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional", subscription=_LIVE)
        await handler.handle_event(_event("customer.subscription.updated", {"id": "sub_123", "status": "mystery"}))
        assert (await _subscription(session_factory, tenant.tenant_id)).status == "past_due"

    @pytest.mark.asyncio
    async def test_stale_event_cannot_revive_canceled(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional", subscription={**_LIVE, "status": "canceled"})

        result = await handler.handle_event(
            _event("customer.subscription.updated", {"id": "sub_123", "status": "active"})
        )

        assert result["status"] == "ignored"
        assert result["reason"] == "stale_event"
        assert (await _subscription(session_factory, tenant.tenant_id)).status == "canceled"

    @pytest.mark.asyncio
    async def test_found_by_metadata(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional")
        await handler.handle_event(
            _event(
                "customer.subscription.updated",
                {"id": "sub_new", "status": "trialing", "metadata": {"tenant_id": tenant.tenant_id}},
            )
        )
        row = await _subscription(session_factory, tenant.tenant_id)
        assert row.status == "trialing"
        assert row.processor_subscription_id == "sub_new"

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, handler):
        result = await handler.handle_event(_event("customer.subscription.updated", {"id": "sub_x", "status": "active"}))
        assert result["reason"] == "unknown_subscription"


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_cancels_and_suspends(self, seed, handler, session_factory):
        tenant = await seed("acme", tenant_status="ACTIVE", plan="professional", subscription=_LIVE)

        result = await handler.handle_event(_event("customer.subscription.deleted", {"id": "sub_123"}))

        assert result["status"] == "processed"
        row = await _subscription(session_factory, tenant.tenant_id)
        assert row.status == "canceled"
        assert row.canceled_at is not None
        async with session_factory() as session:
            stored = await TenantRepository(session).get_by_id(tenant.tenant_id)
        assert stored.status == "SUSPENDED"


class TestInvoices:
    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional", subscription=_LIVE)
        await handler.handle_event(_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_123"}))
        assert (await _subscription(session_factory, tenant.tenant_id)).status == "past_due"

    @pytest.mark.asyncio
    async def test_payment_succeeded_restores_active(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional", subscription={**_LIVE, "status": "past_due"})
        await handler.handle_event(_event("invoice.paid", {"id": "in_2", "subscription": "sub_123"}))
        assert (await _subscription(session_factory, tenant.tenant_id)).status == "active"

    @pytest.mark.asyncio
    async def test_invoice_cannot_revive_canceled(self, seed, handler, session_factory):
        tenant = await seed("acme", plan="professional", subscription={**_LIVE, "status": "canceled"})
        result = await handler.handle_event(
            _event("invoice.payment_succeeded", {"id": "in_3", "customer": "cus_123"})
        )
        assert result["status"] == "ignored"
        assert (await _subscription(session_factory, tenant.tenant_id)).status == "canceled"


class TestUnknownEvents:
    @pytest.mark.asyncio
    async def test_unhandled_type_ignored(self, handler):
        result = await handler.handle_event(_event("customer.created", {"id": "cus_1"}))
        assert result == {"status": "ignored", "tenant_id": None, "provision": False}
