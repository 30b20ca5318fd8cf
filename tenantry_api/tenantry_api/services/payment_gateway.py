"""Narrow async interface to the payment processor (Stripe).

The Stripe SDK is synchronous; every call runs in a worker thread so a
slow processor never stalls the event loop.  Processor failures surface
as :class:`~tenantry_api.errors.ServiceUnavailable`, and so does any
call made while billing is not configured.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from tenantry_api.config import APISettings
from tenantry_api.errors import ServiceUnavailable, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _from_epoch(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value else None


def invoice_summary(invoice: Any) -> dict[str, Any]:
    """Flatten a processor invoice into the fields the billing page shows.

    Amounts are converted from minor units; timestamps become aware UTC
    datetimes.
    """
    transitions = invoice.get("status_transitions") or {}
    return {
        "id": invoice["id"],
        "number": invoice.get("number"),
        "status": invoice.get("status"),
        "amount": (invoice.get("amount_due") or 0) / 100,
        "currency": (invoice.get("currency") or "").upper(),
        "created_at": _from_epoch(invoice.get("created")),
        "due_date": _from_epoch(invoice.get("due_date")),
        "paid_at": _from_epoch(transitions.get("paid_at")),
        "invoice_pdf": invoice.get("invoice_pdf"),
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
    }


class PaymentGateway:
    """Subscription, checkout, portal and invoice operations keyed by processor ids."""

    def __init__(self, settings: APISettings) -> None:
        self._settings = settings

    @property
    def configured(self) -> bool:
        return self._settings.stripe_configured

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        if not self.configured:
            raise ServiceUnavailable("Payment processor is not configured")

        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, description: str, fn: Callable[[], T]) -> T:
        import stripe

        try:
            return await asyncio.to_thread(fn)
        except stripe.StripeError as exc:
            logger.warning("Stripe %s failed: %s", description, exc.user_message or type(exc).__name__)
            raise ServiceUnavailable(f"Payment processor request failed ({description})") from exc

    # -- Subscriptions -------------------------------------------------------

    async def cancel_at_period_end(self, subscription_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return await self._call(
            "cancel at period end",
            lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=True),
        )

    async def cancel_immediately(self, subscription_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return await self._call("cancel", lambda: stripe.Subscription.cancel(subscription_id))

    async def resume(self, subscription_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return await self._call(
            "resume",
            lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=False),
        )

    async def change_price(self, subscription_id: str, price_id: str) -> dict[str, Any]:
        """Swap the subscription's single price item for *price_id*."""
        stripe = self._get_stripe()

        def _change() -> Any:
            sub = stripe.Subscription.retrieve(subscription_id)
            item_id = sub["items"]["data"][0]["id"]
            return stripe.Subscription.modify(
                subscription_id,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations",
            )

        return await self._call("change plan", _change)

    # -- Checkout and portal -------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        tenant_id: str,
        price_id: str,
        customer_email: str,
        customer_id: str | None = None,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        """Create a subscription-mode checkout session tagged with *tenant_id*."""
        if not price_id:
            raise ValidationError("No processor price is configured for the selected plan")
        stripe = self._get_stripe()
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": tenant_id,
            "metadata": {"tenant_id": tenant_id},
            "subscription_data": {"metadata": {"tenant_id": tenant_id}},
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = customer_email
        session = await self._call("create checkout session", lambda: stripe.checkout.Session.create(**params))
        return {"id": session["id"], "url": session["url"]}

    async def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return await self._call("retrieve checkout session", lambda: stripe.checkout.Session.retrieve(session_id))

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        stripe = self._get_stripe()
        session = await self._call(
            "create portal session",
            lambda: stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url),
        )
        return str(session["url"])

    # -- Invoices ------------------------------------------------------------

    async def list_invoices(self, customer_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Return the customer's most recent invoices, newest first."""
        stripe = self._get_stripe()
        page = await self._call(
            "list invoices",
            lambda: stripe.Invoice.list(customer=customer_id, limit=limit),
        )
        return [invoice_summary(invoice) for invoice in page["data"]]

    # -- Webhooks ------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the webhook signature and return the parsed event.

        Raises
        ------
        ServiceUnavailable
            If no webhook secret is configured.
        ValidationError
            If the payload or signature is invalid.
        """
        webhook_secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not webhook_secret:
            raise ServiceUnavailable("Webhook secret not configured")

        import stripe

        try:
            return stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except ValueError:
            raise ValidationError("Invalid webhook payload")
        except stripe.SignatureVerificationError:
            raise ValidationError("Invalid webhook signature")
