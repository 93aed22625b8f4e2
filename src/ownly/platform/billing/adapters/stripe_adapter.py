"""
Stripe implementation of the payment processor adapter.

Amounts are already integer cents, which is what Stripe expects. Transient
failures (rate limits, connection errors) are retried here; anything else is
surfaced as ``PaymentProcessorError``.
"""

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ownly.platform.billing.adapters.base import (
    CheckoutRequest,
    CustomerDetails,
    ExternalCheckoutSession,
    ExternalCustomer,
    ExternalInvoice,
    ExternalSubscription,
    InvoiceDraft,
    SubscriptionItems,
)
from ownly.platform.billing.config import BillingConfig, get_billing_config
from ownly.platform.billing.exceptions import BillingConfigurationError, PaymentProcessorError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (stripe.RateLimitError, stripe.APIConnectionError)


def from_timestamp(value: int | None) -> datetime | None:
    """Convert a Stripe epoch timestamp to an aware datetime."""
    return datetime.fromtimestamp(value, tz=UTC) if value else None


def subscription_period(subscription: Any, key: str) -> int | None:
    """Read a period bound from the subscription or, on newer API versions, its first item."""
    value = subscription.get(key)
    if value:
        return value
    items = (subscription.get("items") or {}).get("data") or []
    return items[0].get(key) if items else None


def _open_invoice_url(subscription: Any) -> str | None:
    # latest_invoice is only an object when the call expanded it
    invoice = subscription.get("latest_invoice")
    if not invoice or isinstance(invoice, str) or invoice.get("status") != "open":
        return None
    return invoice.get("hosted_invoice_url")


def to_external_subscription(subscription: Any) -> ExternalSubscription:
    return ExternalSubscription(
        id=subscription["id"],
        customer_id=_object_id(subscription.get("customer")),
        status=subscription.get("status") or "incomplete",
        current_period_start=from_timestamp(subscription_period(subscription, "current_period_start")),
        current_period_end=from_timestamp(subscription_period(subscription, "current_period_end")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        canceled_at=from_timestamp(subscription.get("canceled_at")),
        trial_start=from_timestamp(subscription.get("trial_start")),
        trial_end=from_timestamp(subscription.get("trial_end")),
        payment_url=_open_invoice_url(subscription),
    )


def to_external_invoice(invoice: Any) -> ExternalInvoice:
    return ExternalInvoice(
        id=invoice["id"],
        status=invoice.get("status") or "draft",
        number=invoice.get("number"),
        hosted_invoice_url=invoice.get("hosted_invoice_url"),
        invoice_pdf=invoice.get("invoice_pdf"),
    )


def _object_id(value: Any) -> str:
    if isinstance(value, str):
        return value
    return value["id"] if value else ""


class StripePaymentAdapter:
    """``PaymentProcessorAdapter`` backed by the Stripe API."""

    provider = "stripe"

    def __init__(
        self,
        config: BillingConfig | None = None,
        client: Any = stripe,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
    ) -> None:
        config = config or get_billing_config()
        if config.stripe is None:
            raise BillingConfigurationError(
                "Stripe is not configured", config_key="billing.stripe_api_key"
            )
        self.client = client
        self.currency = config.currency.default_currency.lower()
        self._api_key = config.stripe.api_key
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=8)

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                stop=stop_after_attempt(self._max_attempts),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    return await func()
        except stripe.StripeError as exc:
            logger.warning(
                "stripe.call_failed",
                operation=operation,
                error=str(exc),
                code=getattr(exc, "code", None),
            )
            raise PaymentProcessorError(
                getattr(exc, "user_message", None) or str(exc) or f"Stripe {operation} failed",
                operation=operation,
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
            ) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def create_or_update_customer(self, customer: CustomerDetails) -> ExternalCustomer:
        params: dict[str, Any] = {
            "email": customer.email,
            "name": customer.name,
            "description": f"Organization: {customer.name}",
            "metadata": {"orgId": customer.org_id, "orgName": customer.name},
        }
        if customer.phone:
            params["phone"] = customer.phone

        if customer.existing_customer_id:
            existing_id = customer.existing_customer_id
            result = await self._call(
                "customer.update",
                lambda: self.client.Customer.modify_async(
                    existing_id, api_key=self._api_key, **params
                ),
            )
        else:
            result = await self._call(
                "customer.create",
                lambda: self.client.Customer.create_async(
                    api_key=self._api_key,
                    idempotency_key=f"customer-{customer.org_id}",
                    **params,
                ),
            )

        logger.info("stripe.customer_synced", org_id=customer.org_id, customer_id=result["id"])
        return ExternalCustomer(id=result["id"], email=result.get("email"))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def _create_price(self, name: str, amount_cents: int, recurring: bool) -> str:
        params: dict[str, Any] = {
            "currency": self.currency,
            "unit_amount": amount_cents,
            "product_data": {"name": name},
        }
        if recurring:
            params["recurring"] = {"interval": "month"}
        price = await self._call(
            "price.create",
            lambda: self.client.Price.create_async(api_key=self._api_key, **params),
        )
        return price["id"]

    def _subscription_metadata(self, org_id: str, items: SubscriptionItems) -> dict[str, str]:
        return {
            "orgId": org_id,
            "features": json.dumps([f.value for f in items.features]),
            "plan": items.description,
            "setupCents": str(items.setup_cents),
        }

    async def create_subscription(
        self,
        customer_id: str,
        org_id: str,
        items: SubscriptionItems,
        trial_days: int = 0,
    ) -> ExternalSubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [],
            "metadata": self._subscription_metadata(org_id, items),
            "collection_method": "charge_automatically",
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice"],
        }
        if items.monthly_cents > 0:
            monthly_price = await self._create_price(
                f"{items.description} - Monthly Subscription", items.monthly_cents, recurring=True
            )
            params["items"].append({"price": monthly_price, "quantity": 1})
        if items.setup_cents > 0:
            setup_price = await self._create_price(
                f"{items.description} - Setup Fee", items.setup_cents, recurring=False
            )
            params["add_invoice_items"] = [
                {"price": setup_price, "quantity": 1, "metadata": {"kind": "setup"}}
            ]
        if trial_days > 0:
            params["trial_period_days"] = trial_days

        subscription = await self._call(
            "subscription.create",
            lambda: self.client.Subscription.create_async(api_key=self._api_key, **params),
        )
        logger.info(
            "stripe.subscription_created",
            org_id=org_id,
            subscription_id=subscription["id"],
            status=subscription.get("status"),
        )
        return to_external_subscription(subscription)

    async def update_subscription(
        self,
        subscription_id: str,
        items: SubscriptionItems | None = None,
        *,
        prorate: bool = True,
        additional_setup_cents: int = 0,
        cancel_at_period_end: bool | None = None,
    ) -> ExternalSubscription:
        params: dict[str, Any] = {}

        if items is not None:
            current = await self._call(
                "subscription.retrieve",
                lambda: self.client.Subscription.retrieve_async(
                    subscription_id, api_key=self._api_key
                ),
            )
            current_items = (current.get("items") or {}).get("data") or []
            new_price = await self._create_price(
                f"{items.description} - Monthly Subscription", items.monthly_cents, recurring=True
            )
            if current_items:
                params["items"] = [{"id": current_items[0]["id"], "price": new_price}]
            else:
                params["items"] = [{"price": new_price, "quantity": 1}]
            params["proration_behavior"] = "create_prorations" if prorate else "none"
            params["metadata"] = self._subscription_metadata(
                (current.get("metadata") or {}).get("orgId", ""), items
            )
            if additional_setup_cents > 0:
                setup_price = await self._create_price(
                    f"{items.description} - Additional Setup", additional_setup_cents, recurring=False
                )
                params["add_invoice_items"] = [
                    {"price": setup_price, "quantity": 1, "metadata": {"kind": "setup"}}
                ]

        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end

        subscription = await self._call(
            "subscription.update",
            lambda: self.client.Subscription.modify_async(
                subscription_id, api_key=self._api_key, **params
            ),
        )
        return to_external_subscription(subscription)

    async def cancel_subscription(
        self, subscription_id: str, *, immediate: bool
    ) -> ExternalSubscription:
        if immediate:
            subscription = await self._call(
                "subscription.cancel",
                lambda: self.client.Subscription.cancel_async(
                    subscription_id, api_key=self._api_key
                ),
            )
        else:
            subscription = await self._call(
                "subscription.cancel_at_period_end",
                lambda: self.client.Subscription.modify_async(
                    subscription_id, api_key=self._api_key, cancel_at_period_end=True
                ),
            )
        return to_external_subscription(subscription)

    async def pause_subscription(self, subscription_id: str) -> ExternalSubscription:
        subscription = await self._call(
            "subscription.pause",
            lambda: self.client.Subscription.modify_async(
                subscription_id, api_key=self._api_key, pause_collection={"behavior": "void"}
            ),
        )
        return to_external_subscription(subscription)

    async def resume_subscription(self, subscription_id: str) -> ExternalSubscription:
        # An empty string clears pause_collection
        subscription = await self._call(
            "subscription.resume",
            lambda: self.client.Subscription.modify_async(
                subscription_id, api_key=self._api_key, pause_collection=""
            ),
        )
        return to_external_subscription(subscription)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def create_invoice(self, draft: InvoiceDraft) -> ExternalInvoice:
        params: dict[str, Any] = {
            "customer": draft.customer_id,
            "description": draft.description,
            "collection_method": "send_invoice",
            "auto_advance": False,
            "pending_invoice_items_behavior": "exclude",
            "metadata": {
                "orgId": draft.org_id,
                "projectId": draft.project_id or "",
                "invoiceType": "one_time",
                "localInvoiceId": draft.local_invoice_id,
                **{k: str(v) for k, v in draft.metadata.items()},
            },
        }
        if draft.due_date is not None:
            params["due_date"] = int(draft.due_date.timestamp())
        else:
            params["days_until_due"] = 30

        invoice = await self._call(
            "invoice.create",
            lambda: self.client.Invoice.create_async(
                api_key=self._api_key,
                idempotency_key=f"invoice-{draft.local_invoice_id}",
                **params,
            ),
        )

        for line in draft.lines:
            await self._call(
                "invoice_item.create",
                lambda line=line: self.client.InvoiceItem.create_async(
                    api_key=self._api_key,
                    customer=draft.customer_id,
                    invoice=invoice["id"],
                    description=line.description,
                    quantity=line.quantity,
                    unit_amount=line.unit_price_cents,
                    currency=draft.currency,
                ),
            )

        logger.info(
            "stripe.invoice_created",
            org_id=draft.org_id,
            invoice_id=invoice["id"],
            local_invoice_id=draft.local_invoice_id,
        )
        return to_external_invoice(invoice)

    async def finalize_invoice(self, invoice_id: str) -> ExternalInvoice:
        invoice = await self._call(
            "invoice.finalize",
            lambda: self.client.Invoice.finalize_invoice_async(invoice_id, api_key=self._api_key),
        )
        return to_external_invoice(invoice)

    async def send_invoice(self, invoice_id: str) -> ExternalInvoice:
        invoice = await self._call(
            "invoice.send",
            lambda: self.client.Invoice.send_invoice_async(invoice_id, api_key=self._api_key),
        )
        return to_external_invoice(invoice)

    async def void_invoice(self, invoice_id: str) -> ExternalInvoice:
        invoice = await self._call(
            "invoice.void",
            lambda: self.client.Invoice.void_invoice_async(invoice_id, api_key=self._api_key),
        )
        return to_external_invoice(invoice)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout_session(self, checkout: CheckoutRequest) -> ExternalCheckoutSession:
        metadata = {
            "localInvoiceId": checkout.local_invoice_id,
            "invoiceNumber": checkout.invoice_number,
            "orgId": checkout.org_id,
            "paymentType": "invoice",
        }
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": checkout.currency,
                        "product_data": {"name": line.description},
                        "unit_amount": line.unit_price_cents,
                    },
                    "quantity": line.quantity,
                }
                for line in checkout.lines
            ],
            "success_url": checkout.success_url,
            "cancel_url": checkout.cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if checkout.customer_id:
            params["customer"] = checkout.customer_id
        elif checkout.customer_email:
            params["customer_email"] = checkout.customer_email

        session = await self._call(
            "checkout.create",
            lambda: self.client.checkout.Session.create_async(api_key=self._api_key, **params),
        )
        logger.info(
            "stripe.checkout_created",
            org_id=checkout.org_id,
            session_id=session["id"],
            local_invoice_id=checkout.local_invoice_id,
        )
        return ExternalCheckoutSession(id=session["id"], url=session.get("url"))
