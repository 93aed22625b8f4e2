"""
Payment processor adapter interface.

The billing core talks to the processor only through this protocol. Every
method raises ``PaymentProcessorError`` on failure; retries and timeouts are
the adapter's concern.
"""

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from ownly.platform.billing.pricing.models import Capability


class CustomerDetails(BaseModel):
    """Organization identity sent to the processor."""

    model_config = ConfigDict(frozen=True)

    org_id: str
    name: str
    email: str
    phone: str | None = None
    existing_customer_id: str | None = None


class ExternalCustomer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None


class SubscriptionItems(BaseModel):
    """Price lines for a processor subscription, in cents."""

    model_config = ConfigDict(frozen=True)

    setup_cents: int = Field(ge=0)
    monthly_cents: int = Field(ge=0)
    features: tuple[Capability, ...]
    description: str


class ExternalSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    # Hosted page for the still-open first invoice
    payment_url: str | None = None


class ExternalInvoiceLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    quantity: int = Field(ge=1)
    unit_price_cents: int


class ExternalInvoice(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: str
    number: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None


class InvoiceDraft(BaseModel):
    """Everything the processor needs to create a one-time invoice."""

    model_config = ConfigDict(frozen=True)

    customer_id: str
    org_id: str
    local_invoice_id: str
    description: str
    lines: tuple[ExternalInvoiceLine, ...]
    currency: str = "usd"
    project_id: str | None = None
    due_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CheckoutRequest(BaseModel):
    """One-off hosted payment for a stored invoice."""

    model_config = ConfigDict(frozen=True)

    local_invoice_id: str
    invoice_number: str
    org_id: str
    lines: tuple[ExternalInvoiceLine, ...]
    success_url: str
    cancel_url: str
    currency: str = "usd"
    customer_id: str | None = None
    customer_email: str | None = None


class ExternalCheckoutSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    url: str | None = None


@runtime_checkable
class PaymentProcessorAdapter(Protocol):
    """Capabilities the billing core needs from the payment processor."""

    async def create_or_update_customer(self, customer: CustomerDetails) -> ExternalCustomer: ...

    async def create_subscription(
        self,
        customer_id: str,
        org_id: str,
        items: SubscriptionItems,
        trial_days: int = 0,
    ) -> ExternalSubscription: ...

    async def update_subscription(
        self,
        subscription_id: str,
        items: SubscriptionItems | None = None,
        *,
        prorate: bool = True,
        additional_setup_cents: int = 0,
        cancel_at_period_end: bool | None = None,
    ) -> ExternalSubscription: ...

    async def cancel_subscription(
        self, subscription_id: str, *, immediate: bool
    ) -> ExternalSubscription: ...

    async def pause_subscription(self, subscription_id: str) -> ExternalSubscription: ...

    async def resume_subscription(self, subscription_id: str) -> ExternalSubscription: ...

    async def create_invoice(self, draft: InvoiceDraft) -> ExternalInvoice: ...

    async def finalize_invoice(self, invoice_id: str) -> ExternalInvoice: ...

    async def send_invoice(self, invoice_id: str) -> ExternalInvoice: ...

    async def void_invoice(self, invoice_id: str) -> ExternalInvoice: ...

    async def create_checkout_session(
        self, checkout: CheckoutRequest
    ) -> ExternalCheckoutSession: ...
