"""
Reconciliation event models.

Processor notifications are normalized into a closed set of event types
before they reach the reconciler. Anything outside that set becomes an
``UnrecognizedEvent`` and is ignored.
"""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class CustomerPayload(BaseModel):
    customer_id: str
    org_id: str | None = None
    email: str | None = None
    name: str | None = None


class SubscriptionPayload(BaseModel):
    subscription_id: str
    customer_id: str | None = None
    org_id: str | None = None
    status: str
    paused: bool = False
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None


class InvoiceLinePayload(BaseModel):
    description: str = ""
    quantity: int = 1
    amount_cents: int
    unit_amount_cents: int | None = None
    is_setup: bool = False


class InvoicePayload(BaseModel):
    invoice_id: str
    org_id: str | None = None
    local_invoice_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    payment_intent_id: str | None = None
    billing_reason: str | None = None
    number: str | None = None
    description: str | None = None
    subtotal_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0
    amount_paid_cents: int = 0
    lines: list[InvoiceLinePayload] = Field(default_factory=list)
    created_at: datetime | None = None
    due_date: datetime | None = None
    paid_at: datetime | None = None
    hosted_invoice_url: str | None = None

    @property
    def includes_setup(self) -> bool:
        """Whether the invoice carries a one-time setup charge."""
        return any(line.is_setup for line in self.lines)


class PaymentIntentPayload(BaseModel):
    payment_intent_id: str
    invoice_id: str | None = None
    amount_cents: int = 0
    failure_message: str | None = None


class CheckoutSessionPayload(BaseModel):
    session_id: str
    mode: str = "payment"
    payment_status: str = "unpaid"
    org_id: str | None = None
    local_invoice_id: str | None = None
    customer_id: str | None = None
    payment_intent_id: str | None = None
    amount_total_cents: int = 0


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_event_id: str
    occurred_at: datetime
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CustomerEvent(_EventBase):
    type: Literal["customer.created", "customer.updated"]
    payload: CustomerPayload


class SubscriptionEvent(_EventBase):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    payload: SubscriptionPayload


class InvoicePaidEvent(_EventBase):
    type: Literal["invoice.paid", "invoice.payment_succeeded"]
    payload: InvoicePayload


class InvoicePaymentFailedEvent(_EventBase):
    type: Literal["invoice.payment_failed"]
    payload: InvoicePayload


class PaymentIntentEvent(_EventBase):
    type: Literal["payment_intent.succeeded", "payment_intent.payment_failed"]
    payload: PaymentIntentPayload


class CheckoutCompletedEvent(_EventBase):
    type: Literal["checkout.session.completed"]
    payload: CheckoutSessionPayload


class UnrecognizedEvent(_EventBase):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


ReconciliationEvent = Annotated[
    CustomerEvent
    | SubscriptionEvent
    | InvoicePaidEvent
    | InvoicePaymentFailedEvent
    | PaymentIntentEvent
    | CheckoutCompletedEvent,
    Field(discriminator="type"),
]

KNOWN_EVENT_TYPES = frozenset(
    {
        "customer.created",
        "customer.updated",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.paid",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "checkout.session.completed",
    }
)

_event_adapter: TypeAdapter[ReconciliationEvent] = TypeAdapter(ReconciliationEvent)


def parse_reconciliation_event(
    data: dict[str, Any],
) -> ReconciliationEvent | UnrecognizedEvent:
    """Validate a normalized event dict; unknown types become ``UnrecognizedEvent``."""
    if data.get("type") not in KNOWN_EVENT_TYPES:
        return UnrecognizedEvent.model_validate(data)
    return _event_adapter.validate_python(data)
