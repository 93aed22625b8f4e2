"""
Invoice models.

Amounts are integer cents. Line items are frozen; a finalized invoice is
corrected by issuing a new invoice, never by editing its lines.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvoiceStatus(str, Enum):
    """Invoice status. ``OVERDUE`` is only ever derived at read time."""

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"
    PAYMENT_FAILED = "payment_failed"


# Statuses that a late failure notification can never overwrite
TERMINAL_INVOICE_STATUSES = frozenset(
    {InvoiceStatus.PAID, InvoiceStatus.VOID, InvoiceStatus.UNCOLLECTIBLE}
)

# Statuses a customer can still pay
PAYABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.SENT, InvoiceStatus.PAYMENT_FAILED})


class InvoiceKind(str, Enum):
    """What the invoice bills for."""

    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class InvoiceLineItemRequest(BaseModel):
    """Line item as supplied by the caller."""

    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(min_length=1)
    quantity: int
    unit_price_cents: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class InvoiceLineItem(BaseModel):
    """Priced line item stored on an invoice."""

    model_config = ConfigDict(frozen=True)

    description: str
    quantity: int = Field(ge=1)
    # Negative only on mirrored processor invoices (proration credits)
    unit_price_cents: int
    total_cents: int


class InvoiceCreateRequest(BaseModel):
    """Request to create a one-time invoice."""

    model_config = ConfigDict(str_strip_whitespace=True)

    org_id: str
    project_id: str | None = None
    description: str
    line_items: list[InvoiceLineItemRequest]
    due_date: datetime | None = None
    auto_send: bool = False
    tax_cents: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("project_id")
    @classmethod
    def _blank_project_is_none(cls, value: str | None) -> str | None:
        return value or None


class Invoice(BaseModel):
    """Invoice document."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: f"inv_{uuid4().hex[:16]}")
    org_id: str
    project_id: str | None = None
    invoice_number: str
    description: str
    kind: InvoiceKind = InvoiceKind.ONE_TIME

    line_items: tuple[InvoiceLineItem, ...]
    subtotal: int
    tax: int = Field(0, ge=0)
    total: int
    currency: str = "USD"

    status: InvoiceStatus = InvoiceStatus.DRAFT
    issue_date: datetime
    due_date: datetime
    finalized_at: datetime | None = None
    paid_at: datetime | None = None

    external_invoice_id: str | None = None
    external_invoice_number: str | None = None
    external_payment_intent_id: str | None = None
    external_subscription_id: str | None = None
    hosted_invoice_url: str | None = None

    billing_email: str
    sent_to: list[str] = Field(default_factory=list)

    version: int = 0
    # Processor timestamp of the last applied invoice event
    external_updated_at: datetime | None = None

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None


class InvoicePaymentLink(BaseModel):
    """Where a customer pays an open invoice."""

    invoice_id: str
    invoice_number: str
    url: str | None = None
    # Set when the link is a one-off checkout rather than the processor invoice page
    checkout_session_id: str | None = None


def effective_status(invoice: Invoice, now: datetime) -> InvoiceStatus:
    """Status as reported to readers; a sent invoice past its due date is overdue.

    Never persisted: the stored status stays ``sent``.
    """
    if invoice.status == InvoiceStatus.SENT and invoice.due_date < now:
        return InvoiceStatus.OVERDUE
    return invoice.status
