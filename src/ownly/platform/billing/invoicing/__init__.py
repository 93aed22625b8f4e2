"""Invoices: models, generation and derived status."""

from ownly.platform.billing.invoicing.models import (
    PAYABLE_INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    Invoice,
    InvoiceCreateRequest,
    InvoiceKind,
    InvoiceLineItem,
    InvoiceLineItemRequest,
    InvoicePaymentLink,
    InvoiceStatus,
    effective_status,
)

__all__ = [
    "PAYABLE_INVOICE_STATUSES",
    "TERMINAL_INVOICE_STATUSES",
    "Invoice",
    "InvoiceCreateRequest",
    "InvoiceKind",
    "InvoiceLineItem",
    "InvoiceLineItemRequest",
    "InvoicePaymentLink",
    "InvoiceStatus",
    "effective_status",
]
