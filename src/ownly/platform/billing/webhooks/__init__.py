"""Processor webhooks: event models, reconciliation and the HTTP endpoint."""

from ownly.platform.billing.webhooks.models import (
    CheckoutCompletedEvent,
    CustomerEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    PaymentIntentEvent,
    ReconciliationEvent,
    SubscriptionEvent,
    UnrecognizedEvent,
    parse_reconciliation_event,
)
from ownly.platform.billing.webhooks.reconciler import (
    PaymentEventReconciler,
    ReconciliationOutcome,
    map_subscription_status,
)

__all__ = [
    "CheckoutCompletedEvent",
    "CustomerEvent",
    "InvoicePaidEvent",
    "InvoicePaymentFailedEvent",
    "PaymentEventReconciler",
    "PaymentIntentEvent",
    "ReconciliationEvent",
    "ReconciliationOutcome",
    "SubscriptionEvent",
    "UnrecognizedEvent",
    "map_subscription_status",
    "parse_reconciliation_event",
]
