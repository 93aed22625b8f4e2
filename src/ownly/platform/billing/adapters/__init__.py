"""Payment processor adapters."""

from ownly.platform.billing.adapters.base import (
    CheckoutRequest,
    CustomerDetails,
    ExternalCheckoutSession,
    ExternalCustomer,
    ExternalInvoice,
    ExternalInvoiceLine,
    ExternalSubscription,
    InvoiceDraft,
    PaymentProcessorAdapter,
    SubscriptionItems,
)

__all__ = [
    "CheckoutRequest",
    "CustomerDetails",
    "ExternalCheckoutSession",
    "ExternalCustomer",
    "ExternalInvoice",
    "ExternalInvoiceLine",
    "ExternalSubscription",
    "InvoiceDraft",
    "PaymentProcessorAdapter",
    "SubscriptionItems",
]
