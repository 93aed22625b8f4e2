"""
Billing and subscription engine.

Provides:
- Feature pricing and quote approval
- Subscription lifecycle against the payment processor
- One-time invoice generation
- Reconciliation of processor webhook events
"""

from ownly.platform.billing.exceptions import (
    BillingConfigurationError,
    BillingError,
    ConcurrentUpdateError,
    DuplicateInvoiceError,
    InvalidFeatureError,
    InvoiceError,
    InvoiceFinalizeError,
    InvoiceNotFoundError,
    InvoiceStateError,
    InvoiceValidationError,
    NotReactivatableError,
    OrganizationNotFoundError,
    PaymentError,
    PaymentProcessorError,
    PaymentSetupError,
    PricingError,
    QuoteNotFoundError,
    StaleEventError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionNotRecordedError,
    SubscriptionStateError,
    WebhookError,
)

__all__ = [
    "BillingConfigurationError",
    "BillingError",
    "ConcurrentUpdateError",
    "DuplicateInvoiceError",
    "InvalidFeatureError",
    "InvoiceError",
    "InvoiceFinalizeError",
    "InvoiceNotFoundError",
    "InvoiceStateError",
    "InvoiceValidationError",
    "NotReactivatableError",
    "OrganizationNotFoundError",
    "PaymentError",
    "PaymentProcessorError",
    "PaymentSetupError",
    "PricingError",
    "QuoteNotFoundError",
    "StaleEventError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "SubscriptionNotRecordedError",
    "SubscriptionStateError",
    "WebhookError",
]
