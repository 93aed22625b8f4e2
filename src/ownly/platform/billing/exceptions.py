"""
Error types raised by the Ownly billing engine.

Each error carries an API error code, an HTTP status, structured context
and a hint for the caller. ``to_dict`` is the body returned by the API.
"""

from typing import Any


class BillingError(Exception):
    """
    Root of every error the billing engine raises.

    Attributes:
        message: Text shown to operators and API clients
        error_code: Stable code clients can branch on
        status_code: HTTP status used when the error reaches the API
        context: Identifiers involved (org, invoice, event, ...)
        recovery_hint: What the caller can do next
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON error response."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


# ============================================================================
# Pricing
# ============================================================================


class PricingError(BillingError):
    """Feature selection could not be priced."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PRICING_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class InvalidFeatureError(PricingError):
    """Feature selection contains unknown or unusable capabilities."""

    def __init__(self, message: str, features: list[str] | None = None) -> None:
        context: dict[str, Any] = {}
        if features:
            context["features"] = features

        super().__init__(
            message,
            context=context,
            recovery_hint="Select features from the published pricing table",
        )
        self.error_code = "INVALID_FEATURE"


class QuoteNotFoundError(PricingError):
    """No stored quote for the requested owner."""

    def __init__(self, message: str, owner_id: str | None = None) -> None:
        context = {}
        if owner_id:
            context["owner_id"] = owner_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Price the feature selection before approving it",
        )
        self.error_code = "QUOTE_NOT_FOUND"
        self.status_code = 404


# ============================================================================
# Organizations and subscriptions
# ============================================================================


class OrganizationNotFoundError(BillingError):
    """No organization with the given id."""

    def __init__(self, message: str, org_id: str | None = None) -> None:
        context = {}
        if org_id:
            context["org_id"] = org_id

        super().__init__(
            message,
            "ORGANIZATION_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the organization ID and ensure it exists",
        )


class SubscriptionError(BillingError):
    """Subscription lifecycle failures."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "SUBSCRIPTION_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class SubscriptionNotFoundError(SubscriptionError):
    """Organization has no subscription record."""

    def __init__(self, message: str, org_id: str | None = None) -> None:
        context = {}
        if org_id:
            context["org_id"] = org_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Create a subscription for the organization first",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"
        self.status_code = 404


class SubscriptionStateError(SubscriptionError):
    """Requested lifecycle change is not allowed from the current status."""

    def __init__(self, message: str, current_state: str, requested_state: str) -> None:
        super().__init__(
            message,
            context={"current_state": current_state, "requested_state": requested_state},
            recovery_hint=f"Subscription is {current_state}; it cannot move to {requested_state}",
        )
        self.error_code = "INVALID_SUBSCRIPTION_STATE"
        self.status_code = 409


class NotReactivatableError(SubscriptionError):
    """Subscription can no longer be reactivated in place."""

    def __init__(
        self,
        message: str,
        org_id: str | None = None,
        current_period_end: str | None = None,
    ) -> None:
        context = {}
        if org_id:
            context["org_id"] = org_id
        if current_period_end:
            context["current_period_end"] = current_period_end

        super().__init__(
            message,
            context=context,
            recovery_hint="Create a new subscription for the organization",
        )
        self.error_code = "NOT_REACTIVATABLE"
        self.status_code = 409


class SubscriptionNotRecordedError(SubscriptionError):
    """Processor event refers to a subscription whose creation is not stored yet."""

    def __init__(
        self,
        message: str,
        org_id: str | None = None,
        subscription_id: str | None = None,
    ) -> None:
        context = {}
        if org_id:
            context["org_id"] = org_id
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Redeliver the event once the subscription has been recorded",
        )
        self.error_code = "SUBSCRIPTION_NOT_RECORDED"
        self.status_code = 409


# ============================================================================
# Payment processor
# ============================================================================


class PaymentError(BillingError):
    """Failures involving the payment processor."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "PAYMENT_ERROR", status_code=402, context=context, recovery_hint=recovery_hint
        )


class PaymentProcessorError(PaymentError):
    """A call to the external payment processor failed."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        provider: str | None = None,
        provider_code: str | None = None,
    ) -> None:
        context = {}
        if operation:
            context["operation"] = operation
        if provider:
            context["provider"] = provider
        if provider_code:
            context["provider_code"] = provider_code

        super().__init__(
            message,
            context=context,
            recovery_hint="Retry the request; check processor status if the failure persists",
        )
        self.error_code = "PAYMENT_PROCESSOR_ERROR"
        self.status_code = 502


class PaymentSetupError(PaymentError):
    """A subscription change at the processor failed; no local state was written."""

    def __init__(self, message: str, org_id: str | None = None, operation: str | None = None):
        context = {}
        if org_id:
            context["org_id"] = org_id
        if operation:
            context["operation"] = operation

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the customer's payment details and retry",
        )
        self.error_code = "PAYMENT_SETUP_FAILED"
        self.status_code = 502


# ============================================================================
# Invoices
# ============================================================================


class InvoiceError(BillingError):
    """Invoice creation and lifecycle failures."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message, "INVOICE_ERROR", status_code=400, context=context, recovery_hint=recovery_hint
        )


class InvoiceValidationError(InvoiceError):
    """Invoice request rejected before any processor call."""

    def __init__(self, message: str, field: str | None = None) -> None:
        context = {}
        if field:
            context["field"] = field

        super().__init__(
            message,
            context=context,
            recovery_hint="Provide at least one line item with quantity >= 1 and non-negative prices",
        )
        self.error_code = "INVALID_INVOICE"
        self.status_code = 422


class InvoiceNotFoundError(InvoiceError):
    """No invoice with the given id."""

    def __init__(self, message: str, invoice_id: str | None = None) -> None:
        context = {}
        if invoice_id:
            context["invoice_id"] = invoice_id

        super().__init__(
            message, context=context, recovery_hint="List the organization's invoices to find a valid id"
        )
        self.error_code = "INVOICE_NOT_FOUND"
        self.status_code = 404


class InvoiceStateError(InvoiceError):
    """Requested action is not valid for the invoice's current status."""

    def __init__(self, message: str, invoice_id: str, current_status: str) -> None:
        super().__init__(
            message,
            context={"invoice_id": invoice_id, "current_status": current_status},
            recovery_hint="Issue a new invoice instead of editing a finalized one",
        )
        self.error_code = "INVALID_INVOICE_STATE"
        self.status_code = 409


class DuplicateInvoiceError(InvoiceError):
    """An invoice mirroring the same processor invoice is already stored."""

    def __init__(self, message: str, external_invoice_id: str) -> None:
        super().__init__(
            message,
            context={"external_invoice_id": external_invoice_id},
            recovery_hint="Update the stored invoice instead of adding another",
        )
        self.error_code = "DUPLICATE_INVOICE"
        self.status_code = 409


class InvoiceFinalizeError(InvoiceError):
    """External invoice could not be created, finalized, sent or voided."""

    def __init__(
        self,
        message: str,
        invoice_id: str | None = None,
        operation: str | None = None,
        recovery_hint: str | None = None,
    ):
        context = {}
        if invoice_id:
            context["invoice_id"] = invoice_id
        if operation:
            context["operation"] = operation

        super().__init__(
            message,
            context=context,
            recovery_hint=recovery_hint
            or "The invoice remains a draft; retry sending it once the processor recovers",
        )
        self.error_code = "INVOICE_FINALIZE_FAILED"
        self.status_code = 502


# ============================================================================
# Reconciliation and storage
# ============================================================================


class StaleEventError(BillingError):
    """Processor event is older than the stored state of its entity."""

    def __init__(
        self,
        message: str,
        event_id: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        context = {}
        if event_id:
            context["event_id"] = event_id
        if entity_id:
            context["entity_id"] = entity_id

        super().__init__(
            message,
            "STALE_EVENT",
            status_code=200,
            context=context,
            recovery_hint="No action needed; newer state is already recorded",
        )


class ConcurrentUpdateError(BillingError):
    """Optimistic version check failed while writing a record."""

    def __init__(self, message: str, entity_id: str, expected_version: int) -> None:
        super().__init__(
            message,
            "CONCURRENT_UPDATE",
            status_code=409,
            context={"entity_id": entity_id, "expected_version": expected_version},
            recovery_hint="Reload the record and retry the update",
        )


class WebhookError(BillingError):
    """Incoming processor event was rejected."""

    def __init__(
        self, message: str, webhook_type: str | None = None, provider: str | None = None
    ) -> None:
        context = {}
        if webhook_type:
            context["webhook_type"] = webhook_type
        if provider:
            context["provider"] = provider

        super().__init__(
            message,
            "WEBHOOK_ERROR",
            status_code=400,
            context=context,
            recovery_hint="Confirm the endpoint signing secret matches the processor dashboard",
        )


class BillingConfigurationError(BillingError):
    """Processor credentials or billing settings are missing or invalid."""

    def __init__(
        self, message: str, config_key: str | None = None, recovery_hint: str | None = None
    ):
        context = {}
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message,
            "BILLING_CONFIG_ERROR",
            status_code=500,
            context=context,
            recovery_hint=recovery_hint or "Set the BILLING__* environment variables",
        )
