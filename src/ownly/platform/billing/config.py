"""
Billing configuration resolved from service settings.

Services take a ``BillingConfig`` explicitly; ``get_billing_config`` builds
one from ``settings.billing`` for the HTTP layer.
"""

from pydantic import BaseModel, ConfigDict, Field


class StripeConfig(BaseModel):
    """Credentials for the Stripe account."""

    model_config = ConfigDict()

    api_key: str = Field(..., description="Secret key (sk_live_... or sk_test_...)")
    webhook_secret: str | None = Field(None, description="Endpoint signing secret (whsec_...)")
    publishable_key: str | None = Field(None, description="Stripe publishable key")


class CurrencyConfig(BaseModel):
    """All amounts share one currency and are held in cents."""

    model_config = ConfigDict()

    default_currency: str = Field("USD", description="Default currency code")


class InvoiceConfig(BaseModel):
    """Local invoice numbering and payment terms."""

    model_config = ConfigDict()

    number_format: str = Field(
        "INV-{year}-{sequence:06d}",
        description="str.format template with year and sequence",
    )
    due_days_default: int = Field(30, description="Days until a sent invoice is due")
    payment_success_url: str = Field(
        "http://localhost:3000/invoice/{number}/success",
        description="Checkout return page after payment; {number} is the invoice number",
    )
    payment_cancel_url: str = Field(
        "http://localhost:3000/invoice/{number}",
        description="Checkout return page when the customer backs out",
    )


class SubscriptionConfig(BaseModel):
    """Trial, proration and optimistic-update behaviour."""

    model_config = ConfigDict()

    default_trial_days: int = Field(0, description="Trial days for new subscriptions")
    proration_enabled: bool = Field(True, description="Prorate mid-cycle feature changes")
    update_retry_attempts: int = Field(
        3, description="Attempts for optimistic record updates before giving up"
    )


class BillingConfig(BaseModel):
    """Everything the billing services read at runtime."""

    model_config = ConfigDict()

    stripe: StripeConfig | None = None

    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    invoice: InvoiceConfig = Field(default_factory=InvoiceConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)

    @classmethod
    def from_settings(cls) -> "BillingConfig":
        """Build from ``settings.billing``; Stripe stays unset without an API key."""
        from ownly.platform.settings import settings

        billing = settings.billing
        stripe_config = None
        if billing.stripe_api_key:
            stripe_config = StripeConfig(
                api_key=billing.stripe_api_key,
                webhook_secret=billing.stripe_webhook_secret or None,
                publishable_key=billing.stripe_publishable_key or None,
            )

        return cls(
            stripe=stripe_config,
            currency=CurrencyConfig(default_currency=billing.default_currency),
            invoice=InvoiceConfig(
                number_format=billing.invoice_number_format,
                due_days_default=billing.invoice_due_days,
                payment_success_url=f"{billing.public_site_url}/invoice/{{number}}/success",
                payment_cancel_url=f"{billing.public_site_url}/invoice/{{number}}",
            ),
            subscription=SubscriptionConfig(
                default_trial_days=billing.default_trial_days,
                proration_enabled=billing.proration_enabled,
                update_retry_attempts=billing.update_retry_attempts,
            ),
        )


_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Cached configuration, built from settings on first call."""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Replace the cached configuration; ``None`` rebuilds it on next use."""
    global _billing_config
    _billing_config = config
