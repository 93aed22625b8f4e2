"""
Global pytest configuration and fixtures for the Ownly platform tests.

Billing services are exercised against the in-memory store and a mocked
payment processor adapter; a controllable clock keeps time-dependent rules
deterministic.
"""

import os
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

# Keep tests off any real database or processor configured in the environment
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

from ownly.platform.billing.adapters.base import (  # noqa: E402
    ExternalCheckoutSession,
    ExternalCustomer,
    ExternalInvoice,
    ExternalSubscription,
    PaymentProcessorAdapter,
)
from ownly.platform.billing.config import (  # noqa: E402
    BillingConfig,
    StripeConfig,
    set_billing_config,
)
from ownly.platform.billing.invoicing.service import InvoiceGenerator  # noqa: E402
from ownly.platform.billing.pricing.service import QuoteService  # noqa: E402
from ownly.platform.billing.store.memory import InMemoryBillingStore  # noqa: E402
from ownly.platform.billing.subscriptions.models import (  # noqa: E402
    Organization,
    PrimaryContact,
)
from ownly.platform.billing.subscriptions.service import SubscriptionLifecycle  # noqa: E402
from ownly.platform.billing.webhooks.reconciler import PaymentEventReconciler  # noqa: E402

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
PERIOD_START = datetime(2026, 3, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 4, 1, tzinfo=UTC)


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_external_subscription(status: str = "incomplete", **overrides) -> ExternalSubscription:
    values = {
        "id": "sub_123",
        "customer_id": "cus_123",
        "status": status,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
    }
    values.update(overrides)
    return ExternalSubscription(**values)


@pytest.fixture(autouse=True)
def reset_billing_config():
    """Ensure each test starts without a cached global billing config."""
    set_billing_config(None)
    yield
    set_billing_config(None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def period_end() -> datetime:
    return PERIOD_END


@pytest.fixture
def external_subscription():
    """Factory for processor subscription results."""
    return make_external_subscription


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        stripe=StripeConfig(api_key="sk_test_123", webhook_secret="whsec_test"),
    )


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
async def organization(store: InMemoryBillingStore) -> Organization:
    org = Organization(
        id="org_1",
        name="Acme Studio",
        primary_contact=PrimaryContact(name="Ada", email="ada@acme.test", phone="+15550100"),
    )
    return await store.add_organization(org)


@pytest.fixture
def adapter() -> AsyncMock:
    """Payment processor adapter double with happy-path defaults."""
    mock = AsyncMock(spec=PaymentProcessorAdapter)
    mock.create_or_update_customer.return_value = ExternalCustomer(
        id="cus_123", email="ada@acme.test"
    )
    mock.create_subscription.return_value = make_external_subscription()
    mock.update_subscription.return_value = make_external_subscription("active")
    mock.cancel_subscription.return_value = make_external_subscription(
        "active", cancel_at_period_end=True
    )
    mock.pause_subscription.return_value = make_external_subscription("active")
    mock.resume_subscription.return_value = make_external_subscription("active")
    mock.create_invoice.return_value = ExternalInvoice(id="in_123", status="draft")
    mock.finalize_invoice.return_value = ExternalInvoice(
        id="in_123",
        status="open",
        number="ACME-0001",
        hosted_invoice_url="https://pay.example.test/in_123",
    )
    mock.send_invoice.return_value = ExternalInvoice(id="in_123", status="open")
    mock.void_invoice.return_value = ExternalInvoice(id="in_123", status="void")
    mock.create_checkout_session.return_value = ExternalCheckoutSession(
        id="cs_123", url="https://checkout.example.test/cs_123"
    )
    return mock


@pytest.fixture
def lifecycle(store, adapter, billing_config, clock) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(store, adapter, config=billing_config, clock=clock)


@pytest.fixture
def invoice_generator(store, adapter, billing_config, clock) -> InvoiceGenerator:
    return InvoiceGenerator(store, adapter, config=billing_config, clock=clock)


@pytest.fixture
def reconciler(store, invoice_generator, billing_config) -> PaymentEventReconciler:
    return PaymentEventReconciler(store, invoice_generator, config=billing_config)


@pytest.fixture
def quote_service(store, clock) -> QuoteService:
    return QuoteService(store, clock=clock)
