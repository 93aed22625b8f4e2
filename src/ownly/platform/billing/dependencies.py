"""
Shared FastAPI dependencies for the billing endpoints.
"""

from typing import Annotated

from fastapi import Depends

from ownly.platform.billing.adapters.base import PaymentProcessorAdapter
from ownly.platform.billing.adapters.stripe_adapter import StripePaymentAdapter
from ownly.platform.billing.config import BillingConfig, get_billing_config
from ownly.platform.billing.invoicing.service import InvoiceGenerator
from ownly.platform.billing.store.base import BillingStore
from ownly.platform.billing.store.sql import SQLBillingStore
from ownly.platform.db import get_session_maker


def get_config() -> BillingConfig:
    """Dependency to get the billing configuration."""
    return get_billing_config()


def get_billing_store() -> BillingStore:
    """Dependency to get the billing store."""
    return SQLBillingStore(get_session_maker())


def get_payment_adapter(
    config: Annotated[BillingConfig, Depends(get_config)],
) -> PaymentProcessorAdapter:
    return StripePaymentAdapter(config)


def get_invoice_generator(
    store: Annotated[BillingStore, Depends(get_billing_store)],
    adapter: Annotated[PaymentProcessorAdapter, Depends(get_payment_adapter)],
    config: Annotated[BillingConfig, Depends(get_config)],
) -> InvoiceGenerator:
    """Dependency to get an InvoiceGenerator instance."""
    return InvoiceGenerator(store, adapter, config=config)
