"""Billing persistence: store interface and implementations."""

from ownly.platform.billing.store.base import (
    BillingStore,
    update_invoice_with_retry,
    update_organization_with_retry,
)
from ownly.platform.billing.store.memory import InMemoryBillingStore
from ownly.platform.billing.store.sql import SQLBillingStore

__all__ = [
    "BillingStore",
    "InMemoryBillingStore",
    "SQLBillingStore",
    "update_invoice_with_retry",
    "update_organization_with_retry",
]
