"""
Billing document store interface.

The store is a keyed document interface: organizations, invoices, quotes and
the set of applied processor event ids. Updates are guarded by a version
number; a mismatch raises ``ConcurrentUpdateError``.
"""

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from ownly.platform.billing.exceptions import (
    ConcurrentUpdateError,
    InvoiceNotFoundError,
    OrganizationNotFoundError,
)
from ownly.platform.billing.invoicing.models import Invoice, InvoiceStatus
from ownly.platform.billing.pricing.models import QuoteRecord
from ownly.platform.billing.subscriptions.models import Organization


@runtime_checkable
class BillingStore(Protocol):
    """Persistence operations used by the billing core."""

    # Organizations
    async def get_organization(self, org_id: str) -> Organization | None: ...

    async def find_organization_by_customer(self, customer_id: str) -> Organization | None: ...

    async def add_organization(self, org: Organization) -> Organization: ...

    async def update_organization(
        self, org: Organization, expected_version: int
    ) -> Organization: ...

    # Invoices
    async def get_invoice(self, invoice_id: str) -> Invoice | None: ...

    async def find_invoice_by_external_id(self, external_invoice_id: str) -> Invoice | None: ...

    async def find_invoice_by_number(self, invoice_number: str) -> Invoice | None: ...

    async def list_invoices(
        self,
        org_id: str,
        project_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]: ...

    # Raises DuplicateInvoiceError when another invoice holds the external id
    async def add_invoice(self, invoice: Invoice) -> Invoice: ...

    async def update_invoice(self, invoice: Invoice, expected_version: int) -> Invoice: ...

    async def next_invoice_sequence(self, year: int) -> int: ...

    # Processor event deduplication
    async def is_event_applied(self, event_id: str) -> bool: ...

    async def mark_event_applied(self, event_id: str, event_type: str) -> bool: ...

    # Quotes
    async def save_quote(self, record: QuoteRecord) -> None: ...

    async def get_quote(self, owner_id: str) -> QuoteRecord | None: ...


def _retrying(attempts: int) -> AsyncRetrying:
    return AsyncRetrying(
        retry=retry_if_exception_type(ConcurrentUpdateError),
        stop=stop_after_attempt(attempts),
        wait=wait_random(0, 0.05),
        reraise=True,
    )


async def update_organization_with_retry(
    store: BillingStore,
    org_id: str,
    mutate: Callable[[Organization], bool],
    attempts: int = 3,
) -> Organization:
    """
    Read-modify-write an organization under optimistic versioning.

    ``mutate`` edits a fresh copy in place and returns whether anything
    changed; unchanged copies are not written. Exceptions raised by
    ``mutate`` propagate without retry.
    """
    async for attempt in _retrying(attempts):
        with attempt:
            current = await store.get_organization(org_id)
            if current is None:
                raise OrganizationNotFoundError(f"Organization {org_id} not found", org_id=org_id)

            working = current.model_copy(deep=True)
            if not mutate(working):
                return current
            return await store.update_organization(working, expected_version=current.version)

    raise AssertionError("unreachable")  # pragma: no cover


async def update_invoice_with_retry(
    store: BillingStore,
    invoice_id: str,
    mutate: Callable[[Invoice], bool],
    attempts: int = 3,
) -> Invoice:
    """Invoice counterpart of :func:`update_organization_with_retry`."""
    async for attempt in _retrying(attempts):
        with attempt:
            current = await store.get_invoice(invoice_id)
            if current is None:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)

            working = current.model_copy(deep=True)
            if not mutate(working):
                return current
            return await store.update_invoice(working, expected_version=current.version)

    raise AssertionError("unreachable")  # pragma: no cover
