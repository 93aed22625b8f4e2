"""
In-process billing store.

Used by tests and local development. Records are copied on the way in and out
so callers never share mutable state with the store.
"""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime

from ownly.platform.billing.exceptions import ConcurrentUpdateError, DuplicateInvoiceError
from ownly.platform.billing.invoicing.models import Invoice, InvoiceStatus
from ownly.platform.billing.pricing.models import QuoteRecord
from ownly.platform.billing.subscriptions.models import Organization


class InMemoryBillingStore:
    """Dictionary-backed implementation of ``BillingStore``."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._organizations: dict[str, Organization] = {}
        self._invoices: dict[str, Invoice] = {}
        self._external_invoice_index: dict[str, str] = {}
        self._applied_events: dict[str, tuple[str, datetime]] = {}
        self._quotes: dict[str, QuoteRecord] = {}
        self._sequences: defaultdict[int, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def get_organization(self, org_id: str) -> Organization | None:
        org = self._organizations.get(org_id)
        return org.model_copy(deep=True) if org else None

    async def find_organization_by_customer(self, customer_id: str) -> Organization | None:
        for org in self._organizations.values():
            if org.subscription and org.subscription.external_customer_id == customer_id:
                return org.model_copy(deep=True)
        return None

    async def add_organization(self, org: Organization) -> Organization:
        async with self._lock:
            if org.id in self._organizations:
                raise ValueError(f"Organization {org.id} already exists")
            self._organizations[org.id] = org.model_copy(deep=True)
        return org.model_copy(deep=True)

    async def update_organization(self, org: Organization, expected_version: int) -> Organization:
        async with self._lock:
            stored = self._organizations.get(org.id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentUpdateError(
                    f"Organization {org.id} changed concurrently",
                    entity_id=org.id,
                    expected_version=expected_version,
                )
            updated = org.model_copy(deep=True, update={"version": expected_version + 1})
            self._organizations[org.id] = updated
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    async def find_invoice_by_external_id(self, external_invoice_id: str) -> Invoice | None:
        invoice_id = self._external_invoice_index.get(external_invoice_id)
        return await self.get_invoice(invoice_id) if invoice_id else None

    async def find_invoice_by_number(self, invoice_number: str) -> Invoice | None:
        matches = [inv for inv in self._invoices.values() if inv.invoice_number == invoice_number]
        if not matches:
            return None
        return max(matches, key=lambda inv: inv.issue_date).model_copy(deep=True)

    async def list_invoices(
        self,
        org_id: str,
        project_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        invoices = [
            invoice.model_copy(deep=True)
            for invoice in self._invoices.values()
            if invoice.org_id == org_id
            and (project_id is None or invoice.project_id == project_id)
            and (status is None or invoice.status == status)
        ]
        return sorted(invoices, key=lambda inv: inv.issue_date, reverse=True)

    async def add_invoice(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            if invoice.id in self._invoices:
                raise ValueError(f"Invoice {invoice.id} already exists")
            self._check_external_id(invoice)
            self._invoices[invoice.id] = invoice.model_copy(deep=True)
            if invoice.external_invoice_id:
                self._external_invoice_index[invoice.external_invoice_id] = invoice.id
        return invoice.model_copy(deep=True)

    async def update_invoice(self, invoice: Invoice, expected_version: int) -> Invoice:
        async with self._lock:
            stored = self._invoices.get(invoice.id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentUpdateError(
                    f"Invoice {invoice.id} changed concurrently",
                    entity_id=invoice.id,
                    expected_version=expected_version,
                )
            self._check_external_id(invoice)
            updated = invoice.model_copy(deep=True, update={"version": expected_version + 1})
            self._invoices[invoice.id] = updated
            if updated.external_invoice_id:
                self._external_invoice_index[updated.external_invoice_id] = updated.id
        return updated.model_copy(deep=True)

    def _check_external_id(self, invoice: Invoice) -> None:
        external_id = invoice.external_invoice_id
        if external_id and self._external_invoice_index.get(external_id, invoice.id) != invoice.id:
            raise DuplicateInvoiceError(
                f"Processor invoice {external_id} is already stored",
                external_invoice_id=external_id,
            )

    async def next_invoice_sequence(self, year: int) -> int:
        async with self._lock:
            self._sequences[year] += 1
            return self._sequences[year]

    # ------------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------------

    async def is_event_applied(self, event_id: str) -> bool:
        return event_id in self._applied_events

    async def mark_event_applied(self, event_id: str, event_type: str) -> bool:
        async with self._lock:
            if event_id in self._applied_events:
                return False
            self._applied_events[event_id] = (event_type, datetime.now(UTC))
            return True

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def save_quote(self, record: QuoteRecord) -> None:
        self._quotes[record.owner_id] = record.model_copy(deep=True)

    async def get_quote(self, owner_id: str) -> QuoteRecord | None:
        record = self._quotes.get(owner_id)
        return record.model_copy(deep=True) if record else None
