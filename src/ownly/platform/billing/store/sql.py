"""
SQLAlchemy-backed billing store.

Each record is kept as a JSON document next to a handful of indexed columns
used for lookups. Updates are conditional on the version column.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import JSON, DateTime, Index, Integer, String, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from ownly.platform.billing.exceptions import ConcurrentUpdateError, DuplicateInvoiceError
from ownly.platform.billing.invoicing.models import Invoice, InvoiceStatus
from ownly.platform.billing.pricing.models import QuoteRecord
from ownly.platform.billing.subscriptions.models import Organization
from ownly.platform.db import Base, TimestampMixin

logger = structlog.get_logger(__name__)


class BillingOrganizationTable(TimestampMixin, Base):
    """Organization billing documents."""

    __tablename__ = "billing_organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_billing_organizations_customer", "external_customer_id"),)


class BillingInvoiceTable(TimestampMixin, Base):
    """Invoice documents."""

    __tablename__ = "billing_invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    external_invoice_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    issue_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_billing_invoices_org", "org_id", "project_id"),
        Index("ix_billing_invoices_org_status", "org_id", "status"),
        Index("ix_billing_invoices_number", "invoice_number"),
    )


class BillingAppliedEventTable(Base):
    """Processor event ids that have already been applied."""

    __tablename__ = "billing_applied_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class BillingQuoteTable(TimestampMixin, Base):
    """Last computed quote per organization or project."""

    __tablename__ = "billing_quotes"

    owner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)


class BillingInvoiceSequenceTable(Base):
    """Per-year invoice number counter."""

    __tablename__ = "billing_invoice_sequences"

    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SQLBillingStore:
    """``BillingStore`` implementation on SQLAlchemy async sessions."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def get_organization(self, org_id: str) -> Organization | None:
        async with self._session_maker() as session:
            row = await session.get(BillingOrganizationTable, org_id)
            if row is None:
                return None
            return Organization.model_validate({**row.document, "version": row.version})

    async def find_organization_by_customer(self, customer_id: str) -> Organization | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(BillingOrganizationTable)
                .where(BillingOrganizationTable.external_customer_id == customer_id)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return Organization.model_validate({**row.document, "version": row.version})

    async def add_organization(self, org: Organization) -> Organization:
        async with self._session_maker() as session, session.begin():
            session.add(
                BillingOrganizationTable(
                    id=org.id,
                    version=org.version,
                    external_customer_id=_customer_id(org),
                    document=org.model_dump(mode="json"),
                )
            )
        return org

    async def update_organization(self, org: Organization, expected_version: int) -> Organization:
        updated = org.model_copy(update={"version": expected_version + 1})
        async with self._session_maker() as session, session.begin():
            result = await session.execute(
                update(BillingOrganizationTable)
                .where(
                    BillingOrganizationTable.id == org.id,
                    BillingOrganizationTable.version == expected_version,
                )
                .values(
                    version=expected_version + 1,
                    external_customer_id=_customer_id(updated),
                    document=updated.model_dump(mode="json"),
                    updated_at=datetime.now(UTC),
                )
            )
            if result.rowcount != 1:
                raise ConcurrentUpdateError(
                    f"Organization {org.id} changed concurrently",
                    entity_id=org.id,
                    expected_version=expected_version,
                )
        return updated

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        async with self._session_maker() as session:
            row = await session.get(BillingInvoiceTable, invoice_id)
            return _invoice_from_row(row) if row else None

    async def find_invoice_by_external_id(self, external_invoice_id: str) -> Invoice | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(BillingInvoiceTable).where(
                    BillingInvoiceTable.external_invoice_id == external_invoice_id
                )
            )
            row = result.scalar_one_or_none()
            return _invoice_from_row(row) if row else None

    async def find_invoice_by_number(self, invoice_number: str) -> Invoice | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(BillingInvoiceTable)
                .where(BillingInvoiceTable.invoice_number == invoice_number)
                .order_by(BillingInvoiceTable.issue_date.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _invoice_from_row(row) if row else None

    async def list_invoices(
        self,
        org_id: str,
        project_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        stmt = select(BillingInvoiceTable).where(BillingInvoiceTable.org_id == org_id)
        if project_id is not None:
            stmt = stmt.where(BillingInvoiceTable.project_id == project_id)
        if status is not None:
            stmt = stmt.where(BillingInvoiceTable.status == status.value)
        stmt = stmt.order_by(BillingInvoiceTable.issue_date.desc())

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [_invoice_from_row(row) for row in result.scalars()]

    async def add_invoice(self, invoice: Invoice) -> Invoice:
        try:
            async with self._session_maker() as session, session.begin():
                session.add(
                    BillingInvoiceTable(
                        id=invoice.id,
                        org_id=invoice.org_id,
                        project_id=invoice.project_id,
                        invoice_number=invoice.invoice_number,
                        status=invoice.status.value,
                        external_invoice_id=invoice.external_invoice_id,
                        issue_date=invoice.issue_date,
                        version=invoice.version,
                        document=invoice.model_dump(mode="json"),
                    )
                )
        except IntegrityError as exc:
            if invoice.external_invoice_id is None:
                raise
            raise _duplicate(invoice.external_invoice_id) from exc
        return invoice

    async def update_invoice(self, invoice: Invoice, expected_version: int) -> Invoice:
        updated = invoice.model_copy(update={"version": expected_version + 1})
        try:
            async with self._session_maker() as session, session.begin():
                result = await session.execute(
                    update(BillingInvoiceTable)
                    .where(
                        BillingInvoiceTable.id == invoice.id,
                        BillingInvoiceTable.version == expected_version,
                    )
                    .values(
                        version=expected_version + 1,
                        status=updated.status.value,
                        external_invoice_id=updated.external_invoice_id,
                        document=updated.model_dump(mode="json"),
                        updated_at=datetime.now(UTC),
                    )
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateError(
                        f"Invoice {invoice.id} changed concurrently",
                        entity_id=invoice.id,
                        expected_version=expected_version,
                    )
        except IntegrityError as exc:
            if updated.external_invoice_id is None:
                raise
            raise _duplicate(updated.external_invoice_id) from exc
        return updated

    async def next_invoice_sequence(self, year: int) -> int:
        async with self._session_maker() as session, session.begin():
            result = await session.execute(
                update(BillingInvoiceSequenceTable)
                .where(BillingInvoiceSequenceTable.year == year)
                .values(value=BillingInvoiceSequenceTable.value + 1)
                .returning(BillingInvoiceSequenceTable.value)
            )
            value = result.scalar_one_or_none()
            if value is None:
                await session.execute(insert(BillingInvoiceSequenceTable).values(year=year, value=1))
                value = 1
        return value

    # ------------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------------

    async def is_event_applied(self, event_id: str) -> bool:
        async with self._session_maker() as session:
            return await session.get(BillingAppliedEventTable, event_id) is not None

    async def mark_event_applied(self, event_id: str, event_type: str) -> bool:
        try:
            async with self._session_maker() as session, session.begin():
                session.add(BillingAppliedEventTable(event_id=event_id, event_type=event_type))
        except IntegrityError:
            logger.debug("event.already_marked", event_id=event_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def save_quote(self, record: QuoteRecord) -> None:
        async with self._session_maker() as session, session.begin():
            row = await session.get(BillingQuoteTable, record.owner_id)
            document = record.model_dump(mode="json")
            if row is None:
                session.add(BillingQuoteTable(owner_id=record.owner_id, document=document))
            else:
                row.document = document

    async def get_quote(self, owner_id: str) -> QuoteRecord | None:
        async with self._session_maker() as session:
            row = await session.get(BillingQuoteTable, owner_id)
            return QuoteRecord.model_validate(row.document) if row else None


def _customer_id(org: Organization) -> str | None:
    return org.subscription.external_customer_id if org.subscription else None


def _invoice_from_row(row: BillingInvoiceTable) -> Invoice:
    return Invoice.model_validate({**row.document, "version": row.version})


def _duplicate(external_invoice_id: str) -> DuplicateInvoiceError:
    logger.info("invoice.duplicate_external_id", external_invoice_id=external_invoice_id)
    return DuplicateInvoiceError(
        f"Processor invoice {external_invoice_id} is already stored",
        external_invoice_id=external_invoice_id,
    )
