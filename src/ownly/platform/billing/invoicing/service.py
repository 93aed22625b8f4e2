"""
Invoice generation.

One-time invoices are recorded locally as drafts before the processor is
called, so a processor outage never loses the invoice: it stays a draft and
can be sent again later. Recurring invoices are created by the processor and
mirrored here by the webhook reconciler.
"""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from ownly.platform.billing.adapters.base import (
    CheckoutRequest,
    CustomerDetails,
    ExternalInvoiceLine,
    InvoiceDraft,
    PaymentProcessorAdapter,
)
from ownly.platform.billing.config import BillingConfig, get_billing_config
from ownly.platform.billing.exceptions import (
    InvoiceFinalizeError,
    InvoiceNotFoundError,
    InvoiceStateError,
    InvoiceValidationError,
    OrganizationNotFoundError,
    PaymentProcessorError,
)
from ownly.platform.billing.invoicing.models import (
    PAYABLE_INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    Invoice,
    InvoiceCreateRequest,
    InvoiceKind,
    InvoiceLineItem,
    InvoicePaymentLink,
    InvoiceStatus,
    effective_status,
)
from ownly.platform.billing.store.base import (
    BillingStore,
    update_invoice_with_retry,
    update_organization_with_retry,
)
from ownly.platform.billing.subscriptions.models import Organization
from ownly.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)


def billing_email_for(org: Organization) -> str:
    """Billing address for an organization: subscription email, else primary contact."""
    if org.subscription and org.subscription.billing_email:
        return org.subscription.billing_email
    return org.primary_contact.email


def price_line_items(request: InvoiceCreateRequest) -> tuple[InvoiceLineItem, ...]:
    """
    Validate and price the requested line items.

    Raises:
        InvoiceValidationError: No line items, quantity below 1, or a negative amount
    """
    if not request.line_items:
        raise InvoiceValidationError("Invoice must have at least one line item", field="line_items")
    if request.tax_cents < 0:
        raise InvoiceValidationError("Tax cannot be negative", field="tax_cents")

    lines = []
    for index, item in enumerate(request.line_items):
        if item.quantity < 1:
            raise InvoiceValidationError(
                f"Line item {index} quantity must be at least 1",
                field=f"line_items[{index}].quantity",
            )
        if item.unit_price_cents < 0:
            raise InvoiceValidationError(
                f"Line item {index} unit price cannot be negative",
                field=f"line_items[{index}].unit_price_cents",
            )
        lines.append(
            InvoiceLineItem(
                description=item.description,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                total_cents=item.quantity * item.unit_price_cents,
            )
        )
    return tuple(lines)


def _external_lines(invoice: Invoice) -> tuple[ExternalInvoiceLine, ...]:
    return tuple(
        ExternalInvoiceLine(
            description=line.description,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
        )
        for line in invoice.line_items
    )


def checkout_lines(invoice: Invoice) -> tuple[ExternalInvoiceLine, ...]:
    """
    Lines for a one-off checkout of ``invoice`` that add up to its total.

    Checkout cannot charge negative amounts. Mirrored subscription invoices
    and invoices carrying credits are collected as one line for the total.
    """
    if invoice.kind == InvoiceKind.SUBSCRIPTION or any(
        line.unit_price_cents < 0 for line in invoice.line_items
    ):
        return (
            ExternalInvoiceLine(
                description=f"Invoice {invoice.invoice_number}",
                quantity=1,
                unit_price_cents=invoice.total,
            ),
        )
    lines = _external_lines(invoice)
    if invoice.tax > 0:
        lines += (ExternalInvoiceLine(description="Tax", quantity=1, unit_price_cents=invoice.tax),)
    return lines


class InvoiceGenerator:
    """Creates and manages one-time invoices."""

    def __init__(
        self,
        store: BillingStore,
        adapter: PaymentProcessorAdapter,
        config: BillingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.config = config or get_billing_config()
        self._clock = clock or (lambda: datetime.now(UTC))

    # ==================== Helpers ====================

    async def _load_org(self, org_id: str) -> Organization:
        org = await self.store.get_organization(org_id)
        if org is None:
            raise OrganizationNotFoundError(f"Organization {org_id} not found", org_id=org_id)
        return org

    async def next_invoice_number(self, issued_at: datetime) -> str:
        sequence = await self.store.next_invoice_sequence(issued_at.year)
        return self.config.invoice.number_format.format(year=issued_at.year, sequence=sequence)

    async def _update(self, invoice_id: str, **changes: Any) -> Invoice:
        def apply(invoice: Invoice) -> bool:
            for key, value in changes.items():
                setattr(invoice, key, value)
            return True

        return await update_invoice_with_retry(
            self.store,
            invoice_id,
            apply,
            attempts=self.config.subscription.update_retry_attempts,
        )

    async def _customer_id(self, org: Organization, billing_email: str) -> str:
        if org.subscription and org.subscription.external_customer_id:
            return org.subscription.external_customer_id

        customer = await self.adapter.create_or_update_customer(
            CustomerDetails(
                org_id=org.id,
                name=org.name,
                email=billing_email,
                phone=org.primary_contact.phone,
            )
        )

        if org.subscription is not None:

            def record(working: Organization) -> bool:
                if working.subscription is None or working.subscription.external_customer_id:
                    return False
                working.subscription.external_customer_id = customer.id
                return True

            await update_organization_with_retry(self.store, org.id, record)
        return customer.id

    # ==================== Create ====================

    async def create_invoice(self, request: InvoiceCreateRequest) -> Invoice:
        """
        Create a one-time invoice for an organization.

        Args:
            request: Invoice details and line items in cents

        Returns:
            The stored invoice; ``sent`` when auto-send succeeded, else ``draft``

        Raises:
            InvoiceValidationError: Request rejected before any processor call
            OrganizationNotFoundError: Unknown organization
            InvoiceFinalizeError: Processor failed; the local draft is kept
        """
        line_items = price_line_items(request)
        org = await self._load_org(request.org_id)

        now = self._clock()
        subtotal = sum(line.total_cents for line in line_items)
        invoice = Invoice(
            org_id=org.id,
            project_id=request.project_id,
            invoice_number=await self.next_invoice_number(now),
            description=request.description,
            kind=InvoiceKind.ONE_TIME,
            line_items=line_items,
            subtotal=subtotal,
            tax=request.tax_cents,
            total=subtotal + request.tax_cents,
            currency=self.config.currency.default_currency,
            issue_date=now,
            due_date=request.due_date
            or now + timedelta(days=self.config.invoice.due_days_default),
            billing_email=billing_email_for(org),
        )
        invoice = await self.store.add_invoice(invoice)

        logger.info(
            "invoice.draft_created",
            invoice_id=invoice.id,
            org_id=org.id,
            invoice_number=invoice.invoice_number,
            total=invoice.total,
        )
        log_audit_event(
            "invoice.created",
            category="billing",
            org_id=org.id,
            resource_type="invoice",
            resource_id=invoice.id,
            total=invoice.total,
        )

        return await self._publish(invoice, org, send=request.auto_send, metadata=request.metadata)

    async def _publish(
        self,
        invoice: Invoice,
        org: Organization,
        send: bool,
        metadata: dict[str, Any] | None = None,
    ) -> Invoice:
        """Create, finalize and optionally send the invoice at the processor."""
        operation = "customer"
        external_id = invoice.external_invoice_id
        try:
            if external_id is None:
                customer_id = await self._customer_id(org, invoice.billing_email)
                operation = "create"
                external = await self.adapter.create_invoice(
                    InvoiceDraft(
                        customer_id=customer_id,
                        org_id=invoice.org_id,
                        local_invoice_id=invoice.id,
                        description=invoice.description,
                        lines=_external_lines(invoice),
                        currency=invoice.currency.lower(),
                        project_id=invoice.project_id,
                        due_date=invoice.due_date,
                        metadata={"invoiceNumber": invoice.invoice_number, **(metadata or {})},
                    )
                )
                external_id = external.id
                invoice = await self._update(invoice.id, external_invoice_id=external_id)

            if not invoice.is_finalized:
                operation = "finalize"
                finalized = await self.adapter.finalize_invoice(external_id)
                invoice = await self._update(
                    invoice.id,
                    finalized_at=self._clock(),
                    external_invoice_number=finalized.number,
                    hosted_invoice_url=finalized.hosted_invoice_url,
                )

            if send:
                operation = "send"
                await self.adapter.send_invoice(external_id)
                invoice = await self._mark_sent(invoice.id)
        except PaymentProcessorError as exc:
            logger.warning(
                "invoice.publish_failed",
                invoice_id=invoice.id,
                operation=operation,
                error=exc.message,
            )
            raise InvoiceFinalizeError(
                f"Processor {operation} step failed for invoice {invoice.id}: {exc.message}",
                invoice_id=invoice.id,
                operation=operation,
            ) from exc

        return invoice

    async def _mark_sent(self, invoice_id: str) -> Invoice:
        def apply(invoice: Invoice) -> bool:
            # A payment notification may already have landed
            if invoice.status != InvoiceStatus.DRAFT:
                return False
            invoice.status = InvoiceStatus.SENT
            invoice.sent_to = [invoice.billing_email]
            return True

        invoice = await update_invoice_with_retry(
            self.store,
            invoice_id,
            apply,
            attempts=self.config.subscription.update_retry_attempts,
        )
        logger.info("invoice.sent", invoice_id=invoice.id, sent_to=invoice.sent_to)
        return invoice

    # ==================== Administrative actions ====================

    async def send_invoice(self, invoice_id: str) -> Invoice:
        """Send a draft invoice, finalizing it at the processor first when needed."""
        invoice = await self.get_invoice(invoice_id)
        if invoice.status in TERMINAL_INVOICE_STATUSES:
            raise InvoiceStateError(
                f"Invoice {invoice_id} is {invoice.status.value} and cannot be sent",
                invoice_id=invoice_id,
                current_status=invoice.status.value,
            )
        org = await self._load_org(invoice.org_id)
        return await self._publish(invoice, org, send=True)

    async def void_invoice(self, invoice_id: str) -> Invoice:
        """
        Void an invoice.

        Raises:
            InvoiceStateError: The invoice has been paid
            InvoiceFinalizeError: The processor could not void it; nothing changed locally
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.status == InvoiceStatus.VOID:
            return invoice
        if invoice.status == InvoiceStatus.PAID:
            raise InvoiceStateError(
                f"Invoice {invoice_id} is paid and cannot be voided",
                invoice_id=invoice_id,
                current_status=invoice.status.value,
            )

        if invoice.external_invoice_id and invoice.is_finalized:
            try:
                await self.adapter.void_invoice(invoice.external_invoice_id)
            except PaymentProcessorError as exc:
                logger.warning("invoice.void_failed", invoice_id=invoice_id, error=exc.message)
                raise InvoiceFinalizeError(
                    f"Processor void step failed for invoice {invoice_id}: {exc.message}",
                    invoice_id=invoice_id,
                    operation="void",
                    recovery_hint="The invoice is unchanged; retry once the processor recovers",
                ) from exc

        invoice = await self._update(invoice_id, status=InvoiceStatus.VOID)
        logger.info("invoice.voided", invoice_id=invoice_id)
        log_audit_event(
            "invoice.voided",
            category="billing",
            org_id=invoice.org_id,
            resource_type="invoice",
            resource_id=invoice_id,
        )
        return invoice

    async def mark_uncollectible(self, invoice_id: str) -> Invoice:
        """Write off an unpaid invoice."""
        invoice = await self.get_invoice(invoice_id)
        if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            raise InvoiceStateError(
                f"Invoice {invoice_id} is {invoice.status.value} and cannot be written off",
                invoice_id=invoice_id,
                current_status=invoice.status.value,
            )

        invoice = await self._update(invoice_id, status=InvoiceStatus.UNCOLLECTIBLE)
        logger.info("invoice.marked_uncollectible", invoice_id=invoice_id)
        log_audit_event(
            "invoice.marked_uncollectible",
            category="billing",
            org_id=invoice.org_id,
            resource_type="invoice",
            resource_id=invoice_id,
        )
        return invoice

    # ==================== Customer payment ====================

    async def create_payment_link(self, invoice_number: str) -> InvoicePaymentLink:
        """
        Give the customer somewhere to pay an open invoice, looked up by number.

        The processor's hosted invoice page is used when the invoice has one,
        so the payment settles the processor invoice itself. Otherwise a
        one-off checkout session is opened for the invoice total.

        Raises:
            InvoiceNotFoundError: No invoice with that number
            InvoiceStateError: The invoice is a draft or already settled
            InvoiceFinalizeError: The processor could not open a checkout
        """
        invoice = await self.store.find_invoice_by_number(invoice_number)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_number} not found")
        if invoice.status not in PAYABLE_INVOICE_STATUSES:
            raise InvoiceStateError(
                f"Invoice {invoice_number} is not available for payment",
                invoice_id=invoice.id,
                current_status=invoice.status.value,
            )

        if invoice.hosted_invoice_url:
            return InvoicePaymentLink(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                url=invoice.hosted_invoice_url,
            )

        org = await self._load_org(invoice.org_id)
        customer_id = org.subscription.external_customer_id if org.subscription else None
        urls = self.config.invoice
        try:
            session = await self.adapter.create_checkout_session(
                CheckoutRequest(
                    local_invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    org_id=invoice.org_id,
                    lines=checkout_lines(invoice),
                    success_url=urls.payment_success_url.format(number=invoice.invoice_number),
                    cancel_url=urls.payment_cancel_url.format(number=invoice.invoice_number),
                    currency=invoice.currency.lower(),
                    customer_id=customer_id,
                    customer_email=invoice.billing_email,
                )
            )
        except PaymentProcessorError as exc:
            logger.warning("invoice.checkout_failed", invoice_id=invoice.id, error=exc.message)
            raise InvoiceFinalizeError(
                f"Could not open a checkout for invoice {invoice_number}: {exc.message}",
                invoice_id=invoice.id,
                operation="checkout",
                recovery_hint="The invoice is still open; try paying again shortly",
            ) from exc

        logger.info(
            "invoice.checkout_created",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            session_id=session.id,
        )
        return InvoicePaymentLink(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            url=session.url,
            checkout_session_id=session.id,
        )

    # ==================== Queries ====================

    async def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    async def list_invoices(
        self,
        org_id: str,
        project_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        """List invoices newest first; ``OVERDUE`` filters sent invoices past due."""
        if status == InvoiceStatus.OVERDUE:
            now = self._clock()
            sent = await self.store.list_invoices(org_id, project_id, InvoiceStatus.SENT)
            return [inv for inv in sent if effective_status(inv, now) == InvoiceStatus.OVERDUE]
        return await self.store.list_invoices(org_id, project_id, status)

    def effective_status(self, invoice: Invoice) -> InvoiceStatus:
        return effective_status(invoice, self._clock())

    # ==================== Processor-generated invoices ====================

    async def mirror_external_invoice(
        self,
        org: Organization,
        *,
        external_invoice_id: str,
        line_items: Sequence[InvoiceLineItem],
        subtotal: int,
        tax: int,
        total: int,
        status: InvoiceStatus,
        issued_at: datetime,
        external_subscription_id: str | None = None,
        number: str | None = None,
        description: str | None = None,
        due_date: datetime | None = None,
        paid_at: datetime | None = None,
        hosted_invoice_url: str | None = None,
        external_updated_at: datetime | None = None,
    ) -> Invoice:
        """Store a local copy of an invoice the processor generated for a subscription."""
        if description is None:
            plan = org.subscription.plan if org.subscription else ""
            description = f"Subscription: {plan or org.name}"
        invoice = Invoice(
            org_id=org.id,
            invoice_number=await self.next_invoice_number(issued_at),
            description=description,
            kind=InvoiceKind.SUBSCRIPTION,
            line_items=tuple(line_items),
            subtotal=subtotal,
            tax=tax,
            total=total,
            currency=self.config.currency.default_currency,
            status=status,
            issue_date=issued_at,
            due_date=due_date or issued_at,
            finalized_at=issued_at,
            paid_at=paid_at,
            external_invoice_id=external_invoice_id,
            external_invoice_number=number,
            external_subscription_id=external_subscription_id,
            hosted_invoice_url=hosted_invoice_url,
            billing_email=billing_email_for(org),
            external_updated_at=external_updated_at,
        )
        invoice = await self.store.add_invoice(invoice)
        logger.info(
            "invoice.mirrored",
            invoice_id=invoice.id,
            org_id=org.id,
            external_invoice_id=external_invoice_id,
            status=status.value,
        )
        return invoice
