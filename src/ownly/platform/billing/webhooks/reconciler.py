"""
Payment event reconciliation.

Merges asynchronous processor notifications into organization and invoice
state. Delivery is at-least-once and unordered:

- every event id is applied at most once
- each subscription and invoice remembers the processor timestamp of the last
  event applied to it; older events are dropped
- paid, void and uncollectible invoices never move back on a failure event
- events for a subscription that is still being created stay unapplied so the
  processor delivers them again
"""

from collections.abc import Callable
from datetime import datetime
from enum import Enum

import structlog

from ownly.platform.billing.config import BillingConfig, get_billing_config
from ownly.platform.billing.exceptions import (
    DuplicateInvoiceError,
    StaleEventError,
    SubscriptionNotRecordedError,
)
from ownly.platform.billing.invoicing.models import (
    TERMINAL_INVOICE_STATUSES,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
)
from ownly.platform.billing.invoicing.service import InvoiceGenerator
from ownly.platform.billing.store.base import (
    BillingStore,
    update_invoice_with_retry,
    update_organization_with_retry,
)
from ownly.platform.billing.subscriptions.models import (
    Organization,
    SubscriptionStatus,
    can_transition,
)
from ownly.platform.billing.webhooks.models import (
    CheckoutCompletedEvent,
    CustomerEvent,
    InvoicePaidEvent,
    InvoicePayload,
    InvoicePaymentFailedEvent,
    PaymentIntentEvent,
    ReconciliationEvent,
    SubscriptionEvent,
    UnrecognizedEvent,
)
from ownly.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    """Result of applying one event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


PROCESSOR_SUBSCRIPTION_STATUS: dict[str, SubscriptionStatus] = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
}

_PAUSABLE = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


def map_subscription_status(status: str, paused: bool = False) -> SubscriptionStatus | None:
    """Map a processor subscription status; ``None`` for statuses we do not know."""
    mapped = PROCESSOR_SUBSCRIPTION_STATUS.get(status)
    if mapped is not None and paused and mapped in _PAUSABLE:
        return SubscriptionStatus.PAUSED
    return mapped


def _check_fresh(
    stored_at: datetime | None, event: ReconciliationEvent, entity_id: str
) -> None:
    if stored_at is not None and event.occurred_at < stored_at:
        raise StaleEventError(
            f"Event {event.external_event_id} is older than stored state of {entity_id}",
            event_id=event.external_event_id,
            entity_id=entity_id,
        )


class PaymentEventReconciler:
    """Applies processor events to local billing state."""

    def __init__(
        self,
        store: BillingStore,
        invoices: InvoiceGenerator,
        config: BillingConfig | None = None,
    ) -> None:
        self.store = store
        self.invoices = invoices
        self.config = config or get_billing_config()

    @property
    def _attempts(self) -> int:
        return self.config.subscription.update_retry_attempts

    async def apply(
        self, event: ReconciliationEvent | UnrecognizedEvent
    ) -> ReconciliationOutcome:
        """
        Apply one processor event.

        Safe to call repeatedly with the same event and in any order
        relative to other events.
        """
        log = logger.bind(event_id=event.external_event_id, event_type=event.type)

        if await self.store.is_event_applied(event.external_event_id):
            log.info("webhook.duplicate_event")
            return ReconciliationOutcome.DUPLICATE

        try:
            outcome = await self._route(event)
        except StaleEventError as exc:
            log.info("webhook.stale_event", entity_id=exc.context.get("entity_id"))
            outcome = ReconciliationOutcome.STALE
        except SubscriptionNotRecordedError:
            # Left unmarked so the processor redelivers it
            log.info("webhook.event_deferred", reason="subscription_not_recorded")
            raise

        if not await self.store.mark_event_applied(event.external_event_id, event.type):
            log.info("webhook.duplicate_event", concurrent=True)
            return ReconciliationOutcome.DUPLICATE

        log.info("webhook.event_processed", outcome=outcome.value)
        return outcome

    async def _route(
        self, event: ReconciliationEvent | UnrecognizedEvent
    ) -> ReconciliationOutcome:
        if isinstance(event, CustomerEvent):
            return await self._apply_customer(event)
        if isinstance(event, SubscriptionEvent):
            return await self._apply_subscription(event)
        if isinstance(event, InvoicePaidEvent):
            return await self._apply_invoice_paid(event)
        if isinstance(event, InvoicePaymentFailedEvent):
            return await self._apply_invoice_failed(event)
        if isinstance(event, PaymentIntentEvent):
            return await self._apply_payment_intent(event)
        if isinstance(event, CheckoutCompletedEvent):
            return await self._apply_checkout_completed(event)

        logger.info("webhook.unhandled_event", event_type=event.type)
        return ReconciliationOutcome.IGNORED

    async def _resolve_org(
        self, org_id: str | None, customer_id: str | None
    ) -> Organization | None:
        if org_id:
            org = await self.store.get_organization(org_id)
            if org is not None:
                return org
        if customer_id:
            return await self.store.find_organization_by_customer(customer_id)
        return None

    # ==================== Customers ====================

    async def _apply_customer(self, event: CustomerEvent) -> ReconciliationOutcome:
        payload = event.payload
        org = await self._resolve_org(payload.org_id, payload.customer_id)
        if org is None or org.subscription is None:
            logger.info("webhook.customer_unmatched", customer_id=payload.customer_id)
            return ReconciliationOutcome.IGNORED

        def apply(org: Organization) -> bool:
            sub = org.subscription
            if sub is None:
                return False
            changed = False
            if sub.external_customer_id != payload.customer_id:
                sub.external_customer_id = payload.customer_id
                changed = True
            if payload.email and sub.billing_email != payload.email:
                sub.billing_email = payload.email
                changed = True
            return changed

        await update_organization_with_retry(self.store, org.id, apply, attempts=self._attempts)
        return ReconciliationOutcome.APPLIED

    # ==================== Subscriptions ====================

    async def _apply_subscription(self, event: SubscriptionEvent) -> ReconciliationOutcome:
        payload = event.payload
        org = await self._resolve_org(payload.org_id, payload.customer_id)
        if org is None:
            logger.info("webhook.subscription_unmatched", subscription_id=payload.subscription_id)
            return ReconciliationOutcome.IGNORED
        if org.subscription is None:
            # First subscription is still being created; its id is not stored yet
            raise SubscriptionNotRecordedError(
                f"Subscription {payload.subscription_id} is not recorded for {org.id}",
                org_id=org.id,
                subscription_id=payload.subscription_id,
            )

        if event.type == "customer.subscription.deleted":
            target: SubscriptionStatus | None = SubscriptionStatus.CANCELED
        else:
            target = map_subscription_status(payload.status, payload.paused)
        if target is None:
            logger.warning(
                "webhook.unknown_subscription_status",
                org_id=org.id,
                processor_status=payload.status,
            )

        matched = True
        previous_status: SubscriptionStatus | None = None

        def apply(org: Organization) -> bool:
            nonlocal matched, previous_status
            sub = org.subscription
            if sub is None:
                raise SubscriptionNotRecordedError(
                    f"Subscription {payload.subscription_id} is not recorded for {org.id}",
                    org_id=org.id,
                    subscription_id=payload.subscription_id,
                )

            previous_status = sub.status
            if sub.external_subscription_id == payload.subscription_id:
                _check_fresh(sub.external_updated_at, event, payload.subscription_id)
                adopted = False
            elif (
                sub.external_subscription_id is None or sub.status == SubscriptionStatus.CANCELED
            ) and payload.org_id in (None, org.id):
                # New processor subscription for this organization
                sub.external_subscription_id = payload.subscription_id
                sub.external_updated_at = None
                adopted = True
            else:
                matched = False
                return False

            if payload.customer_id and not sub.external_customer_id:
                sub.external_customer_id = payload.customer_id

            if target is not None:
                if adopted or can_transition(sub.status, target):
                    sub.set_status(target)
                else:
                    logger.warning(
                        "webhook.illegal_transition",
                        org_id=org.id,
                        current_status=sub.status.value,
                        requested_status=target.value,
                    )

            if payload.current_period_start is not None:
                sub.current_period_start = payload.current_period_start
            if payload.current_period_end is not None:
                sub.current_period_end = payload.current_period_end
            sub.cancel_at_period_end = payload.cancel_at_period_end
            if payload.canceled_at is not None:
                sub.canceled_at = payload.canceled_at
            sub.trial_start = payload.trial_start
            sub.trial_end = payload.trial_end
            sub.external_updated_at = event.occurred_at
            return True

        updated = await update_organization_with_retry(
            self.store, org.id, apply, attempts=self._attempts
        )
        if not matched or updated.subscription is None:
            logger.info(
                "webhook.subscription_mismatch",
                org_id=org.id,
                subscription_id=payload.subscription_id,
            )
            return ReconciliationOutcome.IGNORED

        if previous_status != updated.subscription.status:
            log_audit_event(
                "subscription.status_changed",
                category="billing",
                org_id=org.id,
                resource_type="subscription",
                resource_id=payload.subscription_id,
                actor="processor",
                previous_status=previous_status.value if previous_status else None,
                status=updated.subscription.status.value,
            )
        return ReconciliationOutcome.APPLIED

    # ==================== Invoices ====================

    async def _find_invoice(self, payload: InvoicePayload) -> Invoice | None:
        invoice = await self.store.find_invoice_by_external_id(payload.invoice_id)
        if invoice is None and payload.local_invoice_id:
            # Notification can beat the write that records the external id
            invoice = await self.store.get_invoice(payload.local_invoice_id)
        return invoice

    async def _settle(
        self,
        event: InvoicePaidEvent | InvoicePaymentFailedEvent,
        apply: Callable[[Invoice], bool],
        status: InvoiceStatus,
    ) -> Invoice | None:
        """Apply ``apply`` to the stored invoice, mirroring it first when unknown."""
        invoice = await self._find_invoice(event.payload)
        if invoice is not None:
            return await update_invoice_with_retry(
                self.store, invoice.id, apply, attempts=self._attempts
            )

        try:
            return await self._mirror(event, status)
        except DuplicateInvoiceError:
            # Another event for the same processor invoice stored the mirror first
            existing = await self.store.find_invoice_by_external_id(event.payload.invoice_id)
            if existing is None:
                raise
            logger.info(
                "webhook.invoice_mirrored_concurrently",
                invoice_id=existing.id,
                external_invoice_id=event.payload.invoice_id,
            )
            return await update_invoice_with_retry(
                self.store, existing.id, apply, attempts=self._attempts
            )

    async def _mirror(
        self, event: InvoicePaidEvent | InvoicePaymentFailedEvent, status: InvoiceStatus
    ) -> Invoice | None:
        payload = event.payload
        if payload.subscription_id is None:
            return None
        org = await self._resolve_org(payload.org_id, payload.customer_id)
        if org is None:
            return None

        lines = [
            InvoiceLineItem(
                description=line.description,
                quantity=max(line.quantity, 1),
                unit_price_cents=(
                    line.unit_amount_cents
                    if line.unit_amount_cents is not None
                    else line.amount_cents // max(line.quantity, 1)
                ),
                total_cents=line.amount_cents,
            )
            for line in payload.lines
        ]
        issued_at = payload.created_at or event.occurred_at
        return await self.invoices.mirror_external_invoice(
            org,
            external_invoice_id=payload.invoice_id,
            line_items=lines,
            subtotal=payload.subtotal_cents,
            tax=payload.tax_cents,
            total=payload.total_cents,
            status=status,
            issued_at=issued_at,
            external_subscription_id=payload.subscription_id,
            number=payload.number,
            description=payload.description,
            due_date=payload.due_date,
            paid_at=(payload.paid_at or event.occurred_at) if status == InvoiceStatus.PAID else None,
            hosted_invoice_url=payload.hosted_invoice_url,
            external_updated_at=event.occurred_at,
        )

    async def _apply_invoice_paid(self, event: InvoicePaidEvent) -> ReconciliationOutcome:
        payload = event.payload

        def apply(invoice: Invoice) -> bool:
            if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.VOID):
                return False
            _check_fresh(invoice.external_updated_at, event, invoice.id)
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = payload.paid_at or event.occurred_at
            invoice.external_invoice_id = invoice.external_invoice_id or payload.invoice_id
            if payload.payment_intent_id:
                invoice.external_payment_intent_id = payload.payment_intent_id
            invoice.external_updated_at = event.occurred_at
            return True

        invoice = await self._settle(event, apply, InvoiceStatus.PAID)
        if invoice is None:
            logger.info("webhook.invoice_unmatched", external_invoice_id=payload.invoice_id)
            return ReconciliationOutcome.IGNORED

        if payload.subscription_id and payload.includes_setup:
            await self._mark_setup_paid(invoice.org_id, payload.subscription_id)

        log_audit_event(
            "invoice.paid",
            category="billing",
            org_id=invoice.org_id,
            resource_type="invoice",
            resource_id=invoice.id,
            actor="processor",
            total=invoice.total,
        )
        return ReconciliationOutcome.APPLIED

    async def _mark_setup_paid(self, org_id: str, subscription_id: str) -> None:
        def apply(org: Organization) -> bool:
            sub = org.subscription
            if sub is None or sub.external_subscription_id is None or (
                sub.external_subscription_id != subscription_id
                and sub.status == SubscriptionStatus.CANCELED
            ):
                raise SubscriptionNotRecordedError(
                    f"Setup invoice for {subscription_id} paid before the subscription was stored",
                    org_id=org_id,
                    subscription_id=subscription_id,
                )
            if sub.external_subscription_id != subscription_id or sub.setup_paid:
                return False
            sub.setup_paid = True
            sub.payment_url = None
            return True

        await update_organization_with_retry(self.store, org_id, apply, attempts=self._attempts)
        logger.info("subscription.setup_paid", org_id=org_id, subscription_id=subscription_id)

    async def _apply_invoice_failed(
        self, event: InvoicePaymentFailedEvent
    ) -> ReconciliationOutcome:
        payload = event.payload

        def apply(invoice: Invoice) -> bool:
            if invoice.status in TERMINAL_INVOICE_STATUSES:
                logger.info(
                    "webhook.terminal_invoice_kept",
                    invoice_id=invoice.id,
                    status=invoice.status.value,
                )
                return False
            _check_fresh(invoice.external_updated_at, event, invoice.id)
            invoice.status = InvoiceStatus.PAYMENT_FAILED
            if payload.payment_intent_id:
                invoice.external_payment_intent_id = payload.payment_intent_id
            invoice.external_updated_at = event.occurred_at
            return True

        invoice = await self._settle(event, apply, InvoiceStatus.PAYMENT_FAILED)
        if invoice is None:
            logger.info("webhook.invoice_unmatched", external_invoice_id=payload.invoice_id)
            return ReconciliationOutcome.IGNORED

        if (
            payload.subscription_id
            and not payload.includes_setup
            and invoice.status == InvoiceStatus.PAYMENT_FAILED
        ):
            await self._mark_past_due(invoice.org_id, payload.subscription_id, event)

        log_audit_event(
            "invoice.payment_failed",
            category="billing",
            org_id=invoice.org_id,
            resource_type="invoice",
            resource_id=invoice.id,
            actor="processor",
        )
        return ReconciliationOutcome.APPLIED

    async def _mark_past_due(
        self, org_id: str, subscription_id: str, event: InvoicePaymentFailedEvent
    ) -> None:
        def apply(org: Organization) -> bool:
            sub = org.subscription
            if sub is None or sub.external_subscription_id != subscription_id:
                return False
            # A newer subscription event already settled the status
            if sub.external_updated_at is not None and event.occurred_at < sub.external_updated_at:
                return False
            if not can_transition(sub.status, SubscriptionStatus.PAST_DUE):
                return False
            if sub.status == SubscriptionStatus.PAST_DUE:
                return False
            sub.set_status(SubscriptionStatus.PAST_DUE)
            return True

        updated = await update_organization_with_retry(
            self.store, org_id, apply, attempts=self._attempts
        )
        if updated.subscription and updated.subscription.status == SubscriptionStatus.PAST_DUE:
            logger.info("subscription.past_due", org_id=org_id, subscription_id=subscription_id)

    # ==================== Payment intents ====================

    async def _apply_payment_intent(self, event: PaymentIntentEvent) -> ReconciliationOutcome:
        payload = event.payload
        if payload.invoice_id is None:
            return ReconciliationOutcome.IGNORED
        invoice = await self.store.find_invoice_by_external_id(payload.invoice_id)
        if invoice is None:
            logger.info("webhook.invoice_unmatched", external_invoice_id=payload.invoice_id)
            return ReconciliationOutcome.IGNORED

        failed = event.type == "payment_intent.payment_failed"

        def apply(invoice: Invoice) -> bool:
            changed = False
            if invoice.external_payment_intent_id != payload.payment_intent_id:
                invoice.external_payment_intent_id = payload.payment_intent_id
                changed = True
            if failed and invoice.status not in TERMINAL_INVOICE_STATUSES:
                _check_fresh(invoice.external_updated_at, event, invoice.id)
                invoice.status = InvoiceStatus.PAYMENT_FAILED
                invoice.external_updated_at = event.occurred_at
                changed = True
            return changed

        await update_invoice_with_retry(self.store, invoice.id, apply, attempts=self._attempts)
        if failed:
            logger.info(
                "webhook.payment_intent_failed",
                invoice_id=invoice.id,
                failure_message=payload.failure_message,
            )
        return ReconciliationOutcome.APPLIED

    # ==================== Checkout ====================

    async def _apply_checkout_completed(
        self, event: CheckoutCompletedEvent
    ) -> ReconciliationOutcome:
        payload = event.payload
        if payload.payment_status != "paid" or payload.local_invoice_id is None:
            logger.info(
                "webhook.checkout_unsettled",
                session_id=payload.session_id,
                payment_status=payload.payment_status,
            )
            return ReconciliationOutcome.IGNORED

        invoice = await self.store.get_invoice(payload.local_invoice_id)
        if invoice is None:
            logger.info("webhook.invoice_unmatched", local_invoice_id=payload.local_invoice_id)
            return ReconciliationOutcome.IGNORED

        def apply(invoice: Invoice) -> bool:
            if invoice.status == InvoiceStatus.VOID:
                logger.warning(
                    "webhook.checkout_paid_void_invoice",
                    invoice_id=invoice.id,
                    session_id=payload.session_id,
                )
                return False
            if invoice.status == InvoiceStatus.PAID:
                return False
            _check_fresh(invoice.external_updated_at, event, invoice.id)
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = event.occurred_at
            if payload.payment_intent_id:
                invoice.external_payment_intent_id = payload.payment_intent_id
            invoice.external_updated_at = event.occurred_at
            return True

        invoice = await update_invoice_with_retry(
            self.store, invoice.id, apply, attempts=self._attempts
        )
        if invoice.status == InvoiceStatus.PAID:
            log_audit_event(
                "invoice.paid",
                category="billing",
                org_id=invoice.org_id,
                resource_type="invoice",
                resource_id=invoice.id,
                actor="processor",
                total=invoice.total,
                checkout_session_id=payload.session_id,
            )
        return ReconciliationOutcome.APPLIED
