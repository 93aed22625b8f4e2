"""
Subscription lifecycle service.

Every operation calls the payment processor first and writes local state
only once the processor has confirmed. Local writes go through the
optimistic-versioning retry helper so concurrent webhook deliveries are never
overwritten.
"""

from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog

from ownly.platform.billing.adapters.base import (
    CustomerDetails,
    PaymentProcessorAdapter,
    SubscriptionItems,
)
from ownly.platform.billing.config import BillingConfig, get_billing_config
from ownly.platform.billing.exceptions import (
    InvalidFeatureError,
    NotReactivatableError,
    OrganizationNotFoundError,
    PaymentProcessorError,
    PaymentSetupError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from ownly.platform.billing.pricing.models import Capability, Quote, plan_label
from ownly.platform.billing.pricing.service import PricingEngine, parse_features
from ownly.platform.billing.store.base import BillingStore, update_organization_with_retry
from ownly.platform.billing.subscriptions.models import (
    Organization,
    OrganizationSubscription,
    SubscriptionStatus,
    SubscriptionSummary,
    can_transition,
)
from ownly.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)


def _items_for(quote: Quote) -> SubscriptionItems:
    return SubscriptionItems(
        setup_cents=quote.setup_total,
        monthly_cents=quote.monthly_total,
        features=tuple(quote.features),
        description=plan_label(quote.features),
    )


class SubscriptionLifecycle:
    """Creates, changes, cancels and reactivates organization subscriptions."""

    def __init__(
        self,
        store: BillingStore,
        adapter: PaymentProcessorAdapter,
        engine: PricingEngine | None = None,
        config: BillingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.engine = engine or PricingEngine()
        self.config = config or get_billing_config()
        self._clock = clock or (lambda: datetime.now(UTC))

    # ==================== Helpers ====================

    async def _load(self, org_id: str) -> Organization:
        org = await self.store.get_organization(org_id)
        if org is None:
            raise OrganizationNotFoundError(f"Organization {org_id} not found", org_id=org_id)
        return org

    async def _load_subscription(self, org_id: str) -> tuple[Organization, OrganizationSubscription]:
        org = await self._load(org_id)
        if org.subscription is None:
            raise SubscriptionNotFoundError(
                f"Organization {org_id} has no subscription", org_id=org_id
            )
        return org, org.subscription

    def _require_live(self, org_id: str, sub: OrganizationSubscription, action: str) -> str:
        if not sub.is_live or sub.external_subscription_id is None:
            raise SubscriptionStateError(
                f"Organization {org_id} has no live subscription to {action}",
                current_state=sub.status.value,
                requested_state=action,
            )
        return sub.external_subscription_id

    def _selected(self, features: Iterable[str | Capability]) -> frozenset[Capability]:
        selected = parse_features(features)
        if not selected:
            raise InvalidFeatureError("No billable features selected")
        return selected

    async def _write(
        self, org_id: str, mutate: Callable[[OrganizationSubscription], None]
    ) -> OrganizationSubscription:
        def apply(org: Organization) -> bool:
            if org.subscription is None:
                raise SubscriptionNotFoundError(
                    f"Organization {org_id} has no subscription", org_id=org_id
                )
            mutate(org.subscription)
            return True

        org = await update_organization_with_retry(
            self.store,
            org_id,
            apply,
            attempts=self.config.subscription.update_retry_attempts,
        )
        return self._recorded(org)

    @staticmethod
    def _recorded(org: Organization) -> OrganizationSubscription:
        if org.subscription is None:
            raise SubscriptionNotFoundError(
                f"Organization {org.id} has no subscription", org_id=org.id
            )
        return org.subscription

    @staticmethod
    def _stamp(sub: OrganizationSubscription, confirmed_at: datetime) -> None:
        # Events older than a confirmed local change must not undo it
        if sub.external_updated_at is None or sub.external_updated_at < confirmed_at:
            sub.external_updated_at = confirmed_at

    @asynccontextmanager
    async def _processor_call(self, org_id: str, action: str) -> AsyncIterator[None]:
        try:
            yield
        except PaymentProcessorError as exc:
            logger.warning(
                "subscription.processor_call_failed",
                org_id=org_id,
                action=action,
                operation=exc.context.get("operation"),
                error=exc.message,
            )
            raise PaymentSetupError(
                f"Could not {action} subscription for organization {org_id}: {exc.message}",
                org_id=org_id,
                operation=exc.context.get("operation"),
            ) from exc

    # ==================== Queries ====================

    async def get_subscription(self, org_id: str) -> SubscriptionSummary:
        """Read the organization's stored subscription."""
        org, _ = await self._load_subscription(org_id)
        return SubscriptionSummary.from_organization(org)

    # ==================== Create / change ====================

    async def create_subscription(
        self,
        org_id: str,
        features: Iterable[str | Capability],
        *,
        billing_email: str | None = None,
        trial_days: int | None = None,
    ) -> OrganizationSubscription:
        """
        Create a processor subscription for the selected features.

        Args:
            org_id: Organization to subscribe
            features: Capability keys; must be non-empty and known
            billing_email: Overrides the stored billing email
            trial_days: Overrides the configured default trial length

        Returns:
            The stored subscription

        Raises:
            InvalidFeatureError: Empty or unknown feature selection
            SubscriptionStateError: A live subscription already exists
            PaymentSetupError: The processor rejected the customer or subscription
        """
        selected = self._selected(features)
        quote = self.engine.compute_quote(selected)
        org = await self._load(org_id)
        existing = org.subscription

        if existing is not None and existing.is_live:
            raise SubscriptionStateError(
                f"Organization {org_id} already has a live subscription",
                current_state=existing.status.value,
                requested_state=SubscriptionStatus.INCOMPLETE.value,
            )

        email = (
            billing_email
            or (existing.billing_email if existing else None)
            or org.primary_contact.email
        )
        if trial_days is None:
            trial_days = self.config.subscription.default_trial_days
        items = _items_for(quote)

        async with self._processor_call(org_id, "set up"):
            customer = await self.adapter.create_or_update_customer(
                CustomerDetails(
                    org_id=org.id,
                    name=org.name,
                    email=email,
                    phone=org.primary_contact.phone,
                    existing_customer_id=existing.external_customer_id if existing else None,
                )
            )
            external = await self.adapter.create_subscription(
                customer.id, org.id, items, trial_days=trial_days
            )

        def record(org: Organization) -> bool:
            previous = org.subscription
            sub = OrganizationSubscription(
                plan=items.description,
                features=list(quote.features),
                external_customer_id=customer.id,
                external_subscription_id=external.id,
                billing_email=email,
                setup_total=quote.setup_total,
                monthly_total=quote.monthly_total,
                setup_paid=False,
                payment_url=external.payment_url,
                current_period_start=external.current_period_start,
                current_period_end=external.current_period_end,
                cancel_at_period_end=external.cancel_at_period_end,
                trial_start=external.trial_start,
                trial_end=external.trial_end,
            )
            if (
                previous is not None
                and previous.external_subscription_id == external.id
                and previous.external_updated_at is not None
            ):
                # A webhook for this subscription was already applied; keep its state
                sub.set_status(previous.status)
                sub.setup_paid = previous.setup_paid
                sub.current_period_start = previous.current_period_start
                sub.current_period_end = previous.current_period_end
                sub.external_updated_at = previous.external_updated_at
                if sub.setup_paid:
                    sub.payment_url = None
            elif external.status == SubscriptionStatus.TRIALING.value:
                sub.set_status(SubscriptionStatus.TRIALING)
            else:
                sub.set_status(SubscriptionStatus.INCOMPLETE)
            org.subscription = sub
            return True

        recorded = self._recorded(
            await update_organization_with_retry(
                self.store, org_id, record, attempts=self.config.subscription.update_retry_attempts
            )
        )

        logger.info(
            "subscription.created",
            org_id=org_id,
            subscription_id=external.id,
            features=[f.value for f in quote.features],
            setup_total=quote.setup_total,
            monthly_total=quote.monthly_total,
            status=recorded.status.value,
        )
        log_audit_event(
            "subscription.created",
            category="billing",
            org_id=org_id,
            resource_type="subscription",
            resource_id=external.id,
            plan=items.description,
        )
        return recorded

    async def change_features(
        self, org_id: str, new_features: Iterable[str | Capability]
    ) -> OrganizationSubscription:
        """
        Move an organization to a new feature set.

        A live subscription is updated in place with prorated monthly pricing
        and any additional setup charged once. Without one, a new subscription
        is created.
        """
        selected = self._selected(new_features)
        org = await self._load(org_id)
        sub = org.subscription

        if sub is None or not sub.is_live:
            return await self.create_subscription(org_id, selected)

        if frozenset(sub.features) == selected:
            logger.debug("subscription.features_unchanged", org_id=org_id)
            return sub

        quote = self.engine.compute_quote(selected)
        items = _items_for(quote)
        additional_setup = max(0, quote.setup_total - sub.setup_total)
        subscription_id = self._require_live(org_id, sub, "change")

        async with self._processor_call(org_id, "change"):
            external = await self.adapter.update_subscription(
                subscription_id,
                items,
                prorate=self.config.subscription.proration_enabled,
                additional_setup_cents=additional_setup,
            )

        def apply(sub: OrganizationSubscription) -> None:
            if sub.external_subscription_id != subscription_id:
                raise SubscriptionStateError(
                    f"Subscription for organization {org_id} changed during update",
                    current_state=sub.status.value,
                    requested_state="change",
                )
            sub.features = list(quote.features)
            sub.plan = items.description
            sub.setup_total = quote.setup_total
            sub.monthly_total = quote.monthly_total
            if additional_setup > 0:
                sub.setup_paid = False
            if external.current_period_end is not None:
                sub.current_period_end = external.current_period_end

        updated = await self._write(org_id, apply)

        logger.info(
            "subscription.features_changed",
            org_id=org_id,
            subscription_id=subscription_id,
            features=[f.value for f in quote.features],
            additional_setup=additional_setup,
            monthly_total=quote.monthly_total,
        )
        log_audit_event(
            "subscription.features_changed",
            category="billing",
            org_id=org_id,
            resource_type="subscription",
            resource_id=subscription_id,
            plan=items.description,
        )
        return updated

    # ==================== Cancel / reactivate ====================

    async def cancel(self, org_id: str, immediate: bool = False) -> OrganizationSubscription:
        """
        Cancel the organization's subscription.

        Immediate cancellation ends service now; otherwise the subscription
        runs until the end of the current period. Processor events older than
        the confirmed cancellation are ignored afterwards.
        """
        _, sub = await self._load_subscription(org_id)
        subscription_id = self._require_live(org_id, sub, "cancel")

        async with self._processor_call(org_id, "cancel"):
            external = await self.adapter.cancel_subscription(subscription_id, immediate=immediate)
        confirmed_at = self._clock()

        def apply(sub: OrganizationSubscription) -> None:
            if immediate:
                sub.set_status(SubscriptionStatus.CANCELED)
                sub.canceled_at = external.canceled_at or confirmed_at
                sub.cancel_at_period_end = False
                self._stamp(sub, max(sub.canceled_at, confirmed_at))
            else:
                sub.cancel_at_period_end = True
                if external.current_period_end is not None:
                    sub.current_period_end = external.current_period_end
                self._stamp(sub, confirmed_at)

        updated = await self._write(org_id, apply)

        logger.info(
            "subscription.canceled",
            org_id=org_id,
            subscription_id=subscription_id,
            immediate=immediate,
        )
        log_audit_event(
            "subscription.canceled",
            category="billing",
            org_id=org_id,
            resource_type="subscription",
            resource_id=subscription_id,
            immediate=immediate,
        )
        return updated

    async def reactivate(self, org_id: str) -> OrganizationSubscription:
        """
        Undo a pending cancellation.

        Raises:
            NotReactivatableError: No pending cancellation, or the period has ended
            PaymentSetupError: The processor did not accept the change
        """
        _, sub = await self._load_subscription(org_id)
        now = self._clock()

        if (
            not sub.cancel_at_period_end
            or sub.external_subscription_id is None
            or sub.current_period_end is None
            or now >= sub.current_period_end
        ):
            raise NotReactivatableError(
                f"Subscription for organization {org_id} cannot be reactivated",
                org_id=org_id,
                current_period_end=(
                    sub.current_period_end.isoformat() if sub.current_period_end else None
                ),
            )
        subscription_id = sub.external_subscription_id

        async with self._processor_call(org_id, "reactivate"):
            await self.adapter.update_subscription(subscription_id, cancel_at_period_end=False)
        confirmed_at = self._clock()

        def apply(sub: OrganizationSubscription) -> None:
            sub.cancel_at_period_end = False
            if sub.status == SubscriptionStatus.CANCELED and can_transition(
                sub.status, SubscriptionStatus.ACTIVE, reactivating=True
            ):
                sub.set_status(SubscriptionStatus.ACTIVE)
                sub.canceled_at = None
            self._stamp(sub, confirmed_at)

        updated = await self._write(org_id, apply)

        logger.info("subscription.reactivated", org_id=org_id, subscription_id=subscription_id)
        log_audit_event(
            "subscription.reactivated",
            category="billing",
            org_id=org_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        return updated

    # ==================== Pause / resume ====================

    async def pause(self, org_id: str) -> OrganizationSubscription:
        """Pause collection for the organization's subscription."""
        _, sub = await self._load_subscription(org_id)
        subscription_id = self._require_live(org_id, sub, "pause")
        if sub.status == SubscriptionStatus.PAUSED:
            return sub
        if not can_transition(sub.status, SubscriptionStatus.PAUSED):
            raise SubscriptionStateError(
                f"Cannot pause subscription in status {sub.status.value}",
                current_state=sub.status.value,
                requested_state=SubscriptionStatus.PAUSED.value,
            )

        async with self._processor_call(org_id, "pause"):
            await self.adapter.pause_subscription(subscription_id)
        confirmed_at = self._clock()

        updated = await self._write(
            org_id, lambda sub: self._transition(sub, SubscriptionStatus.PAUSED, confirmed_at)
        )
        logger.info("subscription.paused", org_id=org_id, subscription_id=subscription_id)
        log_audit_event(
            "subscription.paused",
            category="billing",
            org_id=org_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        return updated

    async def resume(self, org_id: str) -> OrganizationSubscription:
        """Resume a paused subscription."""
        _, sub = await self._load_subscription(org_id)
        if sub.status != SubscriptionStatus.PAUSED or sub.external_subscription_id is None:
            raise SubscriptionStateError(
                f"Subscription for organization {org_id} is not paused",
                current_state=sub.status.value,
                requested_state=SubscriptionStatus.ACTIVE.value,
            )
        subscription_id = sub.external_subscription_id

        async with self._processor_call(org_id, "resume"):
            external = await self.adapter.resume_subscription(subscription_id)
        confirmed_at = self._clock()

        updated = await self._write(
            org_id, lambda sub: self._transition(sub, SubscriptionStatus.ACTIVE, confirmed_at)
        )
        logger.info(
            "subscription.resumed",
            org_id=org_id,
            subscription_id=subscription_id,
            processor_status=external.status,
        )
        log_audit_event(
            "subscription.resumed",
            category="billing",
            org_id=org_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        return updated

    def _transition(
        self, sub: OrganizationSubscription, target: SubscriptionStatus, confirmed_at: datetime
    ) -> None:
        if not can_transition(sub.status, target):
            raise SubscriptionStateError(
                f"Cannot move subscription from {sub.status.value} to {target.value}",
                current_state=sub.status.value,
                requested_state=target.value,
            )
        sub.set_status(target)
        self._stamp(sub, confirmed_at)
