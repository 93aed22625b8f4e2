"""
Tests for the subscription lifecycle service.

The payment processor adapter is an AsyncMock; local state lives in the
in-memory store.
"""

from datetime import UTC, datetime

import pytest

from ownly.platform.billing.adapters.base import SubscriptionItems
from ownly.platform.billing.exceptions import (
    InvalidFeatureError,
    NotReactivatableError,
    OrganizationNotFoundError,
    PaymentProcessorError,
    PaymentSetupError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from ownly.platform.billing.pricing.models import Capability
from ownly.platform.billing.subscriptions.models import (
    OrganizationSubscription,
    SubscriptionStatus,
)
from ownly.platform.billing.webhooks.models import parse_reconciliation_event
from ownly.platform.billing.webhooks.reconciler import ReconciliationOutcome

pytestmark = pytest.mark.unit

ELEVEN = datetime(2026, 3, 15, 11, 0, tzinfo=UTC)
ELEVEN_THIRTY = datetime(2026, 3, 15, 11, 30, tzinfo=UTC)
TWELVE_O_FIVE = datetime(2026, 3, 15, 12, 5, tzinfo=UTC)
TWELVE_THIRTY = datetime(2026, 3, 15, 12, 30, tzinfo=UTC)


async def _set_status(store, org_id: str, status: SubscriptionStatus) -> None:
    org = await store.get_organization(org_id)
    org.subscription.set_status(status)
    await store.update_organization(org, expected_version=org.version)


def _subscription_event(event_id: str, occurred_at: datetime, status: str, **payload):
    return parse_reconciliation_event(
        {
            "external_event_id": event_id,
            "type": "customer.subscription.updated",
            "occurred_at": occurred_at,
            "payload": {
                "subscription_id": "sub_123",
                "customer_id": "cus_123",
                "org_id": "org_1",
                "status": status,
                **payload,
            },
        }
    )


class TestCreateSubscription:
    async def test_creates_processor_subscription_and_records_ids(
        self, lifecycle, adapter, store, organization
    ):
        sub = await lifecycle.create_subscription("org_1", ["website", "email"])

        customer = adapter.create_or_update_customer.await_args.args[0]
        assert customer.org_id == "org_1"
        assert customer.email == "ada@acme.test"
        assert customer.existing_customer_id is None

        adapter.create_subscription.assert_awaited_once_with(
            "cus_123",
            "org_1",
            SubscriptionItems(
                setup_cents=630_000,
                monthly_cents=16_500,
                features=(Capability.WEBSITE, Capability.EMAIL),
                description="Website + Email",
            ),
            trial_days=0,
        )

        assert sub.external_customer_id == "cus_123"
        assert sub.external_subscription_id == "sub_123"
        assert sub.plan == "Website + Email"
        assert sub.features == [Capability.WEBSITE, Capability.EMAIL]
        assert sub.setup_total == 630_000
        assert sub.monthly_total == 16_500
        assert sub.setup_paid is False
        assert sub.status == SubscriptionStatus.INCOMPLETE
        assert sub.active is False

        stored = await store.get_organization("org_1")
        assert stored.subscription == sub
        assert stored.version == 1

    async def test_trialing_when_processor_reports_trial(
        self, lifecycle, adapter, organization, external_subscription
    ):
        adapter.create_subscription.return_value = external_subscription("trialing")

        sub = await lifecycle.create_subscription("org_1", ["ai"], trial_days=14)

        assert adapter.create_subscription.await_args.kwargs["trial_days"] == 14
        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.active is True

    async def test_billing_email_override(self, lifecycle, adapter, organization):
        sub = await lifecycle.create_subscription(
            "org_1", ["ai"], billing_email="accounts@acme.test"
        )

        assert adapter.create_or_update_customer.await_args.args[0].email == "accounts@acme.test"
        assert sub.billing_email == "accounts@acme.test"

    @pytest.mark.parametrize("features", [[], ["blockchain"]])
    async def test_invalid_features_rejected_before_processor(
        self, lifecycle, adapter, organization, features
    ):
        with pytest.raises(InvalidFeatureError):
            await lifecycle.create_subscription("org_1", features)

        adapter.create_or_update_customer.assert_not_awaited()
        adapter.create_subscription.assert_not_awaited()

    async def test_processor_failure_leaves_local_state_untouched(
        self, lifecycle, adapter, store, organization
    ):
        adapter.create_subscription.side_effect = PaymentProcessorError(
            "card declined", operation="subscription.create", provider="stripe"
        )

        with pytest.raises(PaymentSetupError) as exc_info:
            await lifecycle.create_subscription("org_1", ["website"])

        assert exc_info.value.context == {
            "org_id": "org_1",
            "operation": "subscription.create",
        }
        stored = await store.get_organization("org_1")
        assert stored.subscription is None
        assert stored.version == 0

    async def test_refuses_second_live_subscription(self, lifecycle, adapter, organization):
        await lifecycle.create_subscription("org_1", ["website"])

        with pytest.raises(SubscriptionStateError):
            await lifecycle.create_subscription("org_1", ["ai"])

        assert adapter.create_subscription.await_count == 1

    async def test_records_payment_page_for_first_invoice(
        self, lifecycle, adapter, organization, external_subscription
    ):
        adapter.create_subscription.return_value = external_subscription(
            "incomplete", payment_url="https://pay.example.test/in_first"
        )

        sub = await lifecycle.create_subscription("org_1", ["website"])
        summary = await lifecycle.get_subscription("org_1")

        assert sub.payment_url == "https://pay.example.test/in_first"
        assert summary.payment_url == "https://pay.example.test/in_first"

    async def test_unknown_organization(self, lifecycle):
        with pytest.raises(OrganizationNotFoundError):
            await lifecycle.create_subscription("nope", ["website"])

    async def test_keeps_status_from_webhook_applied_during_setup(
        self, lifecycle, adapter, store, organization, reconciler, external_subscription
    ):
        # Previous subscription already canceled
        org = await store.get_organization("org_1")
        org.subscription = OrganizationSubscription(
            billing_email="ada@acme.test",
            external_customer_id="cus_123",
            external_subscription_id="sub_old",
            status=SubscriptionStatus.CANCELED,
        )
        await store.update_organization(org, expected_version=0)

        async def create_and_race(*args, **kwargs):
            event = parse_reconciliation_event(
                {
                    "external_event_id": "evt_race",
                    "type": "customer.subscription.updated",
                    "occurred_at": datetime(2026, 3, 15, 12, 0, 5, tzinfo=UTC),
                    "payload": {
                        "subscription_id": "sub_123",
                        "customer_id": "cus_123",
                        "org_id": "org_1",
                        "status": "active",
                    },
                }
            )
            await reconciler.apply(event)
            return external_subscription("incomplete")

        adapter.create_subscription.side_effect = create_and_race

        sub = await lifecycle.create_subscription("org_1", ["website"])

        assert sub.external_subscription_id == "sub_123"
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.setup_total == 600_000


class TestChangeFeatures:
    async def test_updates_in_place_with_proration(self, lifecycle, adapter, store, organization):
        await lifecycle.create_subscription("org_1", ["website"])

        sub = await lifecycle.change_features("org_1", ["website", "ai", "web-app"])

        adapter.create_subscription.assert_awaited_once()
        call = adapter.update_subscription.await_args
        assert call.args[0] == "sub_123"
        assert call.kwargs["prorate"] is True
        # 600000 -> 600000 + 1320000 + 330000
        assert call.kwargs["additional_setup_cents"] == 1_650_000
        assert call.args[1].monthly_cents == 15_000 + 40_000 + 15_000

        assert sub.external_subscription_id == "sub_123"
        assert sub.setup_total == 2_250_000
        assert sub.monthly_total == 70_000
        assert sub.plan == "Website + Web App + AI Assistant"

    async def test_downgrade_charges_no_additional_setup(self, lifecycle, adapter, organization):
        await lifecycle.create_subscription("org_1", ["website", "ai"])

        await lifecycle.change_features("org_1", ["website"])

        assert adapter.update_subscription.await_args.kwargs["additional_setup_cents"] == 0

    async def test_unchanged_features_is_noop(self, lifecycle, adapter, organization):
        await lifecycle.create_subscription("org_1", ["website", "ai"])

        await lifecycle.change_features("org_1", ["ai", "website"])

        adapter.update_subscription.assert_not_awaited()

    async def test_without_subscription_creates_one(self, lifecycle, adapter, organization):
        sub = await lifecycle.change_features("org_1", ["email"])

        adapter.create_subscription.assert_awaited_once()
        adapter.update_subscription.assert_not_awaited()
        assert sub.features == [Capability.EMAIL]

    async def test_processor_failure_keeps_stored_totals(
        self, lifecycle, adapter, store, organization
    ):
        await lifecycle.create_subscription("org_1", ["website"])
        adapter.update_subscription.side_effect = PaymentProcessorError("timeout")

        with pytest.raises(PaymentSetupError):
            await lifecycle.change_features("org_1", ["website", "ai"])

        stored = (await store.get_organization("org_1")).subscription
        assert stored.features == [Capability.WEBSITE]
        assert stored.setup_total == 600_000

    async def test_empty_features_rejected(self, lifecycle, organization):
        await lifecycle.create_subscription("org_1", ["website"])

        with pytest.raises(InvalidFeatureError):
            await lifecycle.change_features("org_1", [])


class TestCancelAndReactivate:
    async def test_deferred_cancel_then_reactivate(self, lifecycle, adapter, store, organization):
        await lifecycle.create_subscription("org_1", ["website"])
        await _set_status(store, "org_1", SubscriptionStatus.ACTIVE)

        canceled = await lifecycle.cancel("org_1", immediate=False)
        assert canceled.cancel_at_period_end is True
        assert canceled.status == SubscriptionStatus.ACTIVE
        adapter.cancel_subscription.assert_awaited_once_with("sub_123", immediate=False)

        reactivated = await lifecycle.reactivate("org_1")

        adapter.update_subscription.assert_awaited_once_with(
            "sub_123", cancel_at_period_end=False
        )
        assert reactivated.cancel_at_period_end is False
        assert reactivated.status == SubscriptionStatus.ACTIVE

    async def test_reactivate_after_period_end_raises(
        self, lifecycle, adapter, organization, clock, period_end
    ):
        await lifecycle.create_subscription("org_1", ["website"])
        await lifecycle.cancel("org_1", immediate=False)
        clock.now = period_end

        with pytest.raises(NotReactivatableError):
            await lifecycle.reactivate("org_1")

        adapter.update_subscription.assert_not_awaited()

    async def test_reactivate_without_pending_cancel_raises(self, lifecycle, organization):
        await lifecycle.create_subscription("org_1", ["website"])

        with pytest.raises(NotReactivatableError):
            await lifecycle.reactivate("org_1")

    async def test_immediate_cancel(
        self, lifecycle, adapter, store, organization, clock, external_subscription
    ):
        await lifecycle.create_subscription("org_1", ["website"])
        await _set_status(store, "org_1", SubscriptionStatus.ACTIVE)
        adapter.cancel_subscription.return_value = external_subscription("canceled")

        sub = await lifecycle.cancel("org_1", immediate=True)

        adapter.cancel_subscription.assert_awaited_once_with("sub_123", immediate=True)
        assert sub.status == SubscriptionStatus.CANCELED
        assert sub.active is False
        assert sub.canceled_at == clock.now

    async def test_cancel_requires_live_subscription(self, lifecycle, adapter, organization):
        with pytest.raises(SubscriptionNotFoundError):
            await lifecycle.cancel("org_1")

        await lifecycle.create_subscription("org_1", ["website"])
        await lifecycle.cancel("org_1", immediate=True)

        with pytest.raises(SubscriptionStateError):
            await lifecycle.cancel("org_1")

    async def test_cancel_processor_failure_is_wrapped(
        self, lifecycle, adapter, store, organization
    ):
        await lifecycle.create_subscription("org_1", ["website"])
        adapter.cancel_subscription.side_effect = PaymentProcessorError(
            "down", operation="subscription.cancel", provider="stripe"
        )

        with pytest.raises(PaymentSetupError) as exc_info:
            await lifecycle.cancel("org_1", immediate=True)

        assert exc_info.value.context == {"org_id": "org_1", "operation": "subscription.cancel"}
        stored = (await store.get_organization("org_1")).subscription
        assert stored.status == SubscriptionStatus.INCOMPLETE

    async def test_reactivate_processor_failure_is_wrapped(
        self, lifecycle, adapter, store, organization
    ):
        await lifecycle.create_subscription("org_1", ["website"])
        await lifecycle.cancel("org_1", immediate=False)
        adapter.update_subscription.side_effect = PaymentProcessorError("down")

        with pytest.raises(PaymentSetupError):
            await lifecycle.reactivate("org_1")

        stored = (await store.get_organization("org_1")).subscription
        assert stored.cancel_at_period_end is True


class TestDelayedEventsAfterCancel:
    """A confirmed cancel is not undone by processor events that predate it."""

    async def _active_since_eleven(self, lifecycle, reconciler, organization):
        await lifecycle.create_subscription("org_1", ["website"])
        outcome = await reconciler.apply(_subscription_event("evt_1", ELEVEN, "active"))
        assert outcome == ReconciliationOutcome.APPLIED

    async def test_immediate_cancel_survives_older_active_event(
        self, lifecycle, adapter, reconciler, store, organization, clock, external_subscription
    ):
        await self._active_since_eleven(lifecycle, reconciler, organization)
        adapter.cancel_subscription.return_value = external_subscription("canceled")

        canceled = await lifecycle.cancel("org_1", immediate=True)
        assert canceled.external_updated_at == clock.now

        outcome = await reconciler.apply(_subscription_event("evt_2", ELEVEN_THIRTY, "active"))

        assert outcome == ReconciliationOutcome.STALE
        stored = (await store.get_organization("org_1")).subscription
        assert stored.status == SubscriptionStatus.CANCELED
        assert stored.active is False

    async def test_newer_active_event_cannot_revive_canceled_subscription(
        self, lifecycle, adapter, reconciler, store, organization, external_subscription
    ):
        await self._active_since_eleven(lifecycle, reconciler, organization)
        adapter.cancel_subscription.return_value = external_subscription("canceled")
        await lifecycle.cancel("org_1", immediate=True)

        await reconciler.apply(_subscription_event("evt_2", TWELVE_THIRTY, "active"))

        stored = (await store.get_organization("org_1")).subscription
        assert stored.status == SubscriptionStatus.CANCELED

    async def test_deferred_cancel_survives_older_event(
        self, lifecycle, reconciler, store, organization, clock
    ):
        await self._active_since_eleven(lifecycle, reconciler, organization)

        canceled = await lifecycle.cancel("org_1", immediate=False)
        assert canceled.external_updated_at == clock.now

        outcome = await reconciler.apply(
            _subscription_event("evt_2", ELEVEN_THIRTY, "active", cancel_at_period_end=False)
        )

        assert outcome == ReconciliationOutcome.STALE
        stored = (await store.get_organization("org_1")).subscription
        assert stored.cancel_at_period_end is True
        assert stored.status == SubscriptionStatus.ACTIVE

    async def test_reactivation_survives_older_cancel_event(
        self, lifecycle, reconciler, store, organization, clock
    ):
        await self._active_since_eleven(lifecycle, reconciler, organization)
        await lifecycle.cancel("org_1", immediate=False)
        clock.advance(minutes=10)
        await lifecycle.reactivate("org_1")

        outcome = await reconciler.apply(
            _subscription_event("evt_2", TWELVE_O_FIVE, "active", cancel_at_period_end=True)
        )

        assert outcome == ReconciliationOutcome.STALE
        stored = (await store.get_organization("org_1")).subscription
        assert stored.cancel_at_period_end is False


class TestPauseResume:
    async def test_pause_and_resume(self, lifecycle, adapter, store, organization):
        await lifecycle.create_subscription("org_1", ["website"])
        await _set_status(store, "org_1", SubscriptionStatus.ACTIVE)

        paused = await lifecycle.pause("org_1")
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.active is False
        adapter.pause_subscription.assert_awaited_once_with("sub_123")

        resumed = await lifecycle.resume("org_1")
        assert resumed.status == SubscriptionStatus.ACTIVE
        adapter.resume_subscription.assert_awaited_once_with("sub_123")

    @pytest.mark.parametrize(
        ("action", "adapter_method", "status"),
        [
            ("pause", "pause_subscription", SubscriptionStatus.ACTIVE),
            ("resume", "resume_subscription", SubscriptionStatus.PAUSED),
        ],
    )
    async def test_processor_failure_is_wrapped(
        self, lifecycle, adapter, store, organization, action, adapter_method, status
    ):
        await lifecycle.create_subscription("org_1", ["website"])
        await _set_status(store, "org_1", status)
        getattr(adapter, adapter_method).side_effect = PaymentProcessorError("down")

        with pytest.raises(PaymentSetupError) as exc_info:
            await getattr(lifecycle, action)("org_1")

        assert exc_info.value.context["org_id"] == "org_1"
        stored = (await store.get_organization("org_1")).subscription
        assert stored.status == status

    async def test_pause_stamps_confirmation_time(self, lifecycle, store, organization, clock):
        await lifecycle.create_subscription("org_1", ["website"])
        await _set_status(store, "org_1", SubscriptionStatus.ACTIVE)

        paused = await lifecycle.pause("org_1")

        assert paused.external_updated_at == clock.now

    async def test_resume_requires_paused(self, lifecycle, organization):
        await lifecycle.create_subscription("org_1", ["website"])

        with pytest.raises(SubscriptionStateError):
            await lifecycle.resume("org_1")


class TestGetSubscription:
    async def test_summary(self, lifecycle, organization, period_end):
        await lifecycle.create_subscription("org_1", ["website"])

        summary = await lifecycle.get_subscription("org_1")

        assert summary.org_id == "org_1"
        assert summary.plan == "Website"
        assert summary.next_billing_date == period_end

    async def test_missing_subscription(self, lifecycle, organization):
        with pytest.raises(SubscriptionNotFoundError):
            await lifecycle.get_subscription("org_1")
