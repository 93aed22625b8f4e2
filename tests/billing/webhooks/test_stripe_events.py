"""Tests for Stripe webhook verification and event translation."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

import pytest

from ownly.platform.billing.exceptions import WebhookError
from ownly.platform.billing.webhooks.models import (
    CheckoutCompletedEvent,
    CustomerEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    PaymentIntentEvent,
    SubscriptionEvent,
    UnrecognizedEvent,
)
from ownly.platform.billing.webhooks.stripe_events import from_stripe_event, verify_and_parse

pytestmark = pytest.mark.unit

SECRET = "whsec_test"
CREATED = 1_773_576_000  # 2026-03-15 12:00:00 UTC
PERIOD_START = 1_772_323_200  # 2026-03-01
PERIOD_END = 1_775_001_600  # 2026-04-01


def sign(payload: str, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": CREATED,
        "data": {"object": obj},
    }


class TestVerifyAndParse:
    def test_valid_signature(self):
        body = json.dumps(stripe_event("customer.updated", {"id": "cus_1"}))

        event = verify_and_parse(body.encode(), sign(body), SECRET)

        assert event["id"] == "evt_1"
        assert event["data"]["object"]["id"] == "cus_1"

    def test_missing_signature(self):
        with pytest.raises(WebhookError, match="Missing"):
            verify_and_parse(b"{}", None, SECRET)

    def test_wrong_secret(self):
        body = json.dumps(stripe_event("customer.updated", {"id": "cus_1"}))

        with pytest.raises(WebhookError, match="signature"):
            verify_and_parse(body, sign(body, secret="whsec_other"), SECRET)

    def test_tampered_body(self):
        body = json.dumps(stripe_event("customer.updated", {"id": "cus_1"}))
        signature = sign(body)

        with pytest.raises(WebhookError):
            verify_and_parse(body.replace("cus_1", "cus_2"), signature, SECRET)


class TestFromStripeEvent:
    def test_event_envelope(self):
        received = datetime(2026, 3, 15, 12, 0, 3, tzinfo=UTC)

        event = from_stripe_event(
            stripe_event("customer.updated", {"id": "cus_1"}), received_at=received
        )

        assert event.external_event_id == "evt_1"
        assert event.occurred_at == datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
        assert event.received_at == received

    def test_customer(self):
        event = from_stripe_event(
            stripe_event(
                "customer.updated",
                {
                    "id": "cus_1",
                    "email": "billing@acme.test",
                    "name": "Acme",
                    "metadata": {"orgId": "org_1"},
                },
            )
        )

        assert isinstance(event, CustomerEvent)
        assert event.payload.customer_id == "cus_1"
        assert event.payload.org_id == "org_1"
        assert event.payload.email == "billing@acme.test"

    def test_subscription_with_item_periods(self):
        event = from_stripe_event(
            stripe_event(
                "customer.subscription.updated",
                {
                    "id": "sub_1",
                    "customer": "cus_1",
                    "status": "active",
                    "metadata": {"orgId": "org_1"},
                    "cancel_at_period_end": True,
                    "pause_collection": None,
                    "items": {
                        "data": [
                            {
                                "id": "si_1",
                                "current_period_start": PERIOD_START,
                                "current_period_end": PERIOD_END,
                            }
                        ]
                    },
                },
            )
        )

        assert isinstance(event, SubscriptionEvent)
        payload = event.payload
        assert payload.subscription_id == "sub_1"
        assert payload.customer_id == "cus_1"
        assert payload.org_id == "org_1"
        assert payload.status == "active"
        assert payload.paused is False
        assert payload.cancel_at_period_end is True
        assert payload.current_period_start == datetime(2026, 3, 1, tzinfo=UTC)
        assert payload.current_period_end == datetime(2026, 4, 1, tzinfo=UTC)

    def test_paused_subscription(self):
        event = from_stripe_event(
            stripe_event(
                "customer.subscription.updated",
                {
                    "id": "sub_1",
                    "customer": {"id": "cus_1"},
                    "status": "active",
                    "pause_collection": {"behavior": "void"},
                },
            )
        )

        assert event.payload.paused is True
        assert event.payload.customer_id == "cus_1"

    def test_subscription_invoice_with_setup_line(self):
        event = from_stripe_event(
            stripe_event(
                "invoice.paid",
                {
                    "id": "in_1",
                    "customer": "cus_1",
                    "number": "ACME-0003",
                    "billing_reason": "subscription_create",
                    "parent": {
                        "subscription_details": {
                            "subscription": "sub_1",
                            "metadata": {"orgId": "org_1"},
                        }
                    },
                    "subtotal": 615_000,
                    "total": 615_000,
                    "amount_paid": 615_000,
                    "created": CREATED,
                    "status_transitions": {"paid_at": CREATED},
                    "lines": {
                        "data": [
                            {
                                "description": "Website - Monthly Subscription",
                                "amount": 15_000,
                                "quantity": 1,
                                "metadata": {},
                            },
                            {
                                "description": "Website - Setup Fee",
                                "amount": 600_000,
                                "quantity": 1,
                                "metadata": {"kind": "setup"},
                            },
                        ]
                    },
                },
            )
        )

        assert isinstance(event, InvoicePaidEvent)
        payload = event.payload
        assert payload.invoice_id == "in_1"
        assert payload.subscription_id == "sub_1"
        assert payload.org_id == "org_1"
        assert payload.total_cents == 615_000
        assert payload.paid_at == datetime(2026, 3, 15, 12, 0, tzinfo=UTC)
        assert payload.includes_setup is True
        assert [line.amount_cents for line in payload.lines] == [15_000, 600_000]

    def test_one_time_invoice_failure(self):
        event = from_stripe_event(
            stripe_event(
                "invoice.payment_failed",
                {
                    "id": "in_2",
                    "customer": "cus_1",
                    "subscription": None,
                    "metadata": {"orgId": "org_1", "localInvoiceId": "inv_abc"},
                    "total": 100_000,
                },
            )
        )

        assert isinstance(event, InvoicePaymentFailedEvent)
        assert event.payload.subscription_id is None
        assert event.payload.local_invoice_id == "inv_abc"
        assert event.payload.includes_setup is False

    def test_payment_intent_failure(self):
        event = from_stripe_event(
            stripe_event(
                "payment_intent.payment_failed",
                {
                    "id": "pi_1",
                    "amount": 100_000,
                    "metadata": {"invoiceId": "in_2"},
                    "last_payment_error": {"message": "Your card was declined."},
                },
            )
        )

        assert isinstance(event, PaymentIntentEvent)
        assert event.payload.invoice_id == "in_2"
        assert event.payload.failure_message == "Your card was declined."

    def test_checkout_session_completed(self):
        event = from_stripe_event(
            stripe_event(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "mode": "payment",
                    "payment_status": "paid",
                    "customer": "cus_1",
                    "payment_intent": "pi_7",
                    "amount_total": 90_000,
                    "metadata": {"orgId": "org_1", "localInvoiceId": "inv_1"},
                },
            )
        )

        assert isinstance(event, CheckoutCompletedEvent)
        assert event.payload.session_id == "cs_1"
        assert event.payload.payment_status == "paid"
        assert event.payload.local_invoice_id == "inv_1"
        assert event.payload.org_id == "org_1"
        assert event.payload.payment_intent_id == "pi_7"
        assert event.payload.amount_total_cents == 90_000

    def test_unknown_type(self):
        event = from_stripe_event(stripe_event("charge.refunded", {"id": "ch_1"}))

        assert isinstance(event, UnrecognizedEvent)
        assert event.type == "charge.refunded"
        assert event.payload == {"object_id": "ch_1"}
