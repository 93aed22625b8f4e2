"""
Stripe webhook verification and translation.

Turns a signed Stripe webhook body into a ``ReconciliationEvent``. All
processor-specific field names stay in this module.
"""

import json
from datetime import datetime
from typing import Any

import stripe
import structlog

from ownly.platform.billing.adapters.stripe_adapter import from_timestamp, subscription_period
from ownly.platform.billing.exceptions import WebhookError
from ownly.platform.billing.webhooks.models import (
    KNOWN_EVENT_TYPES,
    ReconciliationEvent,
    UnrecognizedEvent,
    parse_reconciliation_event,
)

logger = structlog.get_logger(__name__)


def verify_and_parse(payload: bytes | str, signature: str | None, secret: str) -> dict[str, Any]:
    """
    Verify a webhook signature and return the event body as plain dicts.

    Raises:
        WebhookError: Missing or invalid signature, or a malformed body
    """
    if not signature:
        raise WebhookError("Missing Stripe-Signature header", provider="stripe")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
        return json.loads(payload)
    except stripe.SignatureVerificationError as exc:
        logger.warning("webhook.signature_invalid", error=str(exc))
        raise WebhookError("Invalid webhook signature", provider="stripe") from exc
    except ValueError as exc:
        logger.warning("webhook.payload_invalid", error=str(exc))
        raise WebhookError("Invalid webhook payload", provider="stripe") from exc


def _id(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _metadata(obj: Any) -> Any:
    return obj.get("metadata") or {}


def _customer_payload(obj: Any) -> dict[str, Any]:
    return {
        "customer_id": obj["id"],
        "org_id": _metadata(obj).get("orgId"),
        "email": obj.get("email"),
        "name": obj.get("name"),
    }


def _subscription_payload(obj: Any) -> dict[str, Any]:
    return {
        "subscription_id": obj["id"],
        "customer_id": _id(obj.get("customer")),
        "org_id": _metadata(obj).get("orgId"),
        "status": obj.get("status") or "",
        "paused": bool(obj.get("pause_collection")),
        "current_period_start": from_timestamp(subscription_period(obj, "current_period_start")),
        "current_period_end": from_timestamp(subscription_period(obj, "current_period_end")),
        "cancel_at_period_end": bool(obj.get("cancel_at_period_end")),
        "canceled_at": from_timestamp(obj.get("canceled_at")),
        "trial_start": from_timestamp(obj.get("trial_start")),
        "trial_end": from_timestamp(obj.get("trial_end")),
    }


def _invoice_subscription(obj: Any) -> tuple[str | None, dict[str, Any]]:
    """Subscription id and metadata, from either the legacy or the ``parent`` layout."""
    details = (obj.get("parent") or {}).get("subscription_details") or obj.get(
        "subscription_details"
    )
    if details:
        return _id(details.get("subscription")), details.get("metadata") or {}
    return _id(obj.get("subscription")), {}


def _invoice_line(line: Any) -> dict[str, Any]:
    quantity = line.get("quantity") or 1
    price = line.get("price") or (line.get("pricing") or {}).get("price_details") or {}
    unit_amount = line.get("unit_amount_excluding_tax") or price.get("unit_amount")
    return {
        "description": line.get("description") or "",
        "quantity": quantity,
        "amount_cents": line.get("amount") or 0,
        "unit_amount_cents": int(unit_amount) if unit_amount is not None else None,
        "is_setup": _metadata(line).get("kind") == "setup",
    }


def _invoice_payload(obj: Any) -> dict[str, Any]:
    subscription_id, subscription_metadata = _invoice_subscription(obj)
    metadata = _metadata(obj)
    lines = (obj.get("lines") or {}).get("data") or []
    paid_at = (obj.get("status_transitions") or {}).get("paid_at")
    return {
        "invoice_id": obj["id"],
        "org_id": metadata.get("orgId") or subscription_metadata.get("orgId"),
        "local_invoice_id": metadata.get("localInvoiceId"),
        "customer_id": _id(obj.get("customer")),
        "subscription_id": subscription_id,
        "payment_intent_id": _id(obj.get("payment_intent")),
        "billing_reason": obj.get("billing_reason"),
        "number": obj.get("number"),
        "description": obj.get("description"),
        "subtotal_cents": obj.get("subtotal") or 0,
        "tax_cents": obj.get("tax") or 0,
        "total_cents": obj.get("total") or 0,
        "amount_paid_cents": obj.get("amount_paid") or 0,
        "lines": [_invoice_line(line) for line in lines],
        "created_at": from_timestamp(obj.get("created")),
        "due_date": from_timestamp(obj.get("due_date")),
        "paid_at": from_timestamp(paid_at),
        "hosted_invoice_url": obj.get("hosted_invoice_url"),
    }


def _payment_intent_payload(obj: Any) -> dict[str, Any]:
    error = obj.get("last_payment_error") or {}
    return {
        "payment_intent_id": obj["id"],
        "invoice_id": _id(obj.get("invoice")) or _metadata(obj).get("invoiceId"),
        "amount_cents": obj.get("amount") or 0,
        "failure_message": error.get("message"),
    }


def _checkout_session_payload(obj: Any) -> dict[str, Any]:
    metadata = _metadata(obj)
    return {
        "session_id": obj["id"],
        "mode": obj.get("mode") or "payment",
        "payment_status": obj.get("payment_status") or "unpaid",
        "org_id": metadata.get("orgId"),
        "local_invoice_id": metadata.get("localInvoiceId"),
        "customer_id": _id(obj.get("customer")),
        "payment_intent_id": _id(obj.get("payment_intent")),
        "amount_total_cents": obj.get("amount_total") or 0,
    }


_PAYLOAD_BUILDERS = {
    "customer": _customer_payload,
    "customer.subscription": _subscription_payload,
    "invoice": _invoice_payload,
    "payment_intent": _payment_intent_payload,
    "checkout.session": _checkout_session_payload,
}


def _payload_builder(event_type: str):
    prefix = event_type.rsplit(".", 1)[0]
    return _PAYLOAD_BUILDERS[prefix]


def from_stripe_event(
    event: Any, received_at: datetime | None = None
) -> ReconciliationEvent | UnrecognizedEvent:
    """Translate a Stripe event object (or its dict form) into a reconciliation event."""
    event_type = event["type"]
    obj = event["data"]["object"]
    data: dict[str, Any] = {
        "external_event_id": event["id"],
        "type": event_type,
        "occurred_at": from_timestamp(event.get("created")),
    }
    if received_at is not None:
        data["received_at"] = received_at

    if event_type in KNOWN_EVENT_TYPES:
        data["payload"] = _payload_builder(event_type)(obj)
    else:
        data["payload"] = {"object_id": _id(obj)}

    return parse_reconciliation_event(data)
