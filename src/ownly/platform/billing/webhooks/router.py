"""
Payment processor webhook endpoint.

Verifies the Stripe signature, normalizes the event and hands it to the
reconciler. Failures other than a bad signature return 5xx so the processor
redelivers.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ownly.platform.billing.config import BillingConfig
from ownly.platform.billing.dependencies import get_billing_store, get_config, get_invoice_generator
from ownly.platform.billing.exceptions import BillingError, WebhookError
from ownly.platform.billing.invoicing.service import InvoiceGenerator
from ownly.platform.billing.store.base import BillingStore
from ownly.platform.billing.webhooks.reconciler import PaymentEventReconciler
from ownly.platform.billing.webhooks.stripe_events import from_stripe_event, verify_and_parse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["Billing Webhooks"])


def get_reconciler(
    store: Annotated[BillingStore, Depends(get_billing_store)],
    invoices: Annotated[InvoiceGenerator, Depends(get_invoice_generator)],
    config: Annotated[BillingConfig, Depends(get_config)],
) -> PaymentEventReconciler:
    """Dependency to get a PaymentEventReconciler instance."""
    return PaymentEventReconciler(store, invoices, config=config)


@router.post("/stripe")
async def receive_stripe_webhook(
    request: Request,
    config: Annotated[BillingConfig, Depends(get_config)],
    reconciler: Annotated[PaymentEventReconciler, Depends(get_reconciler)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> dict[str, Any]:
    """Receive a Stripe webhook delivery."""
    if config.stripe is None or not config.stripe.webhook_secret:
        logger.error("webhook.secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured",
        )

    body = await request.body()
    try:
        stripe_event = verify_and_parse(body, stripe_signature, config.stripe.webhook_secret)
    except WebhookError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    event = from_stripe_event(stripe_event)
    try:
        with structlog.contextvars.bound_contextvars(
            event_id=event.external_event_id, event_type=event.type
        ):
            outcome = await reconciler.apply(event)
    except BillingError as e:
        logger.error(
            "webhook.processing_failed",
            event_id=event.external_event_id,
            event_type=event.type,
            error=e.message,
            error_code=e.error_code,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook",
        )

    return {"received": True, "event_id": event.external_event_id, "outcome": outcome.value}
