"""
Public invoice payment endpoint.

Customers arrive with the invoice number printed on their invoice and are
sent to a page where it can be paid. Billing errors are rendered by the
application's error handler.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ownly.platform.billing.dependencies import get_invoice_generator
from ownly.platform.billing.invoicing.models import InvoicePaymentLink
from ownly.platform.billing.invoicing.service import InvoiceGenerator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing/public/invoices", tags=["Invoice Payments"])


class InvoicePaymentRequest(BaseModel):
    invoice_number: str = Field(min_length=1, max_length=64)


@router.post("/pay", response_model=InvoicePaymentLink)
async def pay_invoice(
    request: InvoicePaymentRequest,
    invoices: Annotated[InvoiceGenerator, Depends(get_invoice_generator)],
) -> InvoicePaymentLink:
    """Return where the customer can pay the invoice with this number."""
    link = await invoices.create_payment_link(request.invoice_number.strip())
    logger.info(
        "invoice.payment_link_issued",
        invoice_id=link.invoice_id,
        checkout=link.checkout_session_id is not None,
    )
    return link
