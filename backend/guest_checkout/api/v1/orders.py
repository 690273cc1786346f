"""Order-level guest payment hooks.

Endpoints:
- POST /orders/{order_id}/payment-complete: payment gateway callback;
  consumes the guest payment token and grants receipt access
- GET /orders/{order_id}/invoice-payment-message: "someone else paying?"
  snippet for invoice e-mails
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from guest_checkout.api.deps import (
    DbSession,
    Lifecycle,
    Receipts,
    SettingsDep,
    require_admin,
)
from guest_checkout.core.email import build_invoice_payment_message
from guest_checkout.core.errors import NotFoundError
from guest_checkout.core.responses import DataResponse
from guest_checkout.schemas.guest_payment import InvoicePaymentMessage, PaymentCompletion

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/{order_id}/payment-complete")
async def payment_complete(
    order_id: int,
    lifecycle: Lifecycle,
    receipts: Receipts,
    db: DbSession,
) -> DataResponse[PaymentCompletion]:
    """Mark the order paid, make its payment link unusable and issue a receipt."""
    consumed = await lifecycle.complete_payment(order_id)
    receipt = await receipts.issue(order_id)
    await db.commit()
    return DataResponse(
        data=PaymentCompletion(
            order_id=order_id,
            token_consumed=consumed,
            receipt_link=receipt.link if receipt is not None else None,
            receipt_expires_at=receipt.expires_at if receipt is not None else None,
        )
    )


@router.get("/{order_id}/invoice-payment-message")
async def invoice_payment_message(
    order_id: int,
    lifecycle: Lifecycle,
    app_settings: SettingsDep,
    db: DbSession,
    plain_text: Annotated[bool, Query()] = False,
) -> DataResponse[InvoicePaymentMessage]:
    """Invoice snippet with a reused or freshly issued guest payment link.

    Only available when e-mail integration is enabled and the order can be
    paid by guest link.
    """
    if not app_settings.email_integration_enabled:
        raise NotFoundError("Invoice payment message")
    generated = await lifecycle.get_or_create_link(order_id)
    if generated is None:
        raise NotFoundError("Invoice payment message", str(order_id))
    await db.commit()
    return DataResponse(
        data=InvoicePaymentMessage.from_link(
            generated,
            build_invoice_payment_message(generated.link, plain_text=plain_text),
        )
    )
