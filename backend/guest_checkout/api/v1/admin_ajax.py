"""Admin AJAX endpoint for guest payment links.

The order screen's buttons post form-encoded ``action``, ``order_id``,
``nonce`` (and ``guest_email`` for generate-and-send and send-receipt).
Every answer is HTTP 200 with ``{"success": bool, "data": {"message": ...}}``;
the client shows the message and reloads the page two seconds after a
successful mutation.

Endpoints:
- POST /admin/ajax: run one of the link actions, or e-mail the receipt
- GET /admin/orders/{order_id}/guest-payment: link status and nonces
"""

from enum import Enum
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Form, Request

from guest_checkout.api.deps import (
    DbSession,
    Lifecycle,
    Receipts,
    SettingsDep,
    require_admin,
)
from guest_checkout.core.config import Settings, settings
from guest_checkout.core.nonces import create_nonce, verify_nonce
from guest_checkout.core.rate_limiting import limiter
from guest_checkout.core.responses import AjaxResponse, DataResponse
from guest_checkout.schemas.guest_payment import GuestPaymentStatus
from guest_checkout.services.payment_lifecycle import GeneratedLink, TokenLifecycle
from guest_checkout.services.receipts import ReceiptService
from guest_checkout.services.token_errors import LifecycleError, MailDeliveryFailedError

logger = structlog.get_logger()

router = APIRouter(dependencies=[Depends(require_admin)])


class AjaxAction(str, Enum):
    """Admin actions on an order's guest payment link."""

    GENERATE_AND_SEND = "wicket_generate_and_send_email"
    RESEND = "wicket_resend_email"
    INVALIDATE = "wicket_invalidate_link"
    GENERATE_MANUAL = "wicket_generate_manual"
    SEND_RECEIPT = "wicket_send_guest_receipt"


# Nonce action names, scoped per order.
_NONCE_ACTIONS = {
    AjaxAction.GENERATE_AND_SEND: "wicket_generate_send_ajax_{order_id}",
    AjaxAction.RESEND: "wicket_resend_email_{order_id}",
    AjaxAction.INVALIDATE: "wicket_invalidate_link_{order_id}",
    AjaxAction.GENERATE_MANUAL: "wicket_generate_manual_ajax_{order_id}",
    AjaxAction.SEND_RECEIPT: "wicket_send_receipt_{order_id}",
}

_SECURITY_CHECK_FAILED = "Security check failed."


def nonce_action(action: AjaxAction, order_id: int) -> str:
    """Nonce action name for an AJAX action on one order."""
    return _NONCE_ACTIONS[action].format(order_id=order_id)


def issue_nonces(order_id: int, app_settings: Settings) -> dict[str, str]:
    """Fresh nonces for every action on an order, keyed by action."""
    return {
        action.value: create_nonce(
            nonce_action(action, order_id),
            secret=app_settings.session_signing_key,
            lifetime_hours=app_settings.nonce_lifetime_hours,
        )
        for action in AjaxAction
    }


def _link_fields(generated: GeneratedLink) -> dict[str, str]:
    return {"link": generated.link, "expires_at": generated.expires_at.isoformat()}


# ===================================================================
# POST /admin/ajax
# ===================================================================


@router.post("/ajax")
@limiter.limit(lambda: settings.rate_limit_admin)
async def admin_ajax(
    request: Request,  # noqa: ARG001
    action: Annotated[AjaxAction, Form()],
    order_id: Annotated[int, Form()],
    lifecycle: Lifecycle,
    receipts: Receipts,
    app_settings: SettingsDep,
    db: DbSession,
    nonce: Annotated[str, Form()] = "",
    guest_email: Annotated[str, Form()] = "",
) -> AjaxResponse:
    """Run a guest payment link action for an order.

    Lifecycle errors become ``success: false`` with the error message. A
    mail failure still returns the stored link, which works if copied.
    """
    if not verify_nonce(
        nonce,
        nonce_action(action, order_id),
        secret=app_settings.session_signing_key,
    ):
        logger.warning("Admin AJAX nonce check failed", action=action.value, order_id=order_id)
        return AjaxResponse.fail(_SECURITY_CHECK_FAILED)

    try:
        response = await _dispatch(lifecycle, receipts, action, order_id, guest_email)
    except MailDeliveryFailedError as exc:
        await db.commit()
        return AjaxResponse(success=False, data={"message": exc.message, "link": exc.link})
    except LifecycleError as exc:
        await db.rollback()
        return AjaxResponse.fail(exc.message)

    await db.commit()
    return response


async def _dispatch(
    lifecycle: TokenLifecycle,
    receipts: ReceiptService,
    action: AjaxAction,
    order_id: int,
    guest_email: str,
) -> AjaxResponse:
    if action is AjaxAction.GENERATE_AND_SEND:
        generated = await lifecycle.generate(order_id, guest_email)
        return AjaxResponse.ok(
            f"Payment link generated and sent to {generated.guest_email}.",
            **_link_fields(generated),
        )

    if action is AjaxAction.RESEND:
        generated = await lifecycle.resend(order_id)
        return AjaxResponse.ok("Email sent successfully.", **_link_fields(generated))

    if action is AjaxAction.SEND_RECEIPT:
        delivery = await receipts.send(order_id, guest_email or None)
        return AjaxResponse.ok(
            f"Receipt has been sent to {delivery.to_email}.",
            receipt_link=delivery.receipt.link,
        )

    if action is AjaxAction.INVALIDATE:
        invalidated = await lifecycle.invalidate(order_id)
        return AjaxResponse.ok(
            "Payment link has been invalidated successfully.",
            invalidated=invalidated,
        )

    generated = await lifecycle.generate_manual(order_id, guest_email or None)
    return AjaxResponse.ok(
        "New payment link has been generated successfully.",
        **_link_fields(generated),
    )


# ===================================================================
# GET /admin/orders/{order_id}/guest-payment
# ===================================================================


@router.get("/orders/{order_id}/guest-payment")
async def get_guest_payment_status(
    order_id: int,
    lifecycle: Lifecycle,
    receipts: Receipts,
    app_settings: SettingsDep,
    db: DbSession,
) -> DataResponse[GuestPaymentStatus]:
    """Current link state for the order screen, with action nonces."""
    status = await lifecycle.describe(order_id)
    receipt = await receipts.current(order_id)
    # Reading may lazily mark an expired token.
    await db.commit()
    return DataResponse(
        data=GuestPaymentStatus.from_status(
            status,
            can_generate=lifecycle.is_payable(status.order),
            nonces=issue_nonces(order_id, app_settings),
            receipt=receipt,
        )
    )
