"""Storefront pages as seen by guests.

Pages render as JSON; the front-end theme draws the cart rows and banners.

Endpoints:
- GET /: home; accepts guest_payment_token and shows error banners
- GET /cart/: cart; order lines only for a live guest session
- GET /checkout/: checkout; guarded, anonymous visitors go back to the cart
- GET /receipt/: receipt for a paid guest order, opened by its receipt token
- POST /guest-session/end: drop the guest session cookie

Any page given ``guest_payment_token`` hands it to the gate and answers with
a 303 redirect: to the cart with a session cookie, or home with
``guest_payment_error``. While a guest session is live, home redirects to
the cart.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.util import get_remote_address

from guest_checkout.api.deps import (
    CookieGuestSession,
    DbSession,
    Gate,
    Receipts,
    SettingsDep,
)
from guest_checkout.core.config import Settings
from guest_checkout.core.guest_session import (
    GuestSession,
    clear_guest_session_cookie,
    set_guest_session_cookie,
)
from guest_checkout.schemas.guest_payment import (
    CartView,
    Notice,
    ReceiptPage,
    StorefrontPage,
)
from guest_checkout.services.guest_session_gate import (
    ERROR_INVALID_TOKEN,
    ERROR_MESSAGES,
    SUCCESS_MESSAGE,
    GuestCheckoutError,
    GuestSessionGate,
)
from guest_checkout.services.receipts import ReceiptAccessDeniedError
from guest_checkout.services.token_errors import TokenValidationError

logger = structlog.get_logger()

router = APIRouter(tags=["storefront"])

TokenParam = Annotated[str | None, Query(max_length=2048)]
ErrorParam = Annotated[str | None, Query(max_length=64)]
SuccessParam = Annotated[int | None, Query()]


def _notices(error_code: str | None, success: int | None) -> list[Notice]:
    notices = []
    if error_code in ERROR_MESSAGES:
        notices.append(
            Notice(type="error", code=error_code, message=ERROR_MESSAGES[error_code])
        )
    if success == 1:
        notices.append(
            Notice(type="success", code="guest_payment_success", message=SUCCESS_MESSAGE)
        )
    return notices


async def _enter(
    gate: GuestSessionGate, token: str, request: Request, app_settings: Settings
) -> Response:
    outcome = await gate.enter(token, get_remote_address(request))
    response = RedirectResponse(outcome.redirect_to, status_code=status.HTTP_303_SEE_OTHER)
    if outcome.authorized and outcome.session is not None:
        set_guest_session_cookie(response, outcome.session, app_settings)
    else:
        clear_guest_session_cookie(response, app_settings)
    # Keep the token out of Referer headers on the next page
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


def _redirect(url: str, app_settings: Settings, *, clear_session: bool) -> Response:
    response = RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)
    if clear_session:
        clear_guest_session_cookie(response, app_settings)
    return response


async def _render(
    page: str,
    *,
    gate: GuestSessionGate,
    cookie_session: GuestSession | None,
    session: GuestSession | None,
    app_settings: Settings,
    error_code: str | None,
    success: int | None,
) -> Response:
    cart = await gate.cart_for(session)
    body = StorefrontPage(
        page=page,
        guest_payment_error=error_code,
        notices=_notices(error_code, success),
        cart=CartView.from_cart(cart),
        guest_order_id=session.authorized_order_id if session is not None else None,
    )
    response = JSONResponse(content=body.model_dump(mode="json"))
    if cookie_session is not None and session is None:
        # Link was invalidated, superseded or paid since the cookie was set
        clear_guest_session_cookie(response, app_settings)
    return response


# ===================================================================
# GET /
# ===================================================================


@router.get("/")
async def home(
    request: Request,
    gate: Gate,
    cookie_session: CookieGuestSession,
    app_settings: SettingsDep,
    db: DbSession,
    guest_payment_token: TokenParam = None,
    guest_payment_error: ErrorParam = None,
    guest_payment_success: SuccessParam = None,
) -> Response:
    """Home page. Guests in a session are kept on cart and checkout."""
    if guest_payment_token:
        response = await _enter(gate, guest_payment_token, request, app_settings)
        await db.commit()
        return response

    session = await gate.resume(cookie_session)
    await db.commit()
    if session is not None:
        return _redirect(app_settings.cart_path, app_settings, clear_session=False)
    return await _render(
        "home",
        gate=gate,
        cookie_session=cookie_session,
        session=None,
        app_settings=app_settings,
        error_code=guest_payment_error,
        success=guest_payment_success,
    )


# ===================================================================
# GET /cart/
# ===================================================================


@router.get("/cart/")
async def cart(
    request: Request,
    gate: Gate,
    cookie_session: CookieGuestSession,
    app_settings: SettingsDep,
    db: DbSession,
    guest_payment_token: TokenParam = None,
    guest_payment_error: ErrorParam = None,
    guest_payment_success: SuccessParam = None,
) -> Response:
    """Cart page; payment links point here."""
    if guest_payment_token:
        response = await _enter(gate, guest_payment_token, request, app_settings)
        await db.commit()
        return response

    session = await gate.resume(cookie_session)
    response = await _render(
        "cart",
        gate=gate,
        cookie_session=cookie_session,
        session=session,
        app_settings=app_settings,
        error_code=guest_payment_error,
        success=guest_payment_success,
    )
    await db.commit()
    return response


# ===================================================================
# GET /checkout/
# ===================================================================


@router.get("/checkout/")
async def checkout(
    request: Request,
    gate: Gate,
    cookie_session: CookieGuestSession,
    app_settings: SettingsDep,
    db: DbSession,
    guest_payment_token: TokenParam = None,
    guest_payment_error: ErrorParam = None,
) -> Response:
    """Checkout page, only for a live guest session on a payable order."""
    if guest_payment_token:
        response = await _enter(gate, guest_payment_token, request, app_settings)
        await db.commit()
        return response

    session = await gate.resume(cookie_session)
    if session is None:
        await db.commit()
        # Nothing to pay for: anonymous visitors see their (empty) cart
        return _redirect(
            app_settings.cart_path,
            app_settings,
            clear_session=cookie_session is not None,
        )

    try:
        await gate.authorize_checkout(session)
    except GuestCheckoutError:
        await db.commit()
        logger.info(
            "Guest checkout blocked", order_id=session.authorized_order_id
        )
        return _redirect(
            gate.error_redirect(ERROR_INVALID_TOKEN), app_settings, clear_session=True
        )

    response = await _render(
        "checkout",
        gate=gate,
        cookie_session=cookie_session,
        session=session,
        app_settings=app_settings,
        error_code=guest_payment_error,
        success=None,
    )
    await db.commit()
    return response


# ===================================================================
# GET /receipt/
# ===================================================================


@router.get("/receipt/")
async def receipt(receipts: Receipts, token: TokenParam = None) -> Response:
    """Receipt page for a paid guest order.

    Raises:
        ReceiptAccessDeniedError: Token missing, invalid or expired.
    """
    if not token:
        raise ReceiptAccessDeniedError
    try:
        access = await receipts.open(token)
    except TokenValidationError as exc:
        raise ReceiptAccessDeniedError from exc
    response = JSONResponse(content=ReceiptPage.from_access(access).model_dump(mode="json"))
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


# ===================================================================
# POST /guest-session/end
# ===================================================================


@router.post("/guest-session/end", status_code=status.HTTP_204_NO_CONTENT)
async def end_guest_session(app_settings: SettingsDep) -> Response:
    """Forget the guest session on this browser."""
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    clear_guest_session_cookie(response, app_settings)
    return response
