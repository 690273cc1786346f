"""Guest session gate between anonymous storefront requests and checkout.

Per request: UNAUTHENTICATED → {AUTHORIZED, REJECTED}.

- A request carrying ``guest_payment_token`` is validated. Success opens a
  GuestSession for that one order and sends the visitor to the cart; failure
  opens nothing and sends the visitor to ``?guest_payment_error=<code>``.
- Without a live session the visitor gets the anonymous (empty) cart. Order
  contents are only ever shown through a live session.
- A session is live only while its fingerprint is still the order's ACTIVE
  token, so invalidating, superseding or paying kills it.
"""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

import structlog

from guest_checkout.core.errors import ForbiddenError
from guest_checkout.core.guest_session import GuestSession
from guest_checkout.models.order import Order
from guest_checkout.services.failed_attempts import FailedAttemptTracker
from guest_checkout.services.guest_cart import EMPTY_CART, GuestCart, build_cart
from guest_checkout.services.payment_lifecycle import (
    PAID_ORDER_STATUSES,
    OrderSource,
    TokenLifecycle,
)
from guest_checkout.services.token_errors import TokenValidationError

logger = structlog.get_logger()

ERROR_QUERY_PARAM = "guest_payment_error"
SUCCESS_QUERY_PARAM = "guest_payment_success"

ERROR_INVALID_TOKEN = "invalid_token"
ERROR_EXPIRED = "expired"
ERROR_RATE_LIMITED = "rate_limited"
ERROR_CART_PREP_FAILED = "cart_prep_failed"

# Banner text per error code. Every token failure is reported as
# invalid_token; ``expired`` is kept for links that still carry it.
ERROR_MESSAGES = {
    ERROR_INVALID_TOKEN: (
        "The payment link is invalid or has expired. Please request a new link."
    ),
    ERROR_EXPIRED: (
        "The payment link is invalid or has expired. Please request a new link."
    ),
    ERROR_RATE_LIMITED: "Too many failed attempts. Please try again later.",
    ERROR_CART_PREP_FAILED: (
        "Failed to prepare cart for payment. Please try again or contact support."
    ),
}
SUCCESS_MESSAGE = "Your payment has already been completed. Thank you!"


class GateDecision(str, Enum):
    """Result of presenting a token."""

    AUTHORIZED = "authorized"
    REJECTED = "rejected"


@dataclass(frozen=True)
class GateOutcome:
    """What the storefront should do after a token was presented.

    Attributes:
        decision: AUTHORIZED or REJECTED.
        redirect_to: Relative URL to send the visitor to.
        session: New guest session (AUTHORIZED only).
        error_code: Banner code (REJECTED only, None for already-paid orders).
    """

    decision: GateDecision
    redirect_to: str
    session: GuestSession | None = None
    error_code: str | None = None

    @property
    def authorized(self) -> bool:
        return self.decision is GateDecision.AUTHORIZED


class GuestCheckoutError(ForbiddenError):
    """Checkout attempted without a live session for a payable order (403)."""

    def __init__(self) -> None:
        super().__init__("Guest checkout is not available for this order.")


class GuestSessionGate:
    """Opens, checks and scopes guest sessions."""

    def __init__(
        self,
        *,
        lifecycle: TokenLifecycle,
        orders: OrderSource,
        attempts: FailedAttemptTracker,
        home_path: str = "/",
        cart_path: str = "/cart/",
    ) -> None:
        self._lifecycle = lifecycle
        self._orders = orders
        self._attempts = attempts
        self._home_path = home_path
        self._cart_path = cart_path

    def error_redirect(self, code: str) -> str:
        """URL that shows the error banner for ``code``."""
        return f"{self._home_path}?{urlencode({ERROR_QUERY_PARAM: code})}"

    async def enter(self, token: str, client_ip: str) -> GateOutcome:
        """Handle a request carrying a payment token.

        Presenting the same ACTIVE token again yields an equal session; the
        cart is derived from the order, so nothing is duplicated.

        Args:
            token: Value of ``guest_payment_token``.
            client_ip: Client address for failed-attempt tracking.

        Returns:
            GateOutcome telling the caller where to redirect and which
            session (if any) to store.
        """
        if self._attempts.is_locked(client_ip):
            logger.warning("Guest payment token attempt while locked out")
            return self._reject(ERROR_RATE_LIMITED)

        try:
            order_id = await self._lifecycle.validate(token)
        except TokenValidationError:
            failures = self._attempts.record_failure(client_ip)
            logger.info("Guest payment token attempt failed", failures=failures)
            return self._reject(ERROR_INVALID_TOKEN)

        order = await self._orders.get(order_id)
        if order is not None and order.status in PAID_ORDER_STATUSES:
            return GateOutcome(
                decision=GateDecision.REJECTED,
                redirect_to=f"{self._home_path}?{urlencode({SUCCESS_QUERY_PARAM: 1})}",
            )
        if order is None or order.status not in self._lifecycle.payable_statuses:
            logger.info("Guest payment order not payable", order_id=order_id)
            return self._reject(ERROR_INVALID_TOKEN)

        if build_cart(order).is_empty:
            logger.warning("Guest payment order has no cart lines", order_id=order_id)
            return self._reject(ERROR_CART_PREP_FAILED)

        self._attempts.reset(client_ip)
        session = GuestSession(
            authorized_order_id=order_id,
            token_fingerprint=self._lifecycle.fingerprint(token),
        )
        logger.info("Guest payment session authorized", order_id=order_id)
        return GateOutcome(
            decision=GateDecision.AUTHORIZED,
            redirect_to=self._cart_path,
            session=session,
        )

    async def resume(self, session: GuestSession | None) -> GuestSession | None:
        """Return the session if it is still backed by the ACTIVE token."""
        if session is None:
            return None
        if await self._lifecycle.is_current(
            session.authorized_order_id, session.token_fingerprint
        ):
            return session
        return None

    async def cart_for(self, session: GuestSession | None) -> GuestCart:
        """Cart for a resumed session; the empty anonymous cart otherwise."""
        if session is None:
            return EMPTY_CART
        order = await self._orders.get(session.authorized_order_id)
        if order is None:
            return EMPTY_CART
        return build_cart(order)

    async def authorize_checkout(self, session: GuestSession | None) -> Order:
        """Checkout guard.

        Records the guest cart's hash on the order so that the host checkout
        resumes this order.

        Raises:
            GuestCheckoutError: Unless the session is live and its order is
                still awaiting payment.
        """
        if session is None:
            raise GuestCheckoutError
        order = await self._orders.get(session.authorized_order_id)
        if order is None or order.status not in self._lifecycle.payable_statuses:
            raise GuestCheckoutError
        if not await self._lifecycle.is_current(order.id, session.token_fingerprint):
            raise GuestCheckoutError
        # Checkout pays this order instead of creating a new one
        cart_hash = build_cart(order).cart_hash()
        if order.cart_hash != cart_hash:
            await self._orders.set_cart_hash(order.id, cart_hash)
        return order

    def _reject(self, code: str) -> GateOutcome:
        return GateOutcome(
            decision=GateDecision.REJECTED,
            redirect_to=self.error_redirect(code),
            error_code=code,
        )
