"""Receipt access for guest payers.

Once a guest payment completes, the order gets a receipt token with its own
expiry, thirty days by default. The receipt link shows the paid order without
a guest session, and admins can e-mail it to the payer.

Receipt tokens use the payment token codec but are checked against the
receipt fingerprint, so a payment link never opens a receipt and a receipt
link never opens a cart.
"""

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

import structlog

from guest_checkout.core.errors import ForbiddenError
from guest_checkout.models.order import Order
from guest_checkout.services.payment_lifecycle import (
    PAID_ORDER_STATUSES,
    Mailer,
    OrderSource,
    normalize_email,
)
from guest_checkout.services.token_codec import PaymentToken, TokenCodec
from guest_checkout.services.token_errors import (
    DecodeError,
    DecodeErrorKind,
    MailDeliveryFailedError,
    NoReceiptError,
    OrderNotFoundError,
    TokenValidationError,
    ValidationFailure,
)
from guest_checkout.services.token_store import (
    Clock,
    ReceiptRecord,
    TokenStore,
    utcnow,
)

logger = structlog.get_logger()

RECEIPT_QUERY_PARAM = "token"
DEFAULT_RECEIPT_TTL = timedelta(days=30)


class ReceiptAccessDeniedError(ForbiddenError):
    """Receipt token missing, invalid or expired (403)."""

    def __init__(self) -> None:
        super().__init__("Invalid or expired receipt access link.")


@dataclass(frozen=True)
class ReceiptPolicy:
    """Where receipt links point and how long they work."""

    link_base_url: str
    ttl: timedelta = DEFAULT_RECEIPT_TTL


@dataclass(frozen=True)
class IssuedReceipt:
    """A receipt link and the token behind it.

    Attributes:
        order_id: Paid order.
        token: Encoded receipt token.
        link: Full guest-facing URL.
        guest_email: Payer address on file (may be empty).
        expires_at: End of receipt access.
    """

    order_id: int
    token: str
    link: str
    guest_email: str
    expires_at: datetime


@dataclass(frozen=True)
class ReceiptAccess:
    """What an accepted receipt token opens."""

    order: Order
    receipt: ReceiptRecord


@dataclass(frozen=True)
class ReceiptDelivery:
    """A receipt e-mail that went out."""

    receipt: IssuedReceipt
    to_email: str


class ReceiptService:
    """Issue, open and e-mail guest payment receipts."""

    def __init__(
        self,
        *,
        codec: TokenCodec,
        store: TokenStore,
        orders: OrderSource,
        mailer: Mailer,
        policy: ReceiptPolicy,
        clock: Clock = utcnow,
    ) -> None:
        self._codec = codec
        self._store = store
        self._orders = orders
        self._mailer = mailer
        self._policy = policy
        self._clock = clock

    def build_link(self, token: str) -> str:
        """Receipt URL carrying the token as a query parameter."""
        base = self._policy.link_base_url
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode({RECEIPT_QUERY_PARAM: token})}"

    async def issue(self, order_id: int) -> IssuedReceipt | None:
        """Payment-complete hook: grant receipt access for a paid guest order.

        An unexpired receipt is reused, so calling this again for the same
        order returns the same link.

        Returns:
            The receipt, or None when the order is not paid or never had a
            guest payment link.
        """
        order = await self._orders.get(order_id)
        if order is None or order.status not in PAID_ORDER_STATUSES:
            return None
        payment = await self._store.get(order_id)
        if payment is None:
            return None

        current = await self.current(order_id)
        if current is not None:
            return current

        payload = PaymentToken.issue(
            order_id, payment.guest_email, now=self._clock(), ttl=self._policy.ttl
        )
        token = self._codec.encode(payload)
        await self._store.put_receipt(
            ReceiptRecord(
                order_id=order_id,
                token_fingerprint=self._codec.fingerprint(token),
                issued_at=payload.issued_at,
                expires_at=payload.expires_at,
                guest_email=payment.guest_email,
                sealed_token=self._codec.seal(token),
            )
        )
        logger.info(
            "Guest receipt token issued",
            order_id=order_id,
            expires_at=payload.expires_at.isoformat(),
        )
        return IssuedReceipt(
            order_id=order_id,
            token=token,
            link=self.build_link(token),
            guest_email=payment.guest_email,
            expires_at=payload.expires_at,
        )

    async def current(self, order_id: int) -> IssuedReceipt | None:
        """The order's unexpired receipt link, None if there is none."""
        record = await self._store.get_receipt(order_id)
        if record is None or record.is_expired(self._clock()) or not record.sealed_token:
            return None
        try:
            token = self._codec.unseal(record.sealed_token)
        except DecodeError:
            logger.warning("Stored guest receipt token unreadable", order_id=order_id)
            return None
        if not hmac.compare_digest(self._codec.fingerprint(token), record.token_fingerprint):
            return None
        return IssuedReceipt(
            order_id=order_id,
            token=token,
            link=self.build_link(token),
            guest_email=record.guest_email,
            expires_at=record.expires_at,
        )

    async def open(self, token: str) -> ReceiptAccess:
        """Check a receipt token presented by a guest.

        Raises:
            TokenValidationError: The token does not open a receipt. As with
                payment links, the reason is only logged.
        """
        try:
            payload = self._codec.decode(token)
        except DecodeError as exc:
            reason = (
                ValidationFailure.MALFORMED
                if exc.kind is DecodeErrorKind.MALFORMED
                else ValidationFailure.TAMPERED
            )
            raise self._reject(reason) from exc

        record = await self._store.get_receipt(payload.order_id)
        if record is None:
            raise self._reject(ValidationFailure.NOT_ACTIVE, payload.order_id)
        if not hmac.compare_digest(self._codec.fingerprint(token), record.token_fingerprint):
            raise self._reject(ValidationFailure.FINGERPRINT_MISMATCH, payload.order_id)
        if record.is_expired(self._clock()):
            raise self._reject(ValidationFailure.EXPIRED, payload.order_id)

        order = await self._orders.get(payload.order_id)
        if order is None or order.status not in PAID_ORDER_STATUSES:
            raise self._reject(ValidationFailure.NOT_ACTIVE, payload.order_id)
        return ReceiptAccess(order=order, receipt=record)

    async def send(self, order_id: int, to_email: str | None = None) -> ReceiptDelivery:
        """E-mail the receipt link, issuing the receipt first if needed.

        Args:
            order_id: Paid order.
            to_email: Recipient; defaults to the payer, then the billing
                address.

        Raises:
            OrderNotFoundError: Order does not exist.
            NoReceiptError: The order is not a paid guest payment order.
            InvalidEmailError: No usable recipient address.
            MailDeliveryFailedError: The e-mail failed.
        """
        order = await self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        receipt = await self.issue(order_id)
        if receipt is None:
            raise NoReceiptError
        email = normalize_email(
            (to_email or "").strip() or receipt.guest_email or order.billing_email
        )

        delivered = await self._mailer.send_receipt(
            order=order, to_email=email, link=receipt.link, expires_at=receipt.expires_at
        )
        if not delivered:
            logger.warning("Guest receipt email failed", order_id=order_id)
            raise MailDeliveryFailedError(
                receipt.link,
                "Failed to send receipt. Please try again or contact support.",
            )

        await self._orders.add_note(order_id, f"Guest payment receipt sent to {email}.")
        logger.info("Guest receipt sent", order_id=order_id)
        return ReceiptDelivery(receipt=receipt, to_email=email)

    def _reject(
        self, reason: ValidationFailure, order_id: int | None = None
    ) -> TokenValidationError:
        logger.info("Guest receipt token rejected", reason=reason.value, order_id=order_id)
        return TokenValidationError(reason, order_id)
