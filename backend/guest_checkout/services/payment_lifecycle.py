"""Guest payment token lifecycle.

Orchestrates generate, resend, invalidate and validate for guest payment
links on top of a TokenCodec and a TokenStore, and records every admin
action as an order note.

Invariants:
- An order has at most one ACTIVE token. generate() overwrites the record,
  so a superseded token still decrypts but fails the fingerprint check.
- resend() never rotates the token; the copied link stays valid.
- A mail failure never rolls back the stored token.
- Guests never learn why a token was rejected; the reason is only logged.
"""

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol
from urllib.parse import urlencode

import structlog
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from guest_checkout.models.order import Order
from guest_checkout.services.token_codec import PaymentToken, TokenCodec
from guest_checkout.services.token_errors import (
    DecodeError,
    DecodeErrorKind,
    InvalidEmailError,
    MailDeliveryFailedError,
    NoActiveTokenError,
    OrderNotFoundError,
    OrderNotPayableError,
    TokenValidationError,
    ValidationFailure,
)
from guest_checkout.services.token_store import (
    Clock,
    GenerationMethod,
    OrderTokenRecord,
    TokenStatus,
    TokenStore,
    utcnow,
)

logger = structlog.get_logger()

TOKEN_QUERY_PARAM = "guest_payment_token"

# Status an order moves to once a guest payment completes.
PAID_ORDER_STATUS = "processing"

# Statuses of an order that has been paid.
PAID_ORDER_STATUSES = frozenset({"processing", "completed"})

_EMAIL_ADAPTER = TypeAdapter(EmailStr)

_CUSTOMER_REQUIRED_MESSAGE = (
    "This order must be assigned to a customer before generating a guest "
    "payment link. Please assign a customer to the order and save it first."
)


# =============================================================================
# Collaborators
# =============================================================================


class OrderSource(Protocol):
    """Host shop orders, as seen by the lifecycle."""

    async def get(self, order_id: int) -> Order | None:
        """Load an order with its line items."""
        ...

    async def set_status(self, order_id: int, status: str) -> None:
        """Change the order status."""
        ...

    async def add_note(self, order_id: int, content: str) -> None:
        """Append a private note to the order."""
        ...

    async def set_cart_hash(self, order_id: int, cart_hash: str) -> None:
        """Record the cart the order will be paid from."""
        ...


class Mailer(Protocol):
    """Delivers payment links and receipts to guests."""

    async def send_payment_link(
        self,
        *,
        order: Order,
        to_email: str,
        link: str,
        expires_at: datetime,
    ) -> bool:
        """Send the link; return False if delivery failed."""
        ...

    async def send_receipt(
        self,
        *,
        order: Order,
        to_email: str,
        link: str,
        expires_at: datetime,
    ) -> bool:
        """Send the receipt link; return False if delivery failed."""
        ...


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class TokenPolicy:
    """Policy values for issuing links.

    Attributes:
        link_base_url: Page the payment link points at (the cart).
        ttl: Token lifetime.
        payable_statuses: Order statuses a guest may pay from.
    """

    link_base_url: str
    ttl: timedelta
    payable_statuses: frozenset[str]


@dataclass(frozen=True)
class GeneratedLink:
    """A guest payment link and the token behind it.

    Attributes:
        order_id: Order the link pays for.
        token: Encoded token.
        link: Full guest-facing URL.
        guest_email: Recipient on file (may be empty for manual links).
        expires_at: Token expiry.
        generation_method: How the token was created.
    """

    order_id: int
    token: str
    link: str
    guest_email: str
    expires_at: datetime
    generation_method: GenerationMethod


@dataclass(frozen=True)
class LinkStatus:
    """Admin view of an order's guest payment state.

    Attributes:
        order: The order.
        record: Stored token record in any status, None if never issued.
        current: The live link while the token is ACTIVE and unexpired.
    """

    order: Order
    record: OrderTokenRecord | None
    current: GeneratedLink | None


def normalize_email(guest_email: str | None) -> str:
    """Validate and normalize a guest e-mail address.

    Raises:
        InvalidEmailError: If the address is empty or not syntactically valid.
    """
    candidate = (guest_email or "").strip()
    if not candidate:
        raise InvalidEmailError
    try:
        return str(_EMAIL_ADAPTER.validate_python(candidate))
    except PydanticValidationError as exc:
        raise InvalidEmailError from exc


# =============================================================================
# Lifecycle
# =============================================================================


class TokenLifecycle:
    """Generate, resend, invalidate and validate guest payment tokens.

    All collaborators are passed in; nothing is looked up globally, so tests
    can build an isolated lifecycle around in-memory stores.
    """

    def __init__(
        self,
        *,
        codec: TokenCodec,
        store: TokenStore,
        orders: OrderSource,
        mailer: Mailer,
        policy: TokenPolicy,
        clock: Clock = utcnow,
    ) -> None:
        self._codec = codec
        self._store = store
        self._orders = orders
        self._mailer = mailer
        self._policy = policy
        self._clock = clock

    @property
    def payable_statuses(self) -> frozenset[str]:
        return self._policy.payable_statuses

    def fingerprint(self, token: str) -> str:
        """Fingerprint of a token string, as stored on the order."""
        return self._codec.fingerprint(token)

    def build_link(self, token: str) -> str:
        """Guest-facing URL carrying the token as a query parameter."""
        base = self._policy.link_base_url
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode({TOKEN_QUERY_PARAM: token})}"

    # =========================================================================
    # Admin operations
    # =========================================================================

    async def generate(
        self,
        order_id: int,
        guest_email: str | None,
        *,
        method: GenerationMethod = GenerationMethod.EMAIL,
        send_email: bool = True,
    ) -> GeneratedLink:
        """Issue a new token for an order, superseding any previous one.

        Args:
            order_id: Order to pay.
            guest_email: Recipient. Required when sending; optional otherwise.
            method: Recorded generation method.
            send_email: Whether to e-mail the link.

        Returns:
            The new link.

        Raises:
            OrderNotFoundError: Order does not exist.
            InvalidEmailError: Address missing (when sending) or invalid.
            OrderNotPayableError: No customer assigned or status not payable.
            MailDeliveryFailedError: Link stored but the e-mail failed.
        """
        order = await self._get_order(order_id)
        if send_email or (guest_email or "").strip():
            email = normalize_email(guest_email)
        else:
            email = ""
        self._ensure_payable(order)

        generated = await self._issue(order, email, method)
        expires = f"{generated.expires_at:%Y-%m-%d %H:%M} UTC"

        if not send_email:
            await self._orders.add_note(
                order_id, f"Guest payment link generated (expires {expires})."
            )
            return generated

        delivered = await self._mailer.send_payment_link(
            order=order,
            to_email=email,
            link=generated.link,
            expires_at=generated.expires_at,
        )
        if not delivered:
            await self._orders.add_note(
                order_id,
                f"Guest payment link generated (expires {expires}) but the "
                f"email to {email} could not be sent.",
            )
            logger.warning("Guest payment link email failed", order_id=order_id)
            raise MailDeliveryFailedError(generated.link)

        await self._orders.add_note(
            order_id,
            f"Guest payment link generated and sent to {email} (expires {expires}).",
        )
        return generated

    async def generate_manual(
        self, order_id: int, guest_email: str | None = None
    ) -> GeneratedLink:
        """Issue a new token for manual sharing, without sending e-mail."""
        return await self.generate(
            order_id,
            guest_email,
            method=GenerationMethod.MANUAL,
            send_email=False,
        )

    async def resend(self, order_id: int) -> GeneratedLink:
        """E-mail the current link again without rotating the token.

        Keeps the original expiry.

        Raises:
            OrderNotFoundError: Order does not exist.
            NoActiveTokenError: No active, unexpired token with an e-mail.
            MailDeliveryFailedError: The e-mail failed.
        """
        order = await self._get_order(order_id)
        current = await self.current_link(order_id)
        if current is None or not current.guest_email:
            raise NoActiveTokenError

        delivered = await self._mailer.send_payment_link(
            order=order,
            to_email=current.guest_email,
            link=current.link,
            expires_at=current.expires_at,
        )
        if not delivered:
            logger.warning("Guest payment link resend failed", order_id=order_id)
            raise MailDeliveryFailedError(current.link)

        await self._orders.add_note(
            order_id, f"Guest payment link resent to {current.guest_email}."
        )
        logger.info("Guest payment link resent", order_id=order_id)
        return current

    async def invalidate(self, order_id: int) -> bool:
        """Invalidate the order's active token.

        Idempotent: returns False (and does nothing) when no token is active.

        Raises:
            OrderNotFoundError: Order does not exist.
        """
        await self._get_order(order_id)
        changed = await self._store.invalidate(order_id)
        if changed:
            await self._orders.add_note(order_id, "Guest payment link invalidated.")
            logger.info("Guest payment link invalidated", order_id=order_id)
        return changed

    async def current_link(self, order_id: int) -> GeneratedLink | None:
        """The live link for an order, for "copy link" and resend.

        Returns None when no token is active, or when the sealed token can no
        longer be opened (the key was rotated) or does not match the stored
        fingerprint.
        """
        record = await self._store.get_active(order_id)
        if record is None or not record.sealed_token:
            return None
        try:
            token = self._codec.unseal(record.sealed_token)
        except DecodeError:
            logger.warning("Stored guest payment token unreadable", order_id=order_id)
            return None
        if not hmac.compare_digest(self._codec.fingerprint(token), record.token_fingerprint):
            return None
        return GeneratedLink(
            order_id=order_id,
            token=token,
            link=self.build_link(token),
            guest_email=record.guest_email,
            expires_at=record.expires_at,
            generation_method=record.generation_method,
        )

    async def describe(self, order_id: int) -> LinkStatus:
        """Order, stored record and live link for the admin status view.

        Raises:
            OrderNotFoundError: Order does not exist.
        """
        order = await self._get_order(order_id)
        current = await self.current_link(order_id)
        record = await self._store.get(order_id)
        return LinkStatus(order=order, record=record, current=current)

    async def get_or_create_link(self, order_id: int) -> GeneratedLink | None:
        """Link for invoice e-mails: reuse the live one or issue one silently.

        A new token is issued to the billing address with method ``auto``.
        No e-mail is sent.

        Returns:
            The link, or None when the order cannot be paid by guest link.
        """
        current = await self.current_link(order_id)
        if current is not None:
            return current
        order = await self._orders.get(order_id)
        if order is None or not self.is_payable(order):
            return None
        try:
            email = normalize_email(order.billing_email)
        except InvalidEmailError:
            return None
        generated = await self._issue(order, email, GenerationMethod.AUTO)
        await self._orders.add_note(
            order_id, "Guest payment link generated automatically for invoice email."
        )
        return generated

    # =========================================================================
    # Guest operations
    # =========================================================================

    async def validate(self, token: str) -> int:
        """Check a token presented by a guest.

        Args:
            token: Token string from the payment link.

        Returns:
            The order id the token grants access to.

        Raises:
            TokenValidationError: With reason MALFORMED, TAMPERED, EXPIRED,
                NOT_ACTIVE or FINGERPRINT_MISMATCH.
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

        if payload.is_expired(self._clock()):
            raise self._reject(ValidationFailure.EXPIRED, payload.order_id)

        record = await self._store.get_active(payload.order_id)
        if record is None:
            stored = await self._store.get(payload.order_id)
            if stored is not None and stored.status is TokenStatus.EXPIRED:
                raise self._reject(ValidationFailure.EXPIRED, payload.order_id)
            raise self._reject(ValidationFailure.NOT_ACTIVE, payload.order_id)

        if not hmac.compare_digest(self._codec.fingerprint(token), record.token_fingerprint):
            raise self._reject(ValidationFailure.FINGERPRINT_MISMATCH, payload.order_id)

        return payload.order_id

    async def is_current(self, order_id: int, fingerprint: str) -> bool:
        """True while ``fingerprint`` belongs to the order's ACTIVE token."""
        record = await self._store.get_active(order_id)
        return record is not None and hmac.compare_digest(
            fingerprint, record.token_fingerprint
        )

    async def complete_payment(self, order_id: int) -> bool:
        """Payment-complete hook: consume the token and mark the order paid.

        Returns:
            True if an active token was consumed.

        Raises:
            OrderNotFoundError: Order does not exist.
        """
        order = await self._get_order(order_id)
        consumed = await self._store.mark_consumed(order_id)
        if order.status in self._policy.payable_statuses:
            await self._orders.set_status(order_id, PAID_ORDER_STATUS)
        if consumed:
            await self._orders.add_note(
                order_id,
                "Guest payment completed. The payment link is no longer valid.",
            )
            logger.info("Guest payment token consumed", order_id=order_id)
        return consumed

    # =========================================================================
    # Internals
    # =========================================================================

    async def _get_order(self, order_id: int) -> Order:
        order = await self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def is_payable(self, order: Order) -> bool:
        """True if a guest link may be issued for the order."""
        return (
            order.customer_id is not None
            and order.status in self._policy.payable_statuses
        )

    def _ensure_payable(self, order: Order) -> None:
        if order.customer_id is None:
            raise OrderNotPayableError(_CUSTOMER_REQUIRED_MESSAGE)
        if order.status not in self._policy.payable_statuses:
            raise OrderNotPayableError(
                "Guest payment links can only be generated for orders awaiting "
                f"payment. Current status: {order.status}."
            )

    async def _issue(
        self, order: Order, email: str, method: GenerationMethod
    ) -> GeneratedLink:
        payload = PaymentToken.issue(
            order.id, email, now=self._clock(), ttl=self._policy.ttl
        )
        token = self._codec.encode(payload)
        await self._store.put(
            OrderTokenRecord(
                order_id=order.id,
                token_fingerprint=self._codec.fingerprint(token),
                status=TokenStatus.ACTIVE,
                issued_at=payload.issued_at,
                expires_at=payload.expires_at,
                guest_email=email,
                generation_method=method,
                sealed_token=self._codec.seal(token),
            )
        )
        logger.info(
            "Guest payment token issued",
            order_id=order.id,
            method=method.value,
            expires_at=payload.expires_at.isoformat(),
        )
        return GeneratedLink(
            order_id=order.id,
            token=token,
            link=self.build_link(token),
            guest_email=email,
            expires_at=payload.expires_at,
            generation_method=method,
        )

    def _reject(
        self, reason: ValidationFailure, order_id: int | None = None
    ) -> TokenValidationError:
        logger.info(
            "Guest payment token rejected", reason=reason.value, order_id=order_id
        )
        return TokenValidationError(reason, order_id)
