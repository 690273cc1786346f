"""Schemas for the guest payment admin endpoints and the guest-facing pages."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from guest_checkout.services.guest_cart import GuestCart, build_cart
from guest_checkout.services.payment_lifecycle import GeneratedLink, LinkStatus
from guest_checkout.services.receipts import IssuedReceipt, ReceiptAccess


# =============================================================================
# Admin
# =============================================================================


class TokenRecordView(BaseModel):
    """Stored token state, without the fingerprint or sealed token."""

    status: str
    guest_email: str
    generation_method: str
    issued_at: datetime
    expires_at: datetime


class GuestPaymentStatus(BaseModel):
    """Admin view of an order's guest payment link.

    Attributes:
        order_id: Order number.
        order_status: Current order status.
        can_generate: Whether a new link may be issued for the order.
        token: Stored token state, None if a link was never issued.
        link: The live link while the token is active.
        receipt_link: Receipt page while receipt access lasts.
        nonces: Nonce per AJAX action, scoped to this order.
    """

    order_id: int
    order_status: str
    can_generate: bool
    token: TokenRecordView | None
    link: str | None
    receipt_link: str | None = None
    nonces: dict[str, str]

    @classmethod
    def from_status(
        cls,
        status: LinkStatus,
        *,
        can_generate: bool,
        nonces: dict[str, str],
        receipt: IssuedReceipt | None = None,
    ) -> "GuestPaymentStatus":
        record = status.record
        return cls(
            order_id=status.order.id,
            order_status=status.order.status,
            can_generate=can_generate,
            token=(
                TokenRecordView(
                    status=record.status.value,
                    guest_email=record.guest_email,
                    generation_method=record.generation_method.value,
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                )
                if record is not None
                else None
            ),
            link=status.current.link if status.current is not None else None,
            receipt_link=receipt.link if receipt is not None else None,
            nonces=nonces,
        )


class PaymentCompletion(BaseModel):
    """Result of the payment-complete hook.

    Attributes:
        order_id: Order number.
        token_consumed: Whether an active payment link was used up.
        receipt_link: Receipt page for the payer, None for orders that never
            had a guest payment link.
        receipt_expires_at: End of receipt access.
    """

    order_id: int
    token_consumed: bool
    receipt_link: str | None = None
    receipt_expires_at: datetime | None = None


class InvoicePaymentMessage(BaseModel):
    """Invoice snippet pointing a third party at the guest payment link."""

    order_id: int
    link: str
    expires_at: datetime
    message: str

    @classmethod
    def from_link(cls, link: GeneratedLink, message: str) -> "InvoicePaymentMessage":
        return cls(
            order_id=link.order_id,
            link=link.link,
            expires_at=link.expires_at,
            message=message,
        )


# =============================================================================
# Storefront
# =============================================================================


class CartItemView(BaseModel):
    """One ``.cart_item`` row."""

    product_id: int
    variation_id: int | None
    name: str
    quantity: int
    unit_price: str
    line_total: str


class CartView(BaseModel):
    """Cart as rendered on the cart and checkout pages."""

    order_id: int | None
    currency: str
    items: list[CartItemView]
    item_count: int
    subtotal: str

    @classmethod
    def from_cart(cls, cart: GuestCart) -> "CartView":
        return cls(
            order_id=cart.order_id,
            currency=cart.currency,
            items=[
                CartItemView(
                    product_id=line.product_id,
                    variation_id=line.variation_id,
                    name=line.name,
                    quantity=line.quantity,
                    unit_price=f"{line.unit_price:.2f}",
                    line_total=f"{line.line_total:.2f}",
                )
                for line in cart.lines
            ],
            item_count=cart.item_count,
            subtotal=f"{cart.subtotal:.2f}",
        )


class Notice(BaseModel):
    """Front-end banner."""

    type: Literal["error", "success"]
    code: str
    message: str


class StorefrontPage(BaseModel):
    """JSON rendition of a storefront page.

    Attributes:
        page: ``home``, ``cart`` or ``checkout``.
        guest_payment_error: Error code from the query string, preserved
            for the banner.
        notices: Banners to show.
        cart: Cart contents (empty for anonymous visitors).
        guest_order_id: Order the visitor is paying, when in a guest session.
    """

    page: str
    guest_payment_error: str | None = None
    notices: list[Notice] = []
    cart: CartView
    guest_order_id: int | None = None


class ReceiptPage(BaseModel):
    """JSON rendition of the guest receipt page.

    Attributes:
        order_id: Order number.
        order_status: Current order status.
        paid_at: When receipt access was granted, i.e. payment completion.
        total: Amount paid.
        currency: ISO 4217 code.
        cart: Purchased lines.
        billing_email: Billing address e-mail on the order.
        guest_email: Payer address on file.
        access_expires_at: End of receipt access.
    """

    page: Literal["receipt"] = "receipt"
    order_id: int
    order_status: str
    paid_at: datetime
    total: str
    currency: str
    cart: CartView
    billing_email: str | None
    guest_email: str
    access_expires_at: datetime

    @classmethod
    def from_access(cls, access: ReceiptAccess) -> "ReceiptPage":
        order = access.order
        return cls(
            order_id=order.id,
            order_status=order.status,
            paid_at=access.receipt.issued_at,
            total=f"{order.total:.2f}",
            currency=order.currency,
            cart=CartView.from_cart(build_cart(order)),
            billing_email=order.billing_email,
            guest_email=access.receipt.guest_email,
            access_expires_at=access.receipt.expires_at,
        )
