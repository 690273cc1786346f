"""Guest cart built from an order's line items.

A guest never shops: the cart is a read-only projection of the order the
session is authorized for. It is rebuilt from the order on every request, so
following the payment link twice can never duplicate lines, and it never
mixes with any other cart state.
"""

import hashlib
import json
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import structlog

from guest_checkout.models.order import Order, OrderItem

logger = structlog.get_logger()

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class CartLine:
    """One purchasable line in the guest cart.

    Attributes:
        product_id: Product to charge for.
        variation_id: Selected variation for variable products.
        name: Display name from the order.
        quantity: Units, always positive.
        unit_price: Order line total divided by quantity.
    """

    product_id: int
    variation_id: int | None
    name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(_CENT, ROUND_HALF_UP)


@dataclass(frozen=True)
class GuestCart:
    """Cart contents shown to a visitor.

    Attributes:
        order_id: Order the cart was built from, None for anonymous visitors.
        currency: ISO 4217 code.
        lines: Cart lines in order item order.
    """

    order_id: int | None = None
    currency: str = "USD"
    lines: tuple[CartLine, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_total for line in self.lines), Decimal("0.00"))

    def cart_hash(self) -> str:
        """Stable hash of the cart contents, stored on the order when paid."""
        document = [
            [line.product_id, line.variation_id, line.quantity, str(line.unit_price)]
            for line in self.lines
        ]
        return hashlib.sha256(
            json.dumps(document, separators=(",", ":")).encode("utf-8")
        ).hexdigest()


EMPTY_CART = GuestCart()


def _cart_line(item: OrderItem) -> CartLine | None:
    if item.item_type != "line_item":
        return None
    if item.product_id is None:
        logger.warning(
            "Skipping order item without product", order_id=item.order_id, item_id=item.id
        )
        return None
    if item.requires_variation and not item.variation_id:
        logger.warning(
            "Skipping variable product without variation",
            order_id=item.order_id,
            item_id=item.id,
            product_id=item.product_id,
        )
        return None
    if item.quantity <= 0:
        return None
    unit_price = (Decimal(item.total) / item.quantity).quantize(_CENT, ROUND_HALF_UP)
    return CartLine(
        product_id=item.product_id,
        variation_id=item.variation_id,
        name=item.name,
        quantity=item.quantity,
        unit_price=unit_price,
    )


def build_cart(order: Order) -> GuestCart:
    """Project an order's product line items into a guest cart.

    Shipping, fee, tax and coupon rows are left to checkout totals. Items
    whose product is gone, and variable products without a variation, are
    skipped.

    Args:
        order: Order with items loaded.

    Returns:
        GuestCart for the order; empty if no line could be added.
    """
    lines = tuple(
        line for line in (_cart_line(item) for item in order.items) if line is not None
    )
    return GuestCart(order_id=order.id, currency=order.currency, lines=lines)
