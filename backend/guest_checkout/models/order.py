"""Order models - the shop orders guest payment links are issued for.

Orders, their line items and their notes are owned by the host shop. This
service reads orders and items, writes notes, and moves an order to
``processing`` once a guest payment completes.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from guest_checkout.models.base import Base, TimestampMixin

ORDER_STATUSES = (
    "pending",
    "failed",
    "on-hold",
    "processing",
    "completed",
    "cancelled",
    "refunded",
)

ITEM_TYPES = ("line_item", "shipping", "fee", "tax", "coupon")


class Order(Base, TimestampMixin):
    """Shop order.

    Attributes:
        id: Order number shown to customers.
        status: One of ORDER_STATUSES.
        customer_id: Registered customer the order belongs to. Guest links
            are only issued for orders with a customer.
        billing_email: Customer billing address e-mail.
        currency: ISO 4217 code.
        total: Grand total including tax and shipping.
        cart_hash: Hash of the cart the order was paid from.
    """

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'failed', 'on-hold', 'processing', "
            "'completed', 'cancelled', 'refunded')",
            name="ck_orders_status",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="pending"
    )
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billing_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, server_default="USD"
    )
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, server_default="0"
    )
    cart_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    notes: Mapped[list["OrderNote"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderNote.id",
    )


class OrderItem(Base):
    """Order line item.

    Only ``line_item`` rows with a product become guest cart lines.

    Attributes:
        item_type: One of ITEM_TYPES.
        product_id: Purchased product, None when the product was deleted.
        variation_id: Chosen variation for variable products.
        requires_variation: True for variable products, which cannot be
            added to a cart without a variation.
        quantity: Units ordered.
        total: Line total after discounts.
    """

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="line_item"
    )
    product_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    variation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requires_variation: Mapped[bool] = mapped_column(
        nullable=False, server_default="false"
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, server_default="0"
    )

    order: Mapped[Order] = relationship(back_populates="items")


class OrderNote(Base):
    """Private order note written by this service for the admin timeline."""

    __tablename__ = "order_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    order: Mapped[Order] = relationship(back_populates="notes")
