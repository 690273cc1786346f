"""SQLAlchemy ORM models for Wicket Guest Checkout.

All models are exported from this module for convenient imports:
    from guest_checkout.models import Order, OrderItem, OrderMeta

- order.py: Order, OrderItem, OrderNote (host shop orders)
- order_meta.py: OrderMeta (per-order key/value metadata)
"""

from guest_checkout.models.base import Base, TimestampMixin
from guest_checkout.models.order import (
    ITEM_TYPES,
    ORDER_STATUSES,
    Order,
    OrderItem,
    OrderNote,
)
from guest_checkout.models.order_meta import OrderMeta

__all__ = [
    "ITEM_TYPES",
    "ORDER_STATUSES",
    "Base",
    "Order",
    "OrderItem",
    "OrderMeta",
    "OrderNote",
    "TimestampMixin",
]
