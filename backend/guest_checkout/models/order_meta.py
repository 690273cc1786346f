"""Order metadata model - key/value pairs attached to an order.

The table is shared with the rest of the shop. Guest payment state lives
under the ``_wgp_guest_payment_`` key prefix and nothing else is touched.
"""

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from guest_checkout.models.base import Base


class OrderMeta(Base):
    """Single metadata entry for an order.

    Attributes:
        order_id: Owning order.
        meta_key: Key, unique per order.
        meta_value: Text value.
    """

    __tablename__ = "order_meta"
    __table_args__ = (
        UniqueConstraint("order_id", "meta_key", name="uq_order_meta_order_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False)
    meta_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
