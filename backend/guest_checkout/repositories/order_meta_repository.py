"""Repository for order metadata owned by the guest payment service.

The order_meta table is shared with the rest of the shop, so writes are
restricted to keys under OWNED_KEY_PREFIX.
"""

from collections.abc import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from guest_checkout.models.order_meta import OrderMeta

OWNED_KEY_PREFIX = "_wgp_guest_payment_"


def _check_owned(keys: Iterable[str]) -> None:
    foreign = sorted(key for key in keys if not key.startswith(OWNED_KEY_PREFIX))
    if foreign:
        msg = f"Refusing to write order meta keys outside {OWNED_KEY_PREFIX}: {foreign}"
        raise ValueError(msg)


class OrderMetaRepository:
    """Stateless repository for order_meta operations."""

    @staticmethod
    async def get_values(
        db: AsyncSession, order_id: int, keys: Iterable[str]
    ) -> dict[str, str]:
        """Read several metadata values for one order.

        Args:
            db: Async database session.
            order_id: Order number.
            keys: Keys to read.

        Returns:
            Mapping of the keys that exist to their values.
        """
        stmt = select(OrderMeta.meta_key, OrderMeta.meta_value).where(
            OrderMeta.order_id == order_id,
            OrderMeta.meta_key.in_(list(keys)),
        )
        result = await db.execute(stmt)
        return {row.meta_key: row.meta_value for row in result}

    @staticmethod
    async def set_values(
        db: AsyncSession, order_id: int, values: Mapping[str, str]
    ) -> None:
        """Upsert several metadata values in one statement.

        Args:
            db: Async database session.
            order_id: Order number.
            values: Key/value pairs, all under OWNED_KEY_PREFIX.

        Raises:
            ValueError: If any key is not owned by this service.
        """
        if not values:
            return
        _check_owned(values)
        stmt = insert(OrderMeta).values(
            [
                {"order_id": order_id, "meta_key": key, "meta_value": value}
                for key, value in values.items()
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[OrderMeta.order_id, OrderMeta.meta_key],
            set_={"meta_value": stmt.excluded.meta_value},
        )
        await db.execute(stmt)
