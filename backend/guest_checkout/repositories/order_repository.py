"""Repository for Order reads, status updates and order notes.

Orders belong to the host shop. Callers get read access plus the two writes
the guest payment flow needs: notes for the admin timeline and the status
change when a guest payment completes.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from guest_checkout.models.order import Order, OrderNote


class OrderRepository:
    """Stateless repository for order table operations.

    All methods are static. Pass an AsyncSession for every call so the
    caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(
        db: AsyncSession, order_id: int, *, with_items: bool = False
    ) -> Order | None:
        """Fetch an order by primary key.

        Args:
            db: Async database session.
            order_id: Order number.
            with_items: Eager-load line items (needed to build a cart).

        Returns:
            Order if found, None otherwise.
        """
        stmt = select(Order).where(Order.id == order_id)
        if with_items:
            stmt = stmt.options(selectinload(Order.items))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def lock(db: AsyncSession, order_id: int) -> bool:
        """Take a row lock on the order for the rest of the transaction.

        Serializes read-modify-write sequences on the order's metadata.

        Args:
            db: Async database session.
            order_id: Order number.

        Returns:
            True if the order exists (and is now locked).
        """
        stmt = select(Order.id).where(Order.id == order_id).with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def update_status(db: AsyncSession, order_id: int, status: str) -> None:
        """Set the order status.

        Args:
            db: Async database session.
            order_id: Order number.
            status: New status value.
        """
        await db.execute(
            update(Order).where(Order.id == order_id).values(status=status)
        )

    @staticmethod
    async def update_cart_hash(db: AsyncSession, order_id: int, cart_hash: str) -> None:
        """Set the hash of the cart the order is paid from.

        Checkout resumes an existing order only while its cart hash matches
        the cart being checked out.
        """
        await db.execute(
            update(Order).where(Order.id == order_id).values(cart_hash=cart_hash)
        )

    @staticmethod
    async def add_note(db: AsyncSession, order_id: int, content: str) -> OrderNote:
        """Append a private note to the order timeline.

        Args:
            db: Async database session.
            order_id: Order number.
            content: Note text.

        Returns:
            The created OrderNote (flushed, id populated).
        """
        note = OrderNote(order_id=order_id, content=content)
        db.add(note)
        await db.flush()
        return note


class DatabaseOrderSource:
    """Order source for the token lifecycle, backed by OrderRepository.

    Binds a session so the lifecycle can stay unaware of SQLAlchemy.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, order_id: int) -> Order | None:
        return await OrderRepository.get_by_id(self._db, order_id, with_items=True)

    async def set_status(self, order_id: int, status: str) -> None:
        await OrderRepository.update_status(self._db, order_id, status)

    async def add_note(self, order_id: int, content: str) -> None:
        await OrderRepository.add_note(self._db, order_id, content)

    async def set_cart_hash(self, order_id: int, cart_hash: str) -> None:
        await OrderRepository.update_cart_hash(self._db, order_id, cart_hash)
