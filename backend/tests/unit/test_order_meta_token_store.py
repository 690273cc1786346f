"""Tests for OrderMetaTokenStore and the repositories beneath it.

Database tests skip when PostgreSQL is not running.

Covers:
- OrderMetaRepository: prefix guard, upsert
- OrderMetaTokenStore: put/get, supersede, lazy expiry, transitions, receipts
- Concurrent sessions: serialized transitions, regenerate during expiry
- DatabaseOrderSource: items, status, notes
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from guest_checkout.models import Order, OrderItem, OrderMeta, OrderNote
from guest_checkout.repositories.order_meta_repository import OrderMetaRepository
from guest_checkout.repositories.order_repository import DatabaseOrderSource
from guest_checkout.services.token_store import (
    META_FINGERPRINT,
    META_STATUS,
    GenerationMethod,
    OrderMetaTokenStore,
    OrderTokenRecord,
    ReceiptRecord,
    TokenStatus,
)
from tests.conftest import TEST_NOW, TEST_ORDER_ID, FrozenClock

# =============================================================================
# Helpers
# =============================================================================


def _record(
    fingerprint: str = "a" * 64, ttl: timedelta = timedelta(days=7)
) -> OrderTokenRecord:
    return OrderTokenRecord(
        order_id=TEST_ORDER_ID,
        token_fingerprint=fingerprint,
        status=TokenStatus.ACTIVE,
        issued_at=TEST_NOW,
        expires_at=TEST_NOW + ttl,
        guest_email="guest@example.com",
        generation_method=GenerationMethod.MANUAL,
        sealed_token="sealed",
    )


def _new_order() -> Order:
    """Pending order with one line item."""
    return Order(
        id=TEST_ORDER_ID,
        status="pending",
        customer_id=7,
        billing_email="billing@example.com",
        currency="USD",
        total=Decimal("45.00"),
        items=[
            OrderItem(
                item_type="line_item",
                product_id=501,
                variation_id=None,
                requires_variation=False,
                name="Annual Membership",
                quantity=1,
                total=Decimal("45.00"),
            )
        ],
    )


@pytest.fixture
async def order(db_session: AsyncSession) -> Order:
    """Persisted pending order with one line item."""
    order = _new_order()
    db_session.add(order)
    await db_session.flush()
    return order


@pytest.fixture
def sessions(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Factory for independent sessions, one per simulated request."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def committed_order(sessions: async_sessionmaker[AsyncSession]) -> int:
    """Committed order holding an ACTIVE token, visible to every session."""
    async with sessions() as session:
        session.add(_new_order())
        await session.flush()
        await OrderMetaTokenStore(session, FrozenClock()).put(_record())
        await session.commit()
    return TEST_ORDER_ID


async def _in_session(
    sessions: async_sessionmaker[AsyncSession],
    operation: Callable[[OrderMetaTokenStore], Awaitable[bool]],
) -> bool:
    """Run one store operation in its own committed transaction."""
    async with sessions() as session:
        result = await operation(OrderMetaTokenStore(session, FrozenClock()))
        await session.commit()
    return result


# =============================================================================
# Tests: OrderMetaRepository
# =============================================================================


class TestOrderMetaPrefixGuard:
    """Writes outside the owned prefix are refused before touching the DB."""

    async def test_foreign_key_is_refused(self):
        """Keys of other plugins are never written."""
        with pytest.raises(ValueError, match="Refusing to write"):
            await OrderMetaRepository.set_values(
                None,  # type: ignore[arg-type]
                TEST_ORDER_ID,
                {"_billing_email": "x@example.com"},
            )

    async def test_empty_write_is_a_no_op(self):
        """Nothing to write means no statement at all."""
        await OrderMetaRepository.set_values(None, TEST_ORDER_ID, {})  # type: ignore[arg-type]


class TestOrderMetaRepository:
    """Upsert and read against PostgreSQL."""

    async def test_set_values_upserts(self, db_session: AsyncSession, order: Order):
        """A second write replaces the value instead of adding a row."""
        await OrderMetaRepository.set_values(db_session, order.id, {META_STATUS: "active"})
        await OrderMetaRepository.set_values(
            db_session, order.id, {META_STATUS: "invalidated"}
        )

        values = await OrderMetaRepository.get_values(db_session, order.id, [META_STATUS])
        rows = (
            await db_session.execute(
                select(OrderMeta).where(OrderMeta.order_id == order.id)
            )
        ).scalars().all()
        assert values == {META_STATUS: "invalidated"}
        assert len(rows) == 1

    async def test_get_values_skips_missing_keys(
        self, db_session: AsyncSession, order: Order
    ):
        """Only stored keys are returned."""
        values = await OrderMetaRepository.get_values(
            db_session, order.id, [META_STATUS, META_FINGERPRINT]
        )
        assert values == {}


# =============================================================================
# Tests: OrderMetaTokenStore
# =============================================================================


class TestOrderMetaTokenStore:
    """Token store persisted in order metadata."""

    async def test_put_then_get(self, db_session: AsyncSession, order: Order):
        """The stored record is read back unchanged."""
        store = OrderMetaTokenStore(db_session, FrozenClock())
        record = _record()
        await store.put(record)
        assert await store.get(order.id) == record

    async def test_put_supersedes(self, db_session: AsyncSession, order: Order):
        """A second put leaves only the new fingerprint."""
        store = OrderMetaTokenStore(db_session, FrozenClock())
        await store.put(_record(fingerprint="a" * 64))
        await store.put(_record(fingerprint="b" * 64))
        active = await store.get_active(order.id)
        assert active is not None
        assert active.token_fingerprint == "b" * 64

    async def test_get_active_marks_expired(self, db_session: AsyncSession, order: Order):
        """Reading an expired record writes EXPIRED to the metadata."""
        clock = FrozenClock()
        store = OrderMetaTokenStore(db_session, clock)
        await store.put(_record(ttl=timedelta(hours=1)))
        clock.advance(hours=2)

        assert await store.get_active(order.id) is None
        values = await OrderMetaRepository.get_values(db_session, order.id, [META_STATUS])
        assert values[META_STATUS] == "expired"

    async def test_lazy_expiry_spares_replacement(
        self, db_session: AsyncSession, order: Order, monkeypatch: pytest.MonkeyPatch
    ):
        """A token generated after the expired read is not marked EXPIRED."""
        clock = FrozenClock()
        store = OrderMetaTokenStore(db_session, clock)
        await store.put(_record(fingerprint="a" * 64, ttl=timedelta(hours=1)))
        clock.advance(hours=2)
        fresh = _record(fingerprint="b" * 64)
        read = store.get
        reads = 0

        async def read_then_regenerate(order_id: int) -> OrderTokenRecord | None:
            nonlocal reads
            record = await read(order_id)
            reads += 1
            if reads == 1:
                await store.put(fresh)
            return record

        monkeypatch.setattr(store, "get", read_then_regenerate)
        assert await store.get_active(order.id) is None
        monkeypatch.undo()

        assert await store.get_active(order.id) == fresh

    async def test_invalidate_and_consume(self, db_session: AsyncSession, order: Order):
        """Transitions are applied once; terminal statuses stay put."""
        store = OrderMetaTokenStore(db_session, FrozenClock())
        await store.put(_record())

        assert await store.invalidate(order.id) is True
        assert await store.invalidate(order.id) is False
        assert await store.mark_consumed(order.id) is False
        stored = await store.get(order.id)
        assert stored is not None
        assert stored.status is TokenStatus.INVALIDATED

    async def test_transition_on_missing_order(self, db_session: AsyncSession):
        """An unknown order cannot be locked, so nothing changes."""
        store = OrderMetaTokenStore(db_session, FrozenClock())
        assert await store.invalidate(999_999) is False

    async def test_receipt_put_then_get(self, db_session: AsyncSession, order: Order):
        """Receipts live in their own keys beside the payment record."""
        store = OrderMetaTokenStore(db_session, FrozenClock())
        await store.put(_record())
        receipt = ReceiptRecord(
            order_id=order.id,
            token_fingerprint="c" * 64,
            issued_at=TEST_NOW,
            expires_at=TEST_NOW + timedelta(days=30),
            guest_email="guest@example.com",
            sealed_token="sealed-receipt",
        )

        assert await store.get_receipt(order.id) is None
        await store.put_receipt(receipt)

        assert await store.get_receipt(order.id) == receipt
        assert await store.get(order.id) == _record()


# =============================================================================
# Tests: concurrent requests
# =============================================================================


class TestConcurrentRequests:
    """Read-modify-write on one order is serialized across sessions."""

    async def test_concurrent_transitions_apply_once(
        self, sessions: async_sessionmaker[AsyncSession], committed_order: int
    ):
        """Of two racing transitions exactly one wins; the loser sees its result."""
        invalidated, consumed = await asyncio.gather(
            _in_session(sessions, lambda store: store.invalidate(committed_order)),
            _in_session(sessions, lambda store: store.mark_consumed(committed_order)),
        )

        async with sessions() as session:
            stored = await OrderMetaTokenStore(session, FrozenClock()).get(committed_order)
        assert [invalidated, consumed].count(True) == 1
        assert stored is not None
        expected = TokenStatus.INVALIDATED if invalidated else TokenStatus.CONSUMED
        assert stored.status is expected

    async def test_concurrent_invalidates_report_once(
        self, sessions: async_sessionmaker[AsyncSession], committed_order: int
    ):
        """Two admins invalidating at once: one True, one False."""
        results = await asyncio.gather(
            *(
                _in_session(sessions, lambda store: store.invalidate(committed_order))
                for _ in range(2)
            )
        )
        assert sorted(results) == [False, True]

    async def test_regenerate_during_guest_expiry(
        self,
        sessions: async_sessionmaker[AsyncSession],
        committed_order: int,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """An admin regenerating between a guest's expired read and its write wins."""
        async with sessions() as session:
            await OrderMetaTokenStore(session, FrozenClock()).put(
                _record(fingerprint="a" * 64, ttl=timedelta(hours=1))
            )
            await session.commit()
        fresh = _record(fingerprint="b" * 64)

        async def regenerate(store: OrderMetaTokenStore) -> bool:
            await store.put(fresh)
            return True

        clock = FrozenClock()
        clock.advance(hours=2)
        async with sessions() as guest_session:
            guest_store = OrderMetaTokenStore(guest_session, clock)
            read = guest_store.get
            reads = 0

            async def read_then_regenerate(order_id: int) -> OrderTokenRecord | None:
                nonlocal reads
                record = await read(order_id)
                reads += 1
                if reads == 1:
                    await _in_session(sessions, regenerate)
                return record

            monkeypatch.setattr(guest_store, "get", read_then_regenerate)
            assert await guest_store.get_active(committed_order) is None
            await guest_session.commit()

        async with sessions() as session:
            active = await OrderMetaTokenStore(session, clock).get_active(committed_order)
        assert active == fresh


# =============================================================================
# Tests: DatabaseOrderSource
# =============================================================================


class TestDatabaseOrderSource:
    """Order access used by the lifecycle."""

    async def test_get_loads_items(self, db_session: AsyncSession, order: Order):
        """Orders come with their line items."""
        source = DatabaseOrderSource(db_session)
        loaded = await source.get(order.id)
        assert loaded is not None
        assert [item.name for item in loaded.items] == ["Annual Membership"]

    async def test_get_missing_order(self, db_session: AsyncSession):
        """Unknown ids return None."""
        assert await DatabaseOrderSource(db_session).get(999_999) is None

    async def test_set_status_and_add_note(self, db_session: AsyncSession, order: Order):
        """Status updates and notes land in their tables."""
        source = DatabaseOrderSource(db_session)
        await source.set_status(order.id, "processing")
        await source.add_note(order.id, "Guest payment link invalidated.")

        status = (
            await db_session.execute(select(Order.status).where(Order.id == order.id))
        ).scalar_one()
        notes = (
            await db_session.execute(
                select(OrderNote.content).where(OrderNote.order_id == order.id)
            )
        ).scalars().all()
        assert status == "processing"
        assert notes == ["Guest payment link invalidated."]

    async def test_set_cart_hash(self, db_session: AsyncSession, order: Order):
        """The cart hash is written to the order row."""
        await DatabaseOrderSource(db_session).set_cart_hash(order.id, "a" * 64)

        stored = (
            await db_session.execute(select(Order.cart_hash).where(Order.id == order.id))
        ).scalar_one()
        assert stored == "a" * 64
