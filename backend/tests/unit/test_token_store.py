"""Tests for the token state machine and InMemoryTokenStore.

Covers:
- can_transition: ACTIVE is the only non-terminal status
- put: overwrite supersedes the previous record
- get_active: lazy EXPIRED write
- invalidate / mark_consumed: idempotent transitions
- record_to_meta / record_from_meta: order metadata layout
"""

from datetime import timedelta

import pytest

from guest_checkout.services.token_store import (
    META_EMAIL,
    META_EXPIRES_AT,
    META_FINGERPRINT,
    META_GENERATION_METHOD,
    META_ISSUED_AT,
    META_SEALED_TOKEN,
    META_STATUS,
    TOKEN_META_KEYS,
    GenerationMethod,
    InMemoryTokenStore,
    OrderTokenRecord,
    TokenStatus,
    can_transition,
    record_from_meta,
    record_to_meta,
)
from tests.conftest import TEST_NOW, TEST_ORDER_ID, FrozenClock

# =============================================================================
# Helpers
# =============================================================================


def _record(
    fingerprint: str = "a" * 64,
    status: TokenStatus = TokenStatus.ACTIVE,
    ttl: timedelta = timedelta(days=7),
) -> OrderTokenRecord:
    """Record issued at TEST_NOW for TEST_ORDER_ID."""
    return OrderTokenRecord(
        order_id=TEST_ORDER_ID,
        token_fingerprint=fingerprint,
        status=status,
        issued_at=TEST_NOW,
        expires_at=TEST_NOW + ttl,
        guest_email="guest@example.com",
        generation_method=GenerationMethod.EMAIL,
        sealed_token="sealed",
    )


# =============================================================================
# Tests: state machine
# =============================================================================


class TestCanTransition:
    """Allowed status changes."""

    @pytest.mark.parametrize(
        "target",
        [TokenStatus.INVALIDATED, TokenStatus.CONSUMED, TokenStatus.EXPIRED],
    )
    def test_active_moves_to_any_terminal_status(self, target: TokenStatus):
        """ACTIVE can be invalidated, consumed or expired."""
        assert can_transition(TokenStatus.ACTIVE, target) is True

    @pytest.mark.parametrize(
        "current",
        [TokenStatus.INVALIDATED, TokenStatus.CONSUMED, TokenStatus.EXPIRED],
    )
    def test_terminal_statuses_never_move(self, current: TokenStatus):
        """No status leads out of a terminal one, not even back to ACTIVE."""
        assert not any(can_transition(current, target) for target in TokenStatus)

    def test_active_to_active_is_not_a_transition(self):
        """Re-activating is done by put(), never by a transition."""
        assert can_transition(TokenStatus.ACTIVE, TokenStatus.ACTIVE) is False


# =============================================================================
# Tests: InMemoryTokenStore
# =============================================================================


class TestInMemoryGetPut:
    """Reads and overwrites."""

    async def test_get_returns_none_before_first_put(self, token_store: InMemoryTokenStore):
        """An order without a token has no record."""
        assert await token_store.get(TEST_ORDER_ID) is None
        assert await token_store.get_active(TEST_ORDER_ID) is None

    async def test_put_then_get_active(self, token_store: InMemoryTokenStore):
        """A fresh ACTIVE record is returned by get_active."""
        record = _record()
        await token_store.put(record)
        assert await token_store.get_active(TEST_ORDER_ID) == record

    async def test_put_supersedes_previous_record(self, token_store: InMemoryTokenStore):
        """Only the latest fingerprint is kept for an order."""
        await token_store.put(_record(fingerprint="a" * 64))
        await token_store.put(_record(fingerprint="b" * 64))
        active = await token_store.get_active(TEST_ORDER_ID)
        assert active is not None
        assert active.token_fingerprint == "b" * 64

    async def test_put_reactivates_after_terminal_status(
        self, token_store: InMemoryTokenStore
    ):
        """A new token replaces an invalidated one."""
        await token_store.put(_record(status=TokenStatus.INVALIDATED))
        await token_store.put(_record(fingerprint="c" * 64))
        active = await token_store.get_active(TEST_ORDER_ID)
        assert active is not None
        assert active.status is TokenStatus.ACTIVE


class TestInMemoryExpiry:
    """Lazy expiry on read."""

    async def test_get_active_before_expiry(
        self, token_store: InMemoryTokenStore, clock: FrozenClock
    ):
        """One second before expiry the record is still active."""
        await token_store.put(_record(ttl=timedelta(hours=1)))
        clock.advance(minutes=59, seconds=59)
        assert await token_store.get_active(TEST_ORDER_ID) is not None

    async def test_get_active_marks_expired_record(
        self, token_store: InMemoryTokenStore, clock: FrozenClock
    ):
        """Reading an expired ACTIVE record writes EXPIRED."""
        await token_store.put(_record(ttl=timedelta(hours=1)))
        clock.advance(hours=1)

        assert await token_store.get_active(TEST_ORDER_ID) is None
        stored = await token_store.get(TEST_ORDER_ID)
        assert stored is not None
        assert stored.status is TokenStatus.EXPIRED

    async def test_get_does_not_mark_expired(
        self, token_store: InMemoryTokenStore, clock: FrozenClock
    ):
        """get() reports the stored status as is."""
        await token_store.put(_record(ttl=timedelta(hours=1)))
        clock.advance(days=2)
        stored = await token_store.get(TEST_ORDER_ID)
        assert stored is not None
        assert stored.status is TokenStatus.ACTIVE


class TestInMemoryTransitions:
    """invalidate and mark_consumed."""

    async def test_invalidate_active_record(self, token_store: InMemoryTokenStore):
        """ACTIVE becomes INVALIDATED and is no longer returned as active."""
        await token_store.put(_record())
        assert await token_store.invalidate(TEST_ORDER_ID) is True
        assert await token_store.get_active(TEST_ORDER_ID) is None
        stored = await token_store.get(TEST_ORDER_ID)
        assert stored is not None
        assert stored.status is TokenStatus.INVALIDATED

    async def test_invalidate_is_idempotent(self, token_store: InMemoryTokenStore):
        """A second invalidate changes nothing and reports False."""
        await token_store.put(_record())
        await token_store.invalidate(TEST_ORDER_ID)
        assert await token_store.invalidate(TEST_ORDER_ID) is False

    async def test_invalidate_without_record(self, token_store: InMemoryTokenStore):
        """Invalidating an order that never had a token reports False."""
        assert await token_store.invalidate(TEST_ORDER_ID) is False

    async def test_mark_consumed_active_record(self, token_store: InMemoryTokenStore):
        """ACTIVE becomes CONSUMED."""
        await token_store.put(_record())
        assert await token_store.mark_consumed(TEST_ORDER_ID) is True
        stored = await token_store.get(TEST_ORDER_ID)
        assert stored is not None
        assert stored.status is TokenStatus.CONSUMED

    async def test_consumed_cannot_be_invalidated(self, token_store: InMemoryTokenStore):
        """Terminal statuses are final."""
        await token_store.put(_record())
        await token_store.mark_consumed(TEST_ORDER_ID)
        assert await token_store.invalidate(TEST_ORDER_ID) is False
        stored = await token_store.get(TEST_ORDER_ID)
        assert stored is not None
        assert stored.status is TokenStatus.CONSUMED

    async def test_transition_keeps_other_fields(self, token_store: InMemoryTokenStore):
        """Only the status changes."""
        record = _record()
        await token_store.put(record)
        await token_store.invalidate(TEST_ORDER_ID)
        stored = await token_store.get(TEST_ORDER_ID)
        assert stored is not None
        assert stored.token_fingerprint == record.token_fingerprint
        assert stored.expires_at == record.expires_at


# =============================================================================
# Tests: order metadata layout
# =============================================================================


class TestMetaMapping:
    """Flattening records into order metadata."""

    def test_all_keys_are_written(self):
        """Every owned key is present."""
        assert set(record_to_meta(_record())) == set(TOKEN_META_KEYS)

    def test_values_are_strings_with_unix_timestamps(self):
        """Timestamps are stored as integer seconds."""
        meta = record_to_meta(_record())
        assert meta[META_ISSUED_AT] == str(int(TEST_NOW.timestamp()))
        assert meta[META_STATUS] == "active"
        assert meta[META_GENERATION_METHOD] == "email"
        assert meta[META_EMAIL] == "guest@example.com"
        assert meta[META_SEALED_TOKEN] == "sealed"

    def test_record_is_rebuilt_from_meta(self):
        """record_from_meta inverts record_to_meta."""
        record = _record()
        assert record_from_meta(TEST_ORDER_ID, record_to_meta(record)) == record

    def test_missing_fingerprint_means_no_record(self):
        """An order without the hash key never had a token."""
        assert record_from_meta(TEST_ORDER_ID, {}) is None
        assert record_from_meta(TEST_ORDER_ID, {META_FINGERPRINT: ""}) is None

    def test_optional_keys_have_defaults(self):
        """Status defaults to active and method to email."""
        record = record_from_meta(
            TEST_ORDER_ID,
            {
                META_FINGERPRINT: "a" * 64,
                META_ISSUED_AT: str(int(TEST_NOW.timestamp())),
                META_EXPIRES_AT: str(int(TEST_NOW.timestamp()) + 3600),
            },
        )
        assert record is not None
        assert record.status is TokenStatus.ACTIVE
        assert record.generation_method is GenerationMethod.EMAIL
        assert record.guest_email == ""
        assert record.sealed_token == ""

    def test_unreadable_values_mean_no_record(self):
        """Garbage timestamps or statuses never produce a record."""
        meta = record_to_meta(_record())
        assert record_from_meta(TEST_ORDER_ID, {**meta, META_EXPIRES_AT: "soon"}) is None
        assert record_from_meta(TEST_ORDER_ID, {**meta, META_STATUS: "paused"}) is None
