"""Per-order guest payment token state.

Implements the token state machine:
- ACTIVE → INVALIDATED (explicit invalidate, or superseded by a new token)
- ACTIVE → CONSUMED (guest payment completed)
- ACTIVE → EXPIRED (written lazily the first time an expired record is read,
  and only if that same record is still stored when the write happens)
- INVALIDATED, CONSUMED, EXPIRED are terminal

Superseding is a plain overwrite: ``put`` replaces whatever record the order
had, so at most one record (and therefore at most one ACTIVE token) exists per
order. Two implementations share the state machine: OrderMetaTokenStore keeps
records in order metadata, InMemoryTokenStore keeps them in a dict.

The receipt record issued after payment sits beside the token record. It
has no status; it simply stops granting access once it expires.
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from guest_checkout.repositories.order_meta_repository import (
    OWNED_KEY_PREFIX,
    OrderMetaRepository,
)
from guest_checkout.repositories.order_repository import OrderRepository

logger = structlog.get_logger()


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


Clock = Callable[[], datetime]


# =============================================================================
# Enums
# =============================================================================


class TokenStatus(str, Enum):
    """Status of an order's payment token record."""

    ACTIVE = "active"
    INVALIDATED = "invalidated"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class GenerationMethod(str, Enum):
    """How a token was created; shown to admins and written to order notes."""

    EMAIL = "email"
    MANUAL = "manual"
    AUTO = "auto"


_VALID_TRANSITIONS: dict[TokenStatus, frozenset[TokenStatus]] = {
    TokenStatus.ACTIVE: frozenset(
        {TokenStatus.INVALIDATED, TokenStatus.CONSUMED, TokenStatus.EXPIRED}
    ),
    TokenStatus.INVALIDATED: frozenset(),
    TokenStatus.CONSUMED: frozenset(),
    TokenStatus.EXPIRED: frozenset(),
}


def can_transition(current: TokenStatus, target: TokenStatus) -> bool:
    """Check whether a status change is allowed by the state machine."""
    return target in _VALID_TRANSITIONS[current]


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class OrderTokenRecord:
    """Persisted token state for one order.

    Attributes:
        order_id: Owning order.
        token_fingerprint: Fingerprint of the current token string.
        status: Lifecycle status.
        issued_at: When the current token was issued.
        expires_at: When the current token stops validating.
        guest_email: Recipient, empty for manual links issued without one.
        generation_method: email, manual or auto.
        sealed_token: Current token encrypted at rest, for resend/copy.
    """

    order_id: int
    token_fingerprint: str
    status: TokenStatus
    issued_at: datetime
    expires_at: datetime
    guest_email: str = ""
    generation_method: GenerationMethod = GenerationMethod.EMAIL
    sealed_token: str = ""

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` has reached the expiry time."""
        return now >= self.expires_at


@dataclass(frozen=True)
class ReceiptRecord:
    """Receipt access granted after a guest payment.

    Attributes:
        order_id: Paid order.
        token_fingerprint: Keyed hash of the receipt token.
        issued_at: Creation time.
        expires_at: End of receipt access.
        guest_email: Payer address on file (may be empty).
        sealed_token: Receipt token encrypted at rest, for e-mailing the link.
    """

    order_id: int
    token_fingerprint: str
    issued_at: datetime
    expires_at: datetime
    guest_email: str = ""
    sealed_token: str = ""

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` has passed the expiry time."""
        return now > self.expires_at


# =============================================================================
# Interface
# =============================================================================


class TokenStore(Protocol):
    """Storage contract used by the token lifecycle."""

    async def get(self, order_id: int) -> OrderTokenRecord | None:
        """Return the order's record in any status."""
        ...

    async def get_active(self, order_id: int) -> OrderTokenRecord | None:
        """Return the record only if ACTIVE and unexpired."""
        ...

    async def put(self, record: OrderTokenRecord) -> None:
        """Store a record, replacing the order's previous one."""
        ...

    async def invalidate(self, order_id: int) -> bool:
        """ACTIVE → INVALIDATED. False when nothing was active."""
        ...

    async def mark_consumed(self, order_id: int) -> bool:
        """ACTIVE → CONSUMED. False when nothing was active."""
        ...

    async def get_receipt(self, order_id: int) -> ReceiptRecord | None:
        """Return the order's receipt record, expired or not."""
        ...

    async def put_receipt(self, record: ReceiptRecord) -> None:
        """Store a receipt record, replacing the order's previous one."""
        ...


# =============================================================================
# Order metadata implementation
# =============================================================================

META_FINGERPRINT = f"{OWNED_KEY_PREFIX}token_hash"
META_SEALED_TOKEN = f"{OWNED_KEY_PREFIX}token_encrypted"
META_STATUS = f"{OWNED_KEY_PREFIX}token_status"
META_ISSUED_AT = f"{OWNED_KEY_PREFIX}token_created"
META_EXPIRES_AT = f"{OWNED_KEY_PREFIX}token_expires"
META_EMAIL = f"{OWNED_KEY_PREFIX}email"
META_GENERATION_METHOD = f"{OWNED_KEY_PREFIX}generation_method"

TOKEN_META_KEYS = (
    META_FINGERPRINT,
    META_SEALED_TOKEN,
    META_STATUS,
    META_ISSUED_AT,
    META_EXPIRES_AT,
    META_EMAIL,
    META_GENERATION_METHOD,
)


def record_to_meta(record: OrderTokenRecord) -> dict[str, str]:
    """Flatten a record into order metadata values."""
    return {
        META_FINGERPRINT: record.token_fingerprint,
        META_SEALED_TOKEN: record.sealed_token,
        META_STATUS: record.status.value,
        META_ISSUED_AT: str(int(record.issued_at.timestamp())),
        META_EXPIRES_AT: str(int(record.expires_at.timestamp())),
        META_EMAIL: record.guest_email,
        META_GENERATION_METHOD: record.generation_method.value,
    }


def record_from_meta(order_id: int, values: dict[str, str]) -> OrderTokenRecord | None:
    """Rebuild a record from order metadata.

    Returns None when no token was ever issued for the order or the stored
    values are unreadable; an unreadable record can never validate anyway.
    """
    if not values.get(META_FINGERPRINT):
        return None
    try:
        return OrderTokenRecord(
            order_id=order_id,
            token_fingerprint=values[META_FINGERPRINT],
            status=TokenStatus(values.get(META_STATUS, TokenStatus.ACTIVE.value)),
            issued_at=datetime.fromtimestamp(int(values[META_ISSUED_AT]), UTC),
            expires_at=datetime.fromtimestamp(int(values[META_EXPIRES_AT]), UTC),
            guest_email=values.get(META_EMAIL, ""),
            generation_method=GenerationMethod(
                values.get(META_GENERATION_METHOD, GenerationMethod.EMAIL.value)
            ),
            sealed_token=values.get(META_SEALED_TOKEN, ""),
        )
    except (KeyError, ValueError):
        logger.warning("Unreadable guest payment token metadata", order_id=order_id)
        return None


META_RECEIPT_FINGERPRINT = f"{OWNED_KEY_PREFIX}receipt_token_hash"
META_RECEIPT_SEALED_TOKEN = f"{OWNED_KEY_PREFIX}receipt_token_encrypted"
META_RECEIPT_ISSUED_AT = f"{OWNED_KEY_PREFIX}receipt_token_created"
META_RECEIPT_EXPIRES_AT = f"{OWNED_KEY_PREFIX}receipt_token_expires"
META_RECEIPT_EMAIL = f"{OWNED_KEY_PREFIX}receipt_email"

RECEIPT_META_KEYS = (
    META_RECEIPT_FINGERPRINT,
    META_RECEIPT_SEALED_TOKEN,
    META_RECEIPT_ISSUED_AT,
    META_RECEIPT_EXPIRES_AT,
    META_RECEIPT_EMAIL,
)


def receipt_to_meta(record: ReceiptRecord) -> dict[str, str]:
    """Flatten a receipt record into order metadata values."""
    return {
        META_RECEIPT_FINGERPRINT: record.token_fingerprint,
        META_RECEIPT_SEALED_TOKEN: record.sealed_token,
        META_RECEIPT_ISSUED_AT: str(int(record.issued_at.timestamp())),
        META_RECEIPT_EXPIRES_AT: str(int(record.expires_at.timestamp())),
        META_RECEIPT_EMAIL: record.guest_email,
    }


def receipt_from_meta(order_id: int, values: dict[str, str]) -> ReceiptRecord | None:
    """Rebuild a receipt record from order metadata, None if absent."""
    if not values.get(META_RECEIPT_FINGERPRINT):
        return None
    try:
        return ReceiptRecord(
            order_id=order_id,
            token_fingerprint=values[META_RECEIPT_FINGERPRINT],
            issued_at=datetime.fromtimestamp(int(values[META_RECEIPT_ISSUED_AT]), UTC),
            expires_at=datetime.fromtimestamp(int(values[META_RECEIPT_EXPIRES_AT]), UTC),
            guest_email=values.get(META_RECEIPT_EMAIL, ""),
            sealed_token=values.get(META_RECEIPT_SEALED_TOKEN, ""),
        )
    except (KeyError, ValueError):
        logger.warning("Unreadable guest receipt metadata", order_id=order_id)
        return None


class OrderMetaTokenStore:
    """TokenStore backed by the order_meta table.

    Every write first locks the order row, so concurrent admin actions on the
    same order are applied one after another within their transactions.
    """

    def __init__(self, db: AsyncSession, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    async def get(self, order_id: int) -> OrderTokenRecord | None:
        values = await OrderMetaRepository.get_values(self._db, order_id, TOKEN_META_KEYS)
        return record_from_meta(order_id, values)

    async def get_active(self, order_id: int) -> OrderTokenRecord | None:
        record = await self.get(order_id)
        if record is None or record.status is not TokenStatus.ACTIVE:
            return None
        if record.is_expired(self._clock()):
            await self._transition(
                order_id, TokenStatus.EXPIRED, expected=record.token_fingerprint
            )
            return None
        return record

    async def put(self, record: OrderTokenRecord) -> None:
        await OrderRepository.lock(self._db, record.order_id)
        await OrderMetaRepository.set_values(
            self._db, record.order_id, record_to_meta(record)
        )

    async def invalidate(self, order_id: int) -> bool:
        return await self._transition(order_id, TokenStatus.INVALIDATED)

    async def mark_consumed(self, order_id: int) -> bool:
        return await self._transition(order_id, TokenStatus.CONSUMED)

    async def get_receipt(self, order_id: int) -> ReceiptRecord | None:
        values = await OrderMetaRepository.get_values(self._db, order_id, RECEIPT_META_KEYS)
        return receipt_from_meta(order_id, values)

    async def put_receipt(self, record: ReceiptRecord) -> None:
        await OrderRepository.lock(self._db, record.order_id)
        await OrderMetaRepository.set_values(
            self._db, record.order_id, receipt_to_meta(record)
        )

    async def _transition(
        self, order_id: int, target: TokenStatus, *, expected: str | None = None
    ) -> bool:
        """Apply a status change under the order row lock.

        Args:
            order_id: Order whose record changes.
            target: New status.
            expected: For lazy expiry, the fingerprint of the record seen as
                expired. A record replaced since then is left alone.
        """
        if not await OrderRepository.lock(self._db, order_id):
            return False
        # Re-read under the lock; another request may have moved it already.
        record = await self.get(order_id)
        if record is None or not can_transition(record.status, target):
            return False
        if expected is not None and (
            record.token_fingerprint != expected or not record.is_expired(self._clock())
        ):
            return False
        await OrderMetaRepository.set_values(
            self._db, order_id, {META_STATUS: target.value}
        )
        logger.info(
            "Guest payment token status changed",
            order_id=order_id,
            from_status=record.status.value,
            to_status=target.value,
        )
        return True


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryTokenStore:
    """TokenStore held in a dict, for tests and single-process tooling.

    Safe for async/await usage (no awaits between read and write) but not
    for multi-threaded access.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._records: dict[int, OrderTokenRecord] = {}
        self._receipts: dict[int, ReceiptRecord] = {}
        self._clock = clock

    async def get(self, order_id: int) -> OrderTokenRecord | None:
        return self._records.get(order_id)

    async def get_active(self, order_id: int) -> OrderTokenRecord | None:
        record = self._records.get(order_id)
        if record is None or record.status is not TokenStatus.ACTIVE:
            return None
        if record.is_expired(self._clock()):
            self._records[order_id] = replace(record, status=TokenStatus.EXPIRED)
            return None
        return record

    async def put(self, record: OrderTokenRecord) -> None:
        self._records[record.order_id] = record

    async def invalidate(self, order_id: int) -> bool:
        return self._transition(order_id, TokenStatus.INVALIDATED)

    async def mark_consumed(self, order_id: int) -> bool:
        return self._transition(order_id, TokenStatus.CONSUMED)

    async def get_receipt(self, order_id: int) -> ReceiptRecord | None:
        return self._receipts.get(order_id)

    async def put_receipt(self, record: ReceiptRecord) -> None:
        self._receipts[record.order_id] = record

    def _transition(self, order_id: int, target: TokenStatus) -> bool:
        record = self._records.get(order_id)
        if record is None or not can_transition(record.status, target):
            return False
        self._records[order_id] = replace(record, status=target)
        return True
