import socket
from collections import defaultdict
from collections.abc import AsyncGenerator, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from guest_checkout.core.config import settings
from guest_checkout.models import Base, Order, OrderItem
from guest_checkout.services.failed_attempts import FailedAttemptTracker
from guest_checkout.services.guest_session_gate import GuestSessionGate
from guest_checkout.services.payment_lifecycle import TokenLifecycle, TokenPolicy
from guest_checkout.services.receipts import ReceiptPolicy, ReceiptService
from guest_checkout.services.token_codec import TokenCodec
from guest_checkout.services.token_store import InMemoryTokenStore

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Security: test-only secrets. Production reads real values from env.
TEST_ENCRYPTION_KEY = "test-encryption-key-for-guest-payment-links"  # nosec B105  # gitleaks:allow
TEST_ADMIN_KEY = "test-admin-key-that-is-at-least-32-characters"  # nosec B105  # gitleaks:allow
TEST_SESSION_SECRET = "test-session-secret-that-is-at-least-32-chars"  # nosec B105  # gitleaks:allow

TEST_ORDER_ID = 123
TEST_GUEST_EMAIL = "guest@example.com"
TEST_BILLING_EMAIL = "billing@example.com"
TEST_CART_URL = "https://shop.example.com/cart/"
TEST_RECEIPT_URL = "https://shop.example.com/receipt/"
TEST_TTL = timedelta(days=7)
TEST_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
PAYABLE_STATUSES = frozenset({"pending", "failed", "on-hold"})


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on port 5432, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 5432))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available.

    Called by fixtures that require database connection.
    """
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            "PostgreSQL not available on port 5432. "
            "Start database with: docker compose up -d"
        )


# =============================================================================
# Test doubles
# =============================================================================


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InMemoryOrderSource:
    """OrderSource over a dict of transient Order objects.

    Notes are recorded per order so tests can assert on them.
    """

    def __init__(self, *orders: Order) -> None:
        self.orders = {order.id: order for order in orders}
        self.notes: dict[int, list[str]] = defaultdict(list)

    async def get(self, order_id: int) -> Order | None:
        return self.orders.get(order_id)

    async def set_status(self, order_id: int, status: str) -> None:
        self.orders[order_id].status = status

    async def add_note(self, order_id: int, content: str) -> None:
        self.notes[order_id].append(content)

    async def set_cart_hash(self, order_id: int, cart_hash: str) -> None:
        self.orders[order_id].cart_hash = cart_hash


@dataclass(frozen=True)
class SentEmail:
    """One message recorded by RecordingMailer."""

    order_id: int
    to_email: str
    link: str
    expires_at: datetime


class RecordingMailer:
    """Mailer that records messages instead of sending them.

    Set ``deliver = False`` to simulate a delivery failure.
    """

    def __init__(self, deliver: bool = True) -> None:
        self.deliver = deliver
        self.sent: list[SentEmail] = []
        self.receipts: list[SentEmail] = []

    async def send_payment_link(
        self,
        *,
        order: Order,
        to_email: str,
        link: str,
        expires_at: datetime,
    ) -> bool:
        self.sent.append(
            SentEmail(
                order_id=order.id, to_email=to_email, link=link, expires_at=expires_at
            )
        )
        return self.deliver

    async def send_receipt(
        self,
        *,
        order: Order,
        to_email: str,
        link: str,
        expires_at: datetime,
    ) -> bool:
        self.receipts.append(
            SentEmail(
                order_id=order.id, to_email=to_email, link=link, expires_at=expires_at
            )
        )
        return self.deliver


def make_item(
    order_id: int = TEST_ORDER_ID,
    *,
    item_id: int = 1,
    item_type: str = "line_item",
    product_id: int | None = 501,
    variation_id: int | None = None,
    requires_variation: bool = False,
    name: str = "Annual Membership",
    quantity: int = 1,
    total: Decimal = Decimal("45.00"),
) -> OrderItem:
    """Build a transient order item."""
    return OrderItem(
        id=item_id,
        order_id=order_id,
        item_type=item_type,
        product_id=product_id,
        variation_id=variation_id,
        requires_variation=requires_variation,
        name=name,
        quantity=quantity,
        total=total,
    )


def make_order(
    order_id: int = TEST_ORDER_ID,
    *,
    status: str = "pending",
    customer_id: int | None = 7,
    billing_email: str = TEST_BILLING_EMAIL,
    items: list[OrderItem] | None = None,
) -> Order:
    """Build a transient order with one membership line and a shipping row."""
    if items is None:
        items = [
            make_item(order_id),
            make_item(
                order_id,
                item_id=2,
                item_type="shipping",
                product_id=None,
                name="Shipping",
                total=Decimal("5.00"),
            ),
        ]
    return Order(
        id=order_id,
        status=status,
        customer_id=customer_id,
        billing_email=billing_email,
        currency="USD",
        total=sum((item.total for item in items), Decimal("0.00")),
        cart_hash=None,
        items=items,
        notes=[],
    )


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# =============================================================================
# Lifecycle fixtures
# =============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at TEST_NOW."""
    return FrozenClock()


@pytest.fixture
def codec() -> TokenCodec:
    """Codec keyed with the test encryption key."""
    return TokenCodec(TEST_ENCRYPTION_KEY)


@pytest.fixture
def token_store(clock: FrozenClock) -> InMemoryTokenStore:
    """Empty in-memory token store on the frozen clock."""
    return InMemoryTokenStore(clock)


@pytest.fixture
def orders() -> InMemoryOrderSource:
    """Order source holding one payable order."""
    return InMemoryOrderSource(make_order())


@pytest.fixture
def mailer() -> RecordingMailer:
    """Mailer that records and succeeds."""
    return RecordingMailer()


@pytest.fixture
def policy() -> TokenPolicy:
    """Seven-day links pointing at the test cart."""
    return TokenPolicy(
        link_base_url=TEST_CART_URL,
        ttl=TEST_TTL,
        payable_statuses=PAYABLE_STATUSES,
    )


@pytest.fixture
def lifecycle(
    codec: TokenCodec,
    token_store: InMemoryTokenStore,
    orders: InMemoryOrderSource,
    mailer: RecordingMailer,
    policy: TokenPolicy,
    clock: FrozenClock,
) -> TokenLifecycle:
    """Lifecycle wired to in-memory collaborators."""
    return TokenLifecycle(
        codec=codec,
        store=token_store,
        orders=orders,
        mailer=mailer,
        policy=policy,
        clock=clock,
    )


@pytest.fixture
def receipts(
    codec: TokenCodec,
    token_store: InMemoryTokenStore,
    orders: InMemoryOrderSource,
    mailer: RecordingMailer,
    clock: FrozenClock,
) -> ReceiptService:
    """Receipt service sharing the lifecycle's in-memory collaborators."""
    return ReceiptService(
        codec=codec,
        store=token_store,
        orders=orders,
        mailer=mailer,
        policy=ReceiptPolicy(link_base_url=TEST_RECEIPT_URL),
        clock=clock,
    )


@pytest.fixture
def attempts(clock: FrozenClock) -> FailedAttemptTracker:
    """Failed-attempt tracker with the default limits."""
    return FailedAttemptTracker(clock=clock)


@pytest.fixture
def gate(
    lifecycle: TokenLifecycle,
    orders: InMemoryOrderSource,
    attempts: FailedAttemptTracker,
) -> GuestSessionGate:
    """Guest session gate over the in-memory lifecycle."""
    return GuestSessionGate(lifecycle=lifecycle, orders=orders, attempts=attempts)


# =============================================================================
# API client
# =============================================================================


@dataclass
class ApiHarness:
    """Collaborators behind the test client, for arranging and asserting."""

    orders: InMemoryOrderSource
    token_store: InMemoryTokenStore
    mailer: RecordingMailer
    db: AsyncMock


@pytest.fixture
def api() -> ApiHarness:
    """In-memory collaborators for the API client."""
    return ApiHarness(
        orders=InMemoryOrderSource(make_order()),
        token_store=InMemoryTokenStore(),
        mailer=RecordingMailer(),
        db=AsyncMock(spec=AsyncSession),
    )


@pytest_asyncio.fixture
async def client(api: ApiHarness) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app with in-memory collaborators.

    Sets up:
    - get_db yields a mock session (commit/rollback are recorded)
    - token store, order source and mailer replaced with test doubles
    - test encryption key, session secret and admin key
    - non-Secure guest session cookie so it round-trips over http://test

    Yields:
        AsyncClient without admin credentials.
    """
    from guest_checkout.api.deps import get_mailer, get_order_source, get_token_store
    from guest_checkout.core.database import get_db
    from guest_checkout.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield api.db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_token_store] = lambda: api.token_store
    app.dependency_overrides[get_order_source] = lambda: api.orders
    app.dependency_overrides[get_mailer] = lambda: api.mailer

    originals = {
        "wicket_guest_payment_encryption_key": settings.wicket_guest_payment_encryption_key,
        "session_secret": settings.session_secret,
        "admin_api_key": settings.admin_api_key,
        "guest_session_cookie_secure": settings.guest_session_cookie_secure,
        "site_url": settings.site_url,
    }
    settings.wicket_guest_payment_encryption_key = SecretStr(TEST_ENCRYPTION_KEY)
    settings.session_secret = SecretStr(TEST_SESSION_SECRET)
    settings.admin_api_key = SecretStr(TEST_ADMIN_KEY)
    settings.guest_session_cookie_secure = False
    settings.site_url = "http://test"
    app.state.failed_attempts.clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Cleanup
    for name, value in originals.items():
        setattr(settings, name, value)
    app.state.failed_attempts.clear()
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Bearer header carrying the test admin key."""
    return {"Authorization": f"Bearer {TEST_ADMIN_KEY}"}


@pytest.fixture(autouse=True)
def disable_rate_limiting() -> Iterator[None]:
    """Disable rate limiting during tests.

    Security: Rate limiting is tested separately; disable for other tests
    to avoid flaky failures from rate limit triggers.

    Yields:
        None (autouse fixture).
    """
    from guest_checkout.core.rate_limiting import limiter

    # Store original state and disable
    original_enabled = limiter.enabled
    limiter.enabled = False

    yield

    # Restore original state
    limiter.enabled = original_enabled
