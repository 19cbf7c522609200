"""
Test fixtures for the commerce backend tests.

Provides:
- In-memory SQLite database for isolated testing
- Async test client with proper session management
- A fake payment gateway and a controllable clock
- Test data factories for variants, orders and coupons
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

# DB settings required by Settings validation (tests use SQLite in-memory, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (no Khalti credentials required)
os.environ["ENVIRONMENT"] = "development"

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional, Tuple, Union

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from backend.app.core.base import Base, utcnow
from backend.app.core.settings import Settings
from backend.app.main import app
from backend.app.api.deps import get_payment_gateway, get_session
from backend.app.models.inventory import StockReservation  # noqa: F401 - register tables
from backend.app.models.order import Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from backend.app.models.payment import Coupon
from backend.app.models.variant import ProductVariant
from backend.app.services.khalti import CustomerInfo, InitiateResponse, LookupResponse


# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Create test engine with StaticPool for in-memory SQLite
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class FakeGateway:
    """In-memory stand-in for the Khalti client."""

    def __init__(self):
        self.lookups: Dict[str, Union[LookupResponse, Exception]] = {}
        self.initiated: List[dict] = []
        self.lookup_calls: List[str] = []
        self.initiate_error: Optional[Exception] = None
        self.lookup_delay: float = 0

    def set_lookup(
        self,
        pidx: str,
        status: str,
        total_amount: int = 0,
        transaction_id: Optional[str] = None,
    ) -> None:
        self.lookups[pidx] = LookupResponse(
            pidx=pidx,
            status=status,
            total_amount=total_amount,
            transaction_id=transaction_id,
        )

    def fail_lookup(self, pidx: str, error: Exception) -> None:
        self.lookups[pidx] = error

    async def initiate(
        self,
        order_ref: str,
        amount: int,
        return_url: str,
        customer: CustomerInfo,
        order_name: str = "Order Payment",
    ) -> InitiateResponse:
        if self.initiate_error is not None:
            raise self.initiate_error
        pidx = f"pidx-{order_ref}"
        self.initiated.append({
            "order_ref": order_ref,
            "amount": amount,
            "return_url": return_url,
            "customer": customer,
        })
        return InitiateResponse(pidx=pidx, payment_url=f"https://pay.khalti.test/?pidx={pidx}")

    async def lookup(self, pidx: str) -> LookupResponse:
        self.lookup_calls.append(pidx)
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        result = self.lookups.get(pidx)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return LookupResponse(pidx=pidx, status="Pending")
        return result


class FrozenClock:
    """Callable clock for expiry tests; only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(scope="function")
async def test_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.
    Creates all tables before and drops after each test.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(test_session: AsyncSession) -> async_sessionmaker:
    """Session factory for code that opens its own sessions (background jobs, API)."""
    return TestSessionLocal


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="development",
        KHALTI_SECRET_KEY="test_secret_key",
        KHALTI_RETURN_URL="https://shop.test/payment/return",
        KHALTI_WEBSITE_URL="https://shop.test",
        GATEWAY_TIMEOUT_SECONDS=2.0,
        RECONCILIATION_STALE_AFTER_SECONDS=300,
    )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
async def client(
    test_session: AsyncSession,
    fake_gateway: FakeGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.
    Overrides database and payment gateway dependencies.

    Note: We create a fresh session for each API call to avoid
    transaction conflicts with the test_session used for fixtures.
    """
    async def override_get_session():
        async with TestSessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

@pytest.fixture
def make_variant(test_session: AsyncSession):
    """Factory: committed ProductVariant with the given on-hand stock."""
    counter = {"n": 0}

    async def _make(stock: int = 10, price: Decimal = Decimal("500.00"), reorder_level: int = 10) -> ProductVariant:
        counter["n"] += 1
        variant = ProductVariant(
            sku=f"SKU-{counter['n']:04d}",
            name=f"Test Variant {counter['n']}",
            price=price,
            stock_quantity=stock,
            reorder_level=reorder_level,
        )
        test_session.add(variant)
        await test_session.commit()
        return variant

    return _make


@pytest.fixture
def make_order(test_session: AsyncSession):
    """Factory: committed order with one item per (variant, quantity) pair."""
    counter = {"n": 0}

    async def _make(
        items: List[Tuple[ProductVariant, int]],
        holder_id: str = "user:1",
        total_amount: Decimal = Decimal("1000.00"),
        payment_method: PaymentMethod = PaymentMethod.KHALTI,
        payment_status: PaymentStatus = PaymentStatus.INITIATED,
        order_status: OrderStatus = OrderStatus.PENDING_PAYMENT,
        pidx: Optional[str] = None,
        coupon_code: Optional[str] = None,
        age_seconds: int = 0,
    ) -> Order:
        counter["n"] += 1
        order_number = f"ORD-20260101-{counter['n']:08X}"
        order = Order(
            order_number=order_number,
            holder_id=holder_id,
            payment_method=payment_method,
            order_status=order_status,
            payment_status=payment_status,
            total_amount=total_amount,
            applied_coupon_code=coupon_code,
            pidx=pidx if pidx is not None else (
                f"pidx-{counter['n']}" if payment_method == PaymentMethod.KHALTI else None
            ),
            created_at=utcnow() - timedelta(seconds=age_seconds),
            items=[
                OrderItem(variant_id=variant.id, quantity=quantity, unit_price=variant.price)
                for variant, quantity in items
            ],
        )
        test_session.add(order)
        await test_session.commit()
        return order

    return _make


@pytest.fixture
async def test_coupon(test_session: AsyncSession) -> Coupon:
    coupon = Coupon(code="SAVE10", is_active=True, max_uses=100, current_uses=0)
    test_session.add(coupon)
    await test_session.commit()
    return coupon
