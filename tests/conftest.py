"""
Pytest configuration and fixtures.

Every test gets its own SQLite file so concurrent tests exercise the same
write-lock behaviour as a shared store.
"""
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from fulfillment_core.api.main import create_app
from fulfillment_core.config import Settings
from fulfillment_core.database.connection import build_engine, build_session_factory, init_db
from fulfillment_core.database.models import Order, OrderItem, OrderStatus, PaymentStatus, Product
from fulfillment_core.services import Services, build_services

WEBHOOK_SECRET = "whsec_test_fake_secret"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings bound to a per-test SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment_test.db'}",
        app_name="order-fulfillment-core-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        payment_provider="paystack",
        payment_webhook_secret=WEBHOOK_SECRET,
        payment_lock_attempts=10,
        notification_retry_delays_minutes=[5, 15, 60],
    )


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the test engine and tables."""
    engine = build_engine(test_settings.database_url, test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return build_session_factory(test_engine)


@pytest.fixture
def services(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> Services:
    """Wired services bound to the test store."""
    return build_services(session_factory, test_settings)


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services, init_database=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """
    Factory inserting an order, optionally with line items.

    `items` is a list of (stock_quantity, ordered_quantity) pairs; one product
    is created per pair.
    """

    async def _make_order(
        order_number: str | None = None,
        total_amount: Decimal = Decimal("5000.00"),
        currency: str = "NGN",
        customer_email: str | None = "ada@example.com",
        status: OrderStatus = OrderStatus.PENDING,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_reference: str | None = None,
        assigned_courier_id: str | None = None,
        items: List[tuple[int, int]] | None = None,
    ) -> Order:
        order = Order(
            id=uuid.uuid4(),
            order_number=order_number or f"ORD-{uuid.uuid4().hex[:8].upper()}",
            customer_email=customer_email,
            customer_name="Ada Obi",
            status=status.value,
            payment_status=payment_status.value,
            total_amount=total_amount,
            currency=currency,
            payment_reference=payment_reference,
            assigned_courier_id=assigned_courier_id,
        )
        async with session_factory() as db:
            db.add(order)
            for stock, quantity in items or []:
                product = Product(id=uuid.uuid4(), name=f"Product {stock}/{quantity}", stock_quantity=stock)
                db.add(product)
                db.add(
                    OrderItem(
                        order_id=order.id,
                        product_id=product.id,
                        quantity=quantity,
                        unit_price=Decimal("100.00"),
                    )
                )
            await db.commit()
        return order

    return _make_order


@pytest.fixture
def fetch(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[List[Any]]]:
    """Query helper: `await fetch(Model, Model.col == value, ...)` returns all matching rows."""

    async def _fetch(model: Any, *criteria: Any) -> List[Any]:
        async with session_factory() as db:
            result = await db.execute(select(model).where(*criteria))
            return list(result.scalars().all())

    return _fetch


@pytest.fixture
def reload_order(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[uuid.UUID], Awaitable[Order]]:
    """Re-read an order from the store."""

    async def _reload(order_id: uuid.UUID) -> Order:
        async with session_factory() as db:
            return await db.get(Order, order_id)

    return _reload


@pytest.fixture
def stock_of(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[uuid.UUID], Awaitable[List[int]]]:
    """Current stock of every product on an order."""

    async def _stock_of(order_id: uuid.UUID) -> List[int]:
        async with session_factory() as db:
            rows = await db.execute(
                select(Product.stock_quantity)
                .join(OrderItem, OrderItem.product_id == Product.id)
                .where(OrderItem.order_id == order_id)
                .order_by(Product.name)
            )
            return list(rows.scalars().all())

    return _stock_of


@pytest.fixture
def sample_webhook_data() -> Callable[..., Dict[str, Any]]:
    """Build a provider charge event body."""

    def _build(
        event: str = "charge.success",
        reference: str = "ref_test_001",
        amount_minor: int = 500000,
        order_number: str | None = None,
        currency: str = "NGN",
    ) -> Dict[str, Any]:
        metadata = {"order_number": order_number} if order_number else {}
        return {
            "event": event,
            "data": {
                "reference": reference,
                "amount": amount_minor,
                "currency": currency,
                "status": "success" if event == "charge.success" else "failed",
                "metadata": metadata,
            },
        }

    return _build
