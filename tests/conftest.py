"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A fake marketplace client (AsyncMock)
- An app built from test settings, with dependency overrides
- Test data factories
"""
import warnings
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storefront.core.config import Settings
from storefront.db.database import Base, get_db
from storefront.db.models import Order, OrderItem, OrderStatus, Product, ShippingMethod, User
from storefront.domain.services.marketplace_client import MarketplaceClient
from storefront.main import create_app

# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ML_APPLICATION_ID = "1234567890"
TEST_MP_WEBHOOK_SECRET = "test-mp-webhook-secret"
TEST_ADMIN_API_KEY = "test-admin-api-key"


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every retry delay at zero"""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        return Settings(
            DEBUG=True,
            DATABASE_URL=TEST_DATABASE_URL,
            ML_APPLICATION_ID=TEST_ML_APPLICATION_ID,
            ML_ACCESS_TOKEN="test-ml-token",
            MP_ACCESS_TOKEN="test-mp-token",
            MP_WEBHOOK_SECRET=TEST_MP_WEBHOOK_SECRET,
            ADMIN_API_KEY=TEST_ADMIN_API_KEY,
            HTTP_RETRY_INITIAL_DELAY=0,
            HTTP_RETRY_MAX_DELAY=0,
            MERCHANT_ORDER_POLL_INITIAL_DELAY=0,
            MERCHANT_ORDER_POLL_MAX_DELAY=0,
            STOCK_ROLLBACK_INITIAL_DELAY=0,
            STOCK_ROLLBACK_MAX_DELAY=0,
            WEBHOOK_RATE_LIMIT_MAX_REQUESTS=10000,
        )


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fake_client() -> AsyncMock:
    """Marketplace client double; tests set return values per call"""
    client = AsyncMock(spec=MarketplaceClient)
    client.get_shipment.return_value = {}
    client.get_order.return_value = {}
    client.get_merchant_order.return_value = {}
    client.get_payment.return_value = {}
    return client


@pytest.fixture
def app(test_settings, session_factory, fake_client):
    """App built from test settings; lifespan state is set directly"""
    application = create_app(test_settings)
    application.state.session_factory = session_factory
    application.state.marketplace_client = fake_client
    return application


@pytest.fixture(scope="function")
async def test_client(app, db_session: AsyncSession):
    """Create test client with database override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        email: str | None = None,
        name: str = "Test Buyer",
        ml_user_id: str | None = None,
    ) -> User:
        user = User(email=email, name=name, ml_user_id=ml_user_id)
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating test products"""
    async def _create_product(
        name: str = "Mate Imperial",
        price: Decimal | str = "100.00",
        stock: int = 5,
        ml_item_id: str | None = None,
    ) -> Product:
        product = Product(name=name, price=Decimal(str(price)), stock=stock, ml_item_id=ml_item_id)
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        return product

    return _create_product


@pytest.fixture
def shipping_method_factory(db_session: AsyncSession):
    async def _create_shipping_method(name: str = "Standard", price: str = "10.00") -> ShippingMethod:
        method = ShippingMethod(name=name, price=Decimal(price), is_active=True)
        db_session.add(method)
        await db_session.commit()
        await db_session.refresh(method)
        return method

    return _create_shipping_method


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for orders with optional items: ``items=[(product, quantity), ...]``"""
    async def _create_order(
        user: User | None = None,
        status: OrderStatus = OrderStatus.PENDING,
        items: list[tuple[Product, int]] | None = None,
        **fields,
    ) -> Order:
        order = Order(
            user_id=user.id if user else None,
            status=status,
            total=fields.pop("total", Decimal("0")),
            **fields,
        )
        db_session.add(order)
        await db_session.flush()
        for product, quantity in items or []:
            db_session.add(OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=quantity,
                price=product.price,
            ))
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
def reload(db_session: AsyncSession):
    """Re-read a row from the database, bypassing the identity map"""
    async def _reload(model, pk):
        db_session.expire_all()
        return await db_session.get(model, pk)

    return _reload
