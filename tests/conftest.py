"""Shared fixtures: in-memory database, seeded store and payment doubles."""
import os

# Settings are read at import time; configure before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["PAYMENT_GATEWAY"] = "fake"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PAYMENT_POLLING_ENABLED"] = "false"
os.environ.pop("PAYMENT_WEBHOOK_SECRET", None)

from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.database import Base, get_db
from app.models.affiliate import AffiliateAccount, AffiliateStatus
from app.models.product import Product, ProductSpecificationStock
from app.models.store import Store, DeliveryArea
from app.schemas.order import PlaceOrderRequest
from app.services.order_service import OrderService
from app.services.payment_gateway import FakePaymentGateway
from app.services.payment_polling import PaymentPollingRegistry

SIZE_SPEC = "64b1f0aa"
LARGE = "42"
MEDIUM = "43"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ==================== SEED DATA ====================

@pytest.fixture
async def store(db):
    store = Store(
        name_en="Olive Tree Shop",
        name_ar="متجر شجرة الزيتون",
        slug="olive-tree",
        contact_email="shop@olivetree.example.com",
        currency="ILS",
        payment_secret_key="sk_test_olive",
    )
    db.add(store)
    await db.commit()
    return store


@pytest.fixture
async def shirt(db, store):
    """100.00, 10 in stock: 4 Large and 6 Medium."""
    product = Product(
        store_id=store.id,
        name_en="Embroidered Shirt",
        sku="SHIRT-01",
        price=Decimal("100.00"),
        is_on_sale=False,
        sale_percentage=Decimal("0"),
        stock=10,
        specification_stock=[
            ProductSpecificationStock(
                specification_id=SIZE_SPEC, value_id=LARGE, title="Size", value="Large", quantity=4, position=0
            ),
            ProductSpecificationStock(
                specification_id=SIZE_SPEC, value_id=MEDIUM, title="Size", value="Medium", quantity=6, position=1
            ),
        ],
    )
    db.add(product)
    await db.commit()
    return product


@pytest.fixture
async def mug(db, store):
    """25.00, 3 in stock, no specifications."""
    product = Product(
        store_id=store.id,
        name_en="Ceramic Mug",
        sku="MUG-01",
        price=Decimal("25.00"),
        is_on_sale=False,
        sale_percentage=Decimal("0"),
        stock=3,
    )
    db.add(product)
    await db.commit()
    return product


@pytest.fixture
async def affiliate(db, store):
    account = AffiliateAccount(
        store_id=store.id,
        affiliate_code="AFF1234",
        first_name="Rami",
        last_name="Nasser",
        email="rami@example.com",
        percent=Decimal("10"),
        status=AffiliateStatus.ACTIVE.value,
    )
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
async def delivery_area(db, store):
    area = DeliveryArea(store_id=store.id, location_en="Ramallah", price=Decimal("15.00"), estimated_days=2)
    db.add(area)
    await db.commit()
    return area


# ==================== REQUEST BUILDERS ====================

@pytest.fixture
def order_payload():
    """Build a checkout payload (camelCase, as storefront clients send it)."""
    def build(*lines, **extra):
        payload = {
            "guestId": "guest-1",
            "customer": {"name": "Lina Haddad", "email": "lina@example.com", "phone": "+970599000000"},
            "items": [
                {
                    "productId": str(product.id),
                    "quantity": quantity,
                    "specifications": specifications or [],
                }
                for product, quantity, specifications in lines
            ],
            "shippingAddress": {"city": "Ramallah", "street": "Main St 1"},
        }
        payload.update(extra)
        return payload
    return build


@pytest.fixture
def place_order(db, store, order_payload):
    """Place an order through OrderService and return it."""
    async def place(*lines, reference=None, **extra):
        service = OrderService(db)
        order = await service.place_order(store.id, PlaceOrderRequest.model_validate(order_payload(*lines, **extra)))
        if reference:
            await service.attach_payment_reference(order, reference)
        await db.commit()
        return order
    return place


# ==================== PAYMENTS ====================

@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
async def registry(gateway, session_factory):
    registry = PaymentPollingRegistry(
        gateway,
        session_factory=session_factory,
        initial_interval=0.01,
        max_interval=0.05,
        backoff_factor=2.0,
        max_attempts=5,
    )
    yield registry
    await registry.shutdown()


@pytest.fixture
async def client(session_factory, gateway, registry):
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.payment_gateway = gateway
    app.state.polling_registry = registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
