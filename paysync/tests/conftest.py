import json
from decimal import Decimal
import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from paysync.crud.mapping import subscription_mappings
from paysync.db.base import Base
import paysync.db.models  # noqa: F401
from paysync.db.models.catalog import BillingPeriod, Product
from paysync.db.models.order import META_CHECKOUT_SESSION_ID, Order, OrderItem, OrderMeta, OrderStatus, OrderType
from paysync.services.inventory import inventory_service
from paysync.services.verifier import WebhookVerifier
from paysync.services.webhook import WebhookService
from paysync.tests.utils import GATEWAY_ID, WEBHOOK_SECRET, StubDodoClient, make_settings, signed_headers


@pytest.fixture
def test_settings():
    return make_settings(test_mode=True)


@pytest.fixture
def live_settings():
    return make_settings(test_mode=False)


@pytest.fixture
def verifier():
    return WebhookVerifier(WEBHOOK_SECRET)


@pytest.fixture
async def db_engine(tmp_path):
    """File backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paysync_test.db'}", echo=False, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def db_session_factory(db_engine):
    """Factory to create multiple sessions for concurrent tests."""
    return async_sessionmaker(
        bind=db_engine,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(db_session_factory):
    async with db_session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def redis_client():
    redis = FakeAsyncRedis()
    yield redis
    await redis.flushall()
    await redis.aclose()


@pytest.fixture
def stub_client():
    return StubDodoClient()


@pytest.fixture
def webhook_service(verifier, db_session_factory, redis_client, stub_client, test_settings):
    return WebhookService(verifier, db_session_factory, redis_client, stub_client, test_settings)


@pytest.fixture
def deliver(webhook_service, verifier):
    """Sign and hand a payload to the webhook service, returns the HTTP status."""
    async def _deliver(payload: dict, msg_id: str = None, service: WebhookService = None) -> int:
        body = json.dumps(payload).encode()
        headers = signed_headers(verifier, body, msg_id=msg_id)
        return await (service or webhook_service).handle(body, headers)
    return _deliver


@pytest.fixture
async def seeded(db_session_factory, redis_client):
    """
    Products 1 (one-time) and 2 (monthly subscription), orders 42 and 43 paid
    with this gateway, order 44 paid elsewhere and subscription 7 created by
    order 42 and mapped to sub_9.
    """
    async with db_session_factory() as session:
        session.add_all([
            Product(id=1, name="Field Guide", description="<p>PDF</p>", price=Decimal("10.00")),
            Product(id=2, name="Pro Plan", price=Decimal("25.00"), is_subscription=True,
                    billing_period=BillingPeriod.MONTH, billing_interval=1),
        ])
        await session.commit()

        session.add_all([
            Order(id=42, payment_method=GATEWAY_ID, total=Decimal("20.00"), customer_email="ada@example.com",
                  customer_name="Ada L", billing_country="GB",
                  items=[OrderItem(product_id=1, quantity=2, unit_price=Decimal("10.00"))]),
            Order(id=43, payment_method=GATEWAY_ID, total=Decimal("10.00"), customer_email="bob@example.com",
                  items=[OrderItem(product_id=1, quantity=1, unit_price=Decimal("10.00"))]),
            Order(id=44, payment_method="stripe", total=Decimal("10.00"),
                  items=[OrderItem(product_id=1, quantity=1, unit_price=Decimal("10.00"))]),
        ])
        await session.commit()

        session.add_all([
            Order(id=7, order_type=OrderType.SUBSCRIPTION, status=OrderStatus.ACTIVE, parent_id=42,
                  payment_method=GATEWAY_ID, total=Decimal("25.00"), customer_email="ada@example.com",
                  items=[OrderItem(product_id=2, quantity=1, unit_price=Decimal("25.00"))]),
            OrderMeta(order_id=43, meta_key=META_CHECKOUT_SESSION_ID, meta_value="cs_43"),
        ])
        await session.commit()

        await subscription_mappings.save_mapping(session, 7, "sub_9")

    await inventory_service.set_stock(1, 10, redis_client)
    await inventory_service.set_stock(2, 100, redis_client)
    return {"order_id": 42, "session_order_id": 43, "foreign_order_id": 44, "subscription_id": 7}

