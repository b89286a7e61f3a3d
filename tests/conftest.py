"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./orderflow_test.db")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orderflow.core.config import get_settings

get_settings.cache_clear()

from orderflow.database import Base, get_db
from orderflow.models import Milestone
from orderflow.schemas import OrderCreate
from orderflow.services.availability import StaticAvailability
from orderflow.services.fulfillment import WebhookFulfillmentProcessor
from orderflow.services.notifications import MockNotificationService, get_notification_service
from orderflow.services.orders import OrderStore
from orderflow.services.payment import MockPaymentService, get_payment_service
from tests.factories import WEBHOOK_SECRET, order_payload, payment_event, sign


@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orderflow_test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def payment_service():
    return MockPaymentService(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def notification_service():
    return MockNotificationService()


@pytest.fixture
def make_order(db, settings):
    """Create an order through the Order Store (empty 86-list)."""
    async def _make(**overrides):
        store = OrderStore(db, availability=StaticAvailability(), settings=settings)
        return await store.create_order(OrderCreate(**order_payload(**overrides)))
    return _make


@pytest.fixture
def pay(db, payment_service):
    """Deliver a signed payment_intent.succeeded event for an order."""
    async def _pay(order, tip=0, amount=None, with_base=True):
        amount = order.total_charged + tip if amount is None else amount
        payload = payment_event(
            order.id, amount, tip=tip, base_amount=(amount - tip) if with_base else None
        )
        processor = WebhookFulfillmentProcessor(db, payment_service)
        return await processor.handle(payload.encode("utf-8"), sign(payload))
    return _pay


@pytest.fixture
def enqueued():
    """Notifications the API handed to the background worker."""
    return []


@pytest_asyncio.fixture
async def client(session_maker, payment_service, notification_service, enqueued):
    """HTTP client with database, provider adapters and enqueuer overridden."""
    from orderflow.main import app, get_notification_enqueuer

    async def override_get_db():
        async with session_maker() as session:
            yield session

    def record(order_id, milestone):
        enqueued.append((order_id, Milestone(milestone)))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_service] = lambda: payment_service
    app.dependency_overrides[get_notification_service] = lambda: notification_service
    app.dependency_overrides[get_notification_enqueuer] = lambda: record

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()
