# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures and configuration.

Provides an in-memory SQLite database per test, mocked collaborators backed
by small in-memory directories, actors for every role and an HTTP client
wired to the FastAPI application.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from freezegun import freeze_time
from httpx import ASGITransport, AsyncClient


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

# Set environment variables BEFORE importing any app modules
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "LOG_LEVEL": "WARNING",
    "LOG_TO_FILE": "false",
    "RTO_RATE_LIMIT_BACKEND": "memory",
    "SLA_MONITOR_IN_PROCESS": "false",
    "COURIER_API_BASE_URL": "http://courier.test",
    "PAYMENT_API_BASE_URL": "http://payment.test",
    "DIRECTORY_API_BASE_URL": "http://orders.test",
})

# Now import app modules after environment is set
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reverse_logistics.business.access import Actor, ActorRole
from reverse_logistics.integrations.http_clients import set_collaborators
from reverse_logistics.integrations.ports import (
    Collaborators,
    OrderLine,
    OrderSnapshot,
    PickupBooking,
    RefundReceipt,
    ReverseAWB,
    ShipmentSnapshot,
)
from reverse_logistics.resilience.circuit_breaker import get_circuit_breaker_stats, reset_circuit_breaker
from reverse_logistics.resilience.rate_limiter import RateLimiter
from reverse_logistics.routes.dependencies import reset_engines
from reverse_logistics.services.rto_engine import RTOEngine
from reverse_logistics.storage import models  # noqa: F401
from reverse_logistics.storage.db import Base, build_engine, get_db_session


COMPANY_ID = "comp-1"
CUSTOMER_ID = "cust-1"


# ==== DATABASE FIXTURES ==== #


@pytest_asyncio.fixture
async def engine():
    """
    Fresh in-memory database with every table created.

    The StaticPool engine shares one connection, so every session opened
    from ``session_factory`` sees the same data.
    """
    db_engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def session_factory(sessionmaker):
    """
    Committing session context manager, shaped like ``storage.db.get_session``.
    """
    @asynccontextmanager
    async def factory():
        async with sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory


@pytest_asyncio.fixture
async def db(sessionmaker):
    """Database session for service-level tests; tests commit explicitly."""
    async with sessionmaker() as session:
        yield session


# ==== REFERENCE DATA FIXTURES ==== #


@pytest.fixture
def order_snapshot():
    return OrderSnapshot(
        order_id="ord-1001",
        company_id=COMPANY_ID,
        customer_id=CUSTOMER_ID,
        items=[
            OrderLine("prod-1", "TSHIRT-M-BLUE", 2, 79900, "Cotton tee", "apparel"),
            OrderLine("prod-2", "CAP-BLK", 1, 29900, "Baseball cap", "apparel"),
        ],
        payment_mode="prepaid",
        delivery_address={"line1": "12 MG Road", "city": "Bengaluru", "pincode": "560001"},
    )


@pytest.fixture
def shipment_snapshot():
    return ShipmentSnapshot(
        shipment_id="shp-1001",
        order_id="ord-1001",
        company_id=COMPANY_ID,
        customer_id=CUSTOMER_ID,
        awb="AWB1001",
        courier_id="courier-1",
        customer_contact={"name": "Asha Rao", "phone": "+919800000001", "email": "asha@example.com"},
        delivery_address={"line1": "12 MG Road", "city": "Bengaluru", "pincode": "560001"},
    )


@pytest.fixture
def orders(order_snapshot):
    return {order_snapshot.order_id: order_snapshot}


@pytest.fixture
def shipments(shipment_snapshot):
    return {shipment_snapshot.shipment_id: shipment_snapshot}


# ==== COLLABORATOR FIXTURES ==== #


@pytest.fixture
def collaborators(orders, shipments):
    """
    Mocked collaborator bundle.

    The directory answers from the ``orders`` and ``shipments`` dicts, so
    tests register extra reference data by adding entries there.
    """
    courier = AsyncMock()
    courier.create_reverse_awb.side_effect = lambda shipment, reason: ReverseAWB(
        awb=f"R{shipment.awb}", courier_id="courier-1", tracking_url=None, charges_cents=12000
    )
    courier.schedule_pickup.return_value = PickupBooking(
        awb="PAWB5001",
        scheduled_date=datetime(2025, 8, 18, 10, 0),
        tracking_url="https://track.example.com/PAWB5001",
        courier_id="courier-1",
    )
    courier.request_reattempt.return_value = {"status": "reattempt_scheduled"}

    payment = AsyncMock()
    payment.refund.side_effect = lambda account_id, amount_cents, reference: RefundReceipt(
        reference=reference, transaction_id=f"txn-{reference}", amount_cents=amount_cents
    )
    payment.charge.side_effect = lambda account_id, amount_cents, reference: RefundReceipt(
        reference=reference, transaction_id=f"chg-{reference}", amount_cents=amount_cents
    )
    payment.find_refund.return_value = None

    storage = AsyncMock()
    storage.upload.side_effect = lambda data, folder, content_type: f"https://storage.test/{folder}/{len(data)}"

    directory = AsyncMock()
    directory.get_shipment.side_effect = lambda shipment_id: shipments.get(shipment_id)
    directory.get_order.side_effect = lambda order_id: orders.get(order_id)
    directory.find_orders_matching.return_value = []
    directory.find_shipments_matching.return_value = []

    return Collaborators(
        courier=courier,
        payment=payment,
        notifications=AsyncMock(),
        inventory=AsyncMock(),
        storage=storage,
        directory=directory,
    )


@pytest.fixture
def rto_engine(collaborators):
    """RTO Engine with generous in-memory limiters."""
    return RTOEngine(
        collaborators,
        company_limiter=RateLimiter(100, 60),
        shipment_limiter=RateLimiter(100, 3600),
    )


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Close every collaborator breaker so failures never leak between tests."""
    yield
    for name in get_circuit_breaker_stats():
        reset_circuit_breaker(name)


# ==== ACTOR FIXTURES ==== #


@pytest.fixture
def seller():
    return Actor(id="seller-1", role=ActorRole.SELLER, company_id=COMPANY_ID)


@pytest.fixture
def warehouse():
    return Actor(id="wh-1", role=ActorRole.WAREHOUSE, company_id=COMPANY_ID)


@pytest.fixture
def customer():
    return Actor(id=CUSTOMER_ID, role=ActorRole.CUSTOMER, customer_id=CUSTOMER_ID)


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def system_actor():
    return Actor.system()


@pytest.fixture
def other_seller():
    return Actor(id="seller-9", role=ActorRole.SELLER, company_id="comp-9")


# ==== APPLICATION FIXTURES ==== #


@pytest_asyncio.fixture
async def app(session_factory, collaborators):
    """
    FastAPI application on the test database with mocked collaborators.
    """
    from reverse_logistics.main import create_app

    set_collaborators(collaborators)
    reset_engines()

    application = create_app()

    async def override_db_session():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = override_db_session
    yield application

    set_collaborators(None)
    reset_engines()


@pytest_asyncio.fixture
async def client(app):
    """HTTP client speaking ASGI to the test application."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ==== HEADER FIXTURES ==== #


@pytest.fixture
def seller_headers():
    return {"X-Actor-Id": "seller-1", "X-Actor-Role": "seller", "X-Company-Id": COMPANY_ID}


@pytest.fixture
def warehouse_headers():
    return {"X-Actor-Id": "wh-1", "X-Actor-Role": "warehouse", "X-Company-Id": COMPANY_ID}


@pytest.fixture
def customer_headers():
    return {"X-Actor-Id": CUSTOMER_ID, "X-Actor-Role": "customer", "X-Customer-Id": CUSTOMER_ID}


@pytest.fixture
def admin_headers():
    return {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}


# ==== TIME FIXTURES ==== #


@pytest.fixture
def base_time():
    """
    Base time for tests, naive UTC like every stored timestamp.

    Returns:
        datetime: Base timestamp for tests
    """
    return datetime(2025, 8, 17, 10, 0, 0)


@pytest.fixture
def frozen_time(base_time):
    """Freeze the clock at ``base_time``."""
    with freeze_time(base_time) as frozen:
        yield frozen
