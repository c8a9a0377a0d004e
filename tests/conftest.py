"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A scripted payment gateway and an in-memory Redis
- Test data factories (cargo requests, trips, commission rules)
"""
# ה-engine נוצר בזמן import של freight.db.database, לכן ה-URL נקבע לפני כל import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ZARINPAL_MERCHANT_ID", "test-merchant-0000-0000-0000-000000000000")
os.environ.setdefault("LOG_JSON", "false")

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from freight.core.circuit_breaker import CircuitBreaker
from freight.core.clock import utcnow
from freight.db.database import Base, get_db
from freight.db.models.cargo_request import CargoRequest, CargoType, VehicleType
from freight.db.models.commission_rule import CommissionType
from freight.db.models.trip import Trip
from freight.domain.services.cargo_request_service import CargoRequestDraft, CargoRequestService
from freight.domain.services.commission_rule_service import CommissionRuleDraft, CommissionRuleService
from freight.domain.services.gateways import register_gateway, reset_gateways
from freight.domain.services.trip_service import TripService
from freight.main import app
from tests.factories import DRIVER_ID, OWNER_ID, FakeGateway, FakeRedis, irr


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


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
def session_maker(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# External services
# ============================================================================

@pytest.fixture(autouse=True)
def fake_gateway():
    """Every test gets a fresh scripted gateway registered as the default one"""
    reset_gateways()
    gateway = FakeGateway("zarinpal")
    register_gateway(gateway)
    yield gateway
    reset_gateways()


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("freight.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def cargo_request_factory(db_session: AsyncSession):
    """Factory for pending cargo requests, created through the service"""
    async def _create(
        owner_id: int = OWNER_ID,
        price: str = "1000000",
        cargo_type: CargoType = CargoType.GENERAL,
        vehicle_type: VehicleType = VehicleType.BOX_TRUCK,
        cargo_name: str = "Steel pipes",
    ) -> CargoRequest:
        now = utcnow()
        draft = CargoRequestDraft(
            owner_id=owner_id,
            cargo_name=cargo_name,
            weight_kg=Decimal("3500"),
            price=irr(price),
            pickup_address="Tehran, Azadi Sq.",
            pickup_latitude=35.6997,
            pickup_longitude=51.3380,
            pickup_time=now + timedelta(days=1),
            delivery_address="Isfahan, Naqsh-e Jahan Sq.",
            delivery_latitude=32.6575,
            delivery_longitude=51.6776,
            delivery_time=now + timedelta(days=2),
            cargo_type=cargo_type,
            vehicle_type=vehicle_type,
        )
        return (await CargoRequestService(db_session).create(draft)).unwrap()

    return _create


# שלבי המסלול התקין, לפי הסדר
_TRIP_STEPS = (
    ("accepted", "accept"),
    ("started", "start"),
    ("loading", "start_loading"),
    ("loaded", "complete_loading"),
    ("in_transit", "start_transit"),
    ("arrived", "arrive"),
    ("delivered", "deliver"),
)


@pytest.fixture
def trip_factory(db_session: AsyncSession, cargo_request_factory):
    """
    Factory for trips driven up to ``until`` along the happy path.
    "assigned" leaves the trip as the engagement created it.
    """
    async def _create(
        until: str = "delivered",
        driver_id: int = DRIVER_ID,
        price: str = "1000000",
        **request_kwargs,
    ) -> Trip:
        request = await cargo_request_factory(price=price, **request_kwargs)
        engagement = (await CargoRequestService(db_session).accept(request.id, driver_id)).unwrap()
        trip = engagement.trip
        if until == "assigned":
            return trip
        service = TripService(db_session)
        for status, method in _TRIP_STEPS:
            trip = (await getattr(service, method)(trip.id)).unwrap()
            if status == until:
                return trip
        raise ValueError(f"Unknown trip status for factory: {until}")

    return _create


@pytest.fixture
def commission_rule_factory(db_session: AsyncSession):
    """Factory for commission rules; a 10% percentage rule by default"""
    async def _create(
        rate: str | None = "0.10",
        commission_type: CommissionType = CommissionType.PERCENTAGE,
        name: str = "Standard driver commission",
        **kwargs,
    ):
        draft = CommissionRuleDraft(
            name=name,
            commission_type=commission_type,
            rate=Decimal(rate) if rate is not None else None,
            effective_from=kwargs.pop("effective_from", utcnow() - timedelta(days=30)),
            **kwargs,
        )
        return (await CommissionRuleService(db_session).create_rule(draft)).unwrap()

    return _create
