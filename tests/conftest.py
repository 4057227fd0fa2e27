"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models are created as-is; a
single shared connection (``StaticPool``) keeps the in-memory database alive
across the sessions a test opens.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from freightbook.config import Settings
from freightbook.domain.entities import DistanceSlab, Principal
from freightbook.domain.enums import ConnectRequestStatus, UserRole
from freightbook.infrastructure.database import Base
from freightbook.infrastructure.models import (
    ConnectRequestModel,
    CustomerRequestModel,
    TripModel,
    UserModel,
)
from freightbook.services.bookings import BookingService
from freightbook.services.reward_settings import RewardSettingsProvider

TEST_DB_URL = "sqlite+aiosqlite://"

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# [0, 50) km -> 100 tokens, [50, 300) km -> 250 tokens
SLABS = [
    DistanceSlab(0, 50, 100, 15, 30),
    DistanceSlab(50, 300, 250, 60, 120),
]


class FakeClock:
    """Deterministic, manually advanced time source."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def service(db_session, clock, config) -> BookingService:
    return BookingService(db_session, clock=clock, config=config)


async def _add(session: AsyncSession, *models):
    session.add_all(models)
    await session.flush()
    return models


@pytest_asyncio.fixture
async def world(db_session) -> SimpleNamespace:
    """Driver D owns trip A, customer E owns request B (120 km), C links them.

    Also seeds a second driver / customer pair and an admin, plus active
    reward settings of 20 / 30 / 50 percent over ``SLABS``.
    """
    driver, customer, admin, driver2, customer2 = await _add(
        db_session,
        UserModel(name="Driver D", role=UserRole.DRIVER),
        UserModel(name="Customer E", role=UserRole.CUSTOMER),
        UserModel(name="Admin", role=UserRole.ADMIN),
        UserModel(name="Driver F", role=UserRole.DRIVER),
        UserModel(name="Customer G", role=UserRole.CUSTOMER),
    )
    trip, trip2 = await _add(
        db_session,
        TripModel(owner_id=driver.id, title="Pune -> Mumbai"),
        TripModel(owner_id=driver2.id, title="Delhi -> Jaipur"),
    )
    request, request2, short_request = await _add(
        db_session,
        CustomerRequestModel(owner_id=customer.id, title="Cotton", distance_m=120_000),
        CustomerRequestModel(owner_id=customer2.id, title="Dairy", distance_m=200_000),
        CustomerRequestModel(owner_id=customer.id, title="Parcel", distance_m=10_000),
    )
    connect, connect2, connect_short = await _add(
        db_session,
        ConnectRequestModel(
            trip_id=trip.id,
            customer_request_id=request.id,
            initiator_id=driver.id,
            recipient_id=customer.id,
            status=ConnectRequestStatus.ACCEPTED,
        ),
        ConnectRequestModel(
            trip_id=trip.id,
            customer_request_id=request2.id,
            initiator_id=customer2.id,
            recipient_id=driver.id,
            status=ConnectRequestStatus.ACCEPTED,
        ),
        ConnectRequestModel(
            trip_id=trip.id,
            customer_request_id=short_request.id,
            initiator_id=driver.id,
            recipient_id=customer.id,
            status=ConnectRequestStatus.ACCEPTED,
        ),
    )
    settings_model = await RewardSettingsProvider(db_session).publish(
        confirmation_pct=20,
        pickup_pct=30,
        delivery_pct=50,
        slabs=SLABS,
        added_by=admin.id,
        effective_at=START - timedelta(days=1),
    )
    await db_session.commit()

    return SimpleNamespace(
        driver=Principal(driver.id, UserRole.DRIVER),
        customer=Principal(customer.id, UserRole.CUSTOMER),
        admin=Principal(admin.id, UserRole.ADMIN),
        driver2=Principal(driver2.id, UserRole.DRIVER),
        customer2=Principal(customer2.id, UserRole.CUSTOMER),
        trip=trip,
        trip2=trip2,
        request=request,
        request2=request2,
        short_request=short_request,
        connect=connect,
        connect2=connect2,
        connect_short=connect_short,
        settings=settings_model,
    )


@pytest.fixture
def make_booking(service, world):
    """Create the canonical pending booking (driver D initiates, E receives)."""

    async def _make(
        principal=None, request=None, connect=None, price: float = 1500.0, **kw
    ):
        return await service.create(
            principal or world.driver,
            trip_id=world.trip.id,
            customer_request_id=(request or world.request).id,
            connect_request_id=(connect or world.connect).id,
            price=price,
            **kw,
        )

    return _make


@pytest.fixture
def confirmed_booking(service, world, make_booking):
    async def _confirmed(**kw):
        booking = await make_booking(**kw)
        await service.accept(booking.id, world.customer)
        return booking

    return _confirmed
