"""
Pytest configuration and fixtures for FlashPush tests.

Provides:
- Async test database with SQLite
- Test client for API testing
- Factory fixtures for venues, offers, users and rate limit counters
- A recording push gateway double
"""

import os

# Must be set before flashpush modules read settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("POSTHOG_API_KEY", None)

import uuid
from collections.abc import AsyncGenerator
from datetime import time, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flashpush.config import AppConfig, MonitoringConfig, Settings, get_settings
from flashpush.core.database import get_db
from flashpush.core.datetime_utils import utc_now
from flashpush.core.geo import GeoPoint
from flashpush.dependencies import get_gateway_factory
from flashpush.main import app
from flashpush.models import (
    Base,
    DeviceToken,
    Favorite,
    FlashOffer,
    NotificationPreferences,
    OfferStatus,
    RateLimitCounter,
    SubjectType,
    User,
    Venue,
)
from flashpush.services.monitoring import MonitoringService
from flashpush.services.orchestrator import FlashOfferPushService
from tests.helpers import VENUE_POINT, FakeGateway, make_token, offset_point

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    scheduler_enabled: bool = False


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> FakeGateway:
    """Recording push gateway."""
    return FakeGateway()


@pytest.fixture
def monitoring() -> MonitoringService:
    """Isolated monitoring instance with default thresholds."""
    return MonitoringService(MonitoringConfig({}))


@pytest.fixture
def push_service(db_session: AsyncSession, gateway: FakeGateway, monitoring: MonitoringService):
    """Factory for push services bound to the test session."""

    def _create(gw: FakeGateway | None = None, **kwargs) -> FlashOfferPushService:
        target = gw or gateway
        return FlashOfferPushService(
            db_session,
            config=AppConfig(),
            gateway_factory=lambda: target,
            monitoring=monitoring,
            **kwargs,
        )

    return _create


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession, gateway: FakeGateway
) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database and gateway overrides."""

    async def override_get_db():
        yield db_session

    def override_get_settings():
        return TestSettings()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_gateway_factory] = lambda: (lambda: gateway)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def venue_factory(db_session: AsyncSession):
    """Factory for creating test venues."""

    async def _create_venue(
        name: str = "The Local Pub",
        location: GeoPoint | None = VENUE_POINT,
        tier: str = "free",
    ) -> Venue:
        venue = Venue(
            name=name,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            subscription_tier=tier,
        )
        db_session.add(venue)
        await db_session.flush()
        return venue

    return _create_venue


@pytest_asyncio.fixture
async def offer_factory(db_session: AsyncSession, venue_factory):
    """Factory for creating test flash offers."""

    async def _create_offer(
        venue: Venue | None = None,
        title: str = "Happy Hour Special",
        description: str = "Half-price drinks for the next hour",
        radius_meters: float = 1609.344,
        favorites_only: bool = False,
        status: OfferStatus = OfferStatus.ACTIVE,
        push_sent: bool = False,
        **kwargs,
    ) -> FlashOffer:
        if venue is None:
            venue = await venue_factory()

        offer = FlashOffer(
            venue_id=venue.id,
            title=title,
            description=description,
            radius_meters=radius_meters,
            target_favorites_only=favorites_only,
            status=status,
            push_sent=push_sent,
            start_time=utc_now(),
            end_time=utc_now() + timedelta(hours=2),
            **kwargs,
        )
        db_session.add(offer)
        await db_session.flush()
        return offer

    return _create_offer


@pytest_asyncio.fixture
async def user_factory(db_session: AsyncSession):
    """Factory for creating recipients with device tokens and preferences."""

    async def _create_user(
        location: GeoPoint | None = None,
        distance_m: float = 200.0,
        tokens: int | list[str] = 1,
        inactive_tokens: list[str] | None = None,
        preferences: dict | None = None,
        favorite_of: Venue | None = None,
    ) -> User:
        if location is None:
            location = offset_point(VENUE_POINT, north_m=distance_m)
        if isinstance(tokens, int):
            tokens = [f"tok-{uuid.uuid4().hex}" for _ in range(tokens)]

        device_tokens = [DeviceToken(token=t, platform="android") for t in tokens]
        device_tokens += [
            DeviceToken(token=t, platform="ios", is_active=False, deactivated_at=utc_now())
            for t in inactive_tokens or []
        ]

        user = User(
            email=f"user-{uuid.uuid4().hex[:8]}@example.com",
            latitude=location.latitude,
            longitude=location.longitude,
            location_updated_at=utc_now(),
            device_tokens=device_tokens,
            preferences=NotificationPreferences(**preferences) if preferences is not None else None,
        )
        db_session.add(user)
        await db_session.flush()

        if favorite_of is not None:
            db_session.add(Favorite(user_id=user.id, venue_id=favorite_of.id))
            await db_session.flush()

        return user

    return _create_user


@pytest_asyncio.fixture
async def counter_factory(db_session: AsyncSession):
    """Factory for seeding rate limit counter rows."""

    async def _create_counters(
        subject_id: uuid.UUID,
        subject_type: SubjectType,
        count: int = 1,
        age: timedelta = timedelta(hours=1),
    ) -> list[RateLimitCounter]:
        created_at = utc_now() - age
        rows = [
            RateLimitCounter(
                subject_id=subject_id,
                subject_type=subject_type,
                count=1,
                created_at=created_at,
                expires_at=created_at + timedelta(hours=24),
            )
            for _ in range(count)
        ]
        db_session.add_all(rows)
        await db_session.flush()
        return rows

    return _create_counters


@pytest.fixture
def quiet_hours():
    """Preferences dict for a quiet window in the given timezone."""

    def _make(start: str, end: str, timezone: str = "UTC") -> dict:
        return {
            "quiet_hours_start": time.fromisoformat(start),
            "quiet_hours_end": time.fromisoformat(end),
            "timezone": timezone,
        }

    return _make
