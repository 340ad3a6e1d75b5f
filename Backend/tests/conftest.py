"""
Pytest configuration and fixtures.

Every test gets its own SQLite database (aiosqlite) in tmp_path; the app's
get_session dependency is overridden to use it, and requests go through an
httpx AsyncClient over ASGITransport.
"""
import os

# Settings are read once at import time; pin them before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./anytimebot-import.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_PRICE_PRO"] = "price_pro_test"
os.environ["STRIPE_PRICE_TEAM"] = "price_team_test"
os.environ["APP_BASE_URL"] = "http://app.test"
for _name in (
    "RESEND_API_KEY",
    "OPENAI_API_KEY",
    "DAILY_API_KEY",
    "DAILY_WEBHOOK_SECRET",
    "EVOLUTION_API_URL",
    "EVOLUTION_API_KEY",
):
    os.environ[_name] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from anytimebot.auth import create_session_token, hash_password
from anytimebot.core.db import Base, get_session
from anytimebot.main import app
from anytimebot.models import (
    Availability,
    BookingPage,
    EventType,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    User,
)
from anytimebot.rate_limiter import get_rate_limiter
from anytimebot.usage_tracker import initialize_account


@pytest.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    get_rate_limiter().clear()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


# ────────────────────────────────────────────────────────────────
# Factories
# ────────────────────────────────────────────────────────────────

async def make_user(
    session: AsyncSession,
    email: str = "owner@example.com",
    username: str = "owner",
    plan: PlanTier = PlanTier.FREE,
    timezone: str = "UTC",
    **fields,
) -> User:
    user = User(
        name=fields.pop("name", "Owner"),
        email=email,
        username=username,
        password_hash=hash_password("secret123"),
        timezone=timezone,
        **fields,
    )
    session.add(user)
    await session.flush()
    await initialize_account(session, user.id)
    if plan != PlanTier.FREE:
        result = await session.execute(select(Subscription).where(Subscription.user_id == user.id))
        subscription = result.scalar_one()
        subscription.plan = plan
        subscription.status = SubscriptionStatus.ACTIVE
    await session.commit()
    return user


async def make_page(
    session: AsyncSession,
    user: User,
    slug: str = "meet",
    workdays=(0, 1, 2, 3, 4, 5, 6),
    window=("09:00", "17:00"),
) -> BookingPage:
    page = BookingPage(user_id=user.id, slug=slug, title="Meet me", is_active=True, slot_interval=30)
    session.add(page)
    await session.flush()
    for day in workdays:
        session.add(
            Availability(booking_page_id=page.id, day_of_week=day, start_time=window[0], end_time=window[1])
        )
    await session.commit()
    return page


async def make_event_type(session: AsyncSession, page: BookingPage, **fields) -> EventType:
    event_type = EventType(
        booking_page_id=page.id,
        name=fields.pop("name", "Intro call"),
        duration=fields.pop("duration", 30),
        **fields,
    )
    session.add(event_type)
    await session.commit()
    return event_type


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user.id, user.email)}"}
