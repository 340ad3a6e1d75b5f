#!/usr/bin/env python3
"""
Seed a demo owner with a booking page, two event types and a small team.

IDEMPOTENT: skips the seed when the demo user already exists.

Usage:
    export DATABASE_URL="postgresql+asyncpg://localhost:5432/anytimebot"
    python3 Backend/scripts/seed_demo.py
"""
import asyncio
import os
import sys

from dotenv import load_dotenv

load_dotenv()

if not os.getenv("DATABASE_URL"):
    print("ERROR: DATABASE_URL environment variable not set")
    sys.exit(1)

from sqlalchemy import select  # noqa: E402

from anytimebot.auth import hash_password  # noqa: E402
from anytimebot.core.db import AsyncSessionLocal, Base, engine  # noqa: E402
from anytimebot.models import (  # noqa: E402
    AssignmentMode,
    Availability,
    BookingPage,
    Bot,
    EventType,
    Team,
    TeamMember,
    TeamRole,
    User,
    VideoProvider,
)
from anytimebot.usage_tracker import initialize_account  # noqa: E402

DEMO_EMAIL = "demo@anytimebot.dev"
DEMO_PASSWORD = "demo-password"


async def seed():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        existing = await session.execute(select(User).where(User.email == DEMO_EMAIL))
        if existing.scalar_one_or_none():
            print(f"Demo user {DEMO_EMAIL} already exists, nothing to do")
            return

        user = User(
            name="Demo Owner",
            email=DEMO_EMAIL,
            username="demo",
            password_hash=hash_password(DEMO_PASSWORD),
            timezone="America/New_York",
        )
        session.add(user)
        await session.flush()
        await initialize_account(session, user.id)

        page = BookingPage(user_id=user.id, slug="demo", title="Book time with Demo", is_active=True)
        session.add(page)
        await session.flush()
        for day in (1, 2, 3, 4, 5):
            session.add(Availability(booking_page_id=page.id, day_of_week=day, start_time="09:00", end_time="17:00"))

        team = Team(owner_id=user.id, name="Sales", description="Demo sales team")
        session.add(team)
        await session.flush()
        session.add_all(
            [
                TeamMember(
                    team_id=team.id, user_id=user.id, email=DEMO_EMAIL, name="Demo Owner",
                    skills=["enterprise"], languages=["en"], role=TeamRole.OWNER,
                ),
                TeamMember(
                    team_id=team.id, email="ana@anytimebot.dev", name="Ana",
                    skills=["smb"], languages=["en", "es"], role=TeamRole.MEMBER,
                ),
            ]
        )

        session.add_all(
            [
                EventType(
                    booking_page_id=page.id,
                    name="30 minute intro",
                    duration=30,
                    location="video",
                    video_provider=VideoProvider.DAILY,
                    enable_embedded_video=True,
                ),
                EventType(
                    booking_page_id=page.id,
                    name="Sales demo",
                    duration=45,
                    buffer_time=15,
                    team_id=team.id,
                    assignment_mode=AssignmentMode.SMART,
                    enable_routing=True,
                    form_schema={
                        "questions": [
                            {"id": "company_size", "text": "Company size", "type": "select",
                             "options": ["1-10", "11-100", "100+"]},
                            {"id": "language", "text": "Preferred language", "type": "select",
                             "options": ["English", "Spanish"]},
                        ]
                    },
                ),
            ]
        )
        session.add(Bot(user_id=user.id, name="Demo Assistant", tone="friendly", is_active=True))

        await session.commit()
        print(f"Seeded demo user {DEMO_EMAIL} / {DEMO_PASSWORD}")
        print("   Booking page: /demo/demo")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
