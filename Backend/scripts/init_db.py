#!/usr/bin/env python3
"""
Create all AnytimeBot tables from the SQLAlchemy models.

Safe to run multiple times (create_all skips existing tables).

Usage:
    pip install -e .
    export DATABASE_URL="postgresql+asyncpg://localhost:5432/anytimebot"
    python3 Backend/scripts/init_db.py
"""
import asyncio
import os
import sys

from dotenv import load_dotenv

load_dotenv()

if not os.getenv("DATABASE_URL"):
    print("ERROR: DATABASE_URL environment variable not set")
    print("   Use: export DATABASE_URL='postgresql+asyncpg://localhost:5432/anytimebot'")
    sys.exit(1)

from anytimebot import models  # noqa: E402,F401
from anytimebot.core.db import Base, engine  # noqa: E402


async def init_db():
    print(f"Initializing database at {os.environ['DATABASE_URL'].split('@')[-1]}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("Tables:")
        for table in sorted(Base.metadata.tables):
            print(f"   - {table}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db())
