"""
Development helper to create all tables against the configured DATABASE_URL.

Usage (SQLite example):
    export DATABASE_URL=sqlite+aiosqlite:///./dev.db
    python -m hft_fleet.init_db

For production, run the alembic migrations instead.
"""

import asyncio

from hft_fleet.common.env import init_env

init_env()

from hft_fleet.common.database import engine  # noqa: E402
from hft_fleet.common.models import Base  # noqa: E402


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def main() -> None:
    asyncio.run(init_db())


if __name__ == "__main__":
    main()
