import logging
import os
from typing import Any, AsyncGenerator, Dict

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hft_fleet.common.env import env_bool, env_float, env_int

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Please set DATABASE_URL in .env")


def engine_options(url: str) -> Dict[str, Any]:
    """
    Keyword arguments for ``create_async_engine``.

    SQLite gets a busy timeout so the health tick and the API can share the
    single writer; server databases get a bounded, pre-pinged pool.
    """
    options: Dict[str, Any] = {"echo": env_bool("SQL_ECHO", False), "future": True}
    if make_url(url).get_backend_name() == "sqlite":
        options["connect_args"] = {
            "check_same_thread": False,
            "timeout": env_float("SQLITE_BUSY_TIMEOUT_SECONDS", 15.0, minimum=0.0),
        }
        return options
    options.update(
        pool_pre_ping=True,
        pool_size=env_int("DB_POOL_SIZE", 5, minimum=1),
        max_overflow=env_int("DB_MAX_OVERFLOW", 10, minimum=0),
        pool_recycle=env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=0),
    )
    return options


_options = engine_options(DATABASE_URL)
logger.info(
    "Initializing fleet database engine",
    extra={
        "database_url": make_url(DATABASE_URL).render_as_string(hide_password=True),
        "pool_size": _options.get("pool_size"),
    },
)

engine = create_async_engine(DATABASE_URL, **_options)
AsyncSessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


__all__ = ["engine", "engine_options", "AsyncSessionLocal", "get_db_session"]
