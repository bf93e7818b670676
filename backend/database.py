"""Database connection for the sync operation registry.

Provides:
- engine: AsyncEngine for DATABASE_URL (PostgreSQL via asyncpg in production,
  SQLite via aiosqlite locally)
- AsyncSessionLocal: session factory handed to OperationRegistry
"""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

Base = declarative_base()

DATABASE_URL = os.environ.get("DATABASE_URL") or "sqlite+aiosqlite:///./sync_operations.db"

_ASYNC_DRIVERS = {"postgresql+asyncpg", "sqlite+aiosqlite"}


def build_engine(url: str) -> AsyncEngine:
    """Create an AsyncEngine, rejecting synchronous drivers up front."""
    parsed = make_url(url)
    if parsed.drivername not in _ASYNC_DRIVERS:
        raise RuntimeError(
            f"DATABASE_URL must use an async driver ({', '.join(sorted(_ASYNC_DRIVERS))}). "
            f"Got: '{parsed.drivername}'."
        )

    if parsed.drivername.startswith("sqlite"):
        return create_async_engine(parsed, echo=False)

    return create_async_engine(
        parsed,
        echo=False,
        pool_pre_ping=True,
        pool_size=int(os.environ.get("DB_POOL_SIZE", "5")),
        max_overflow=int(os.environ.get("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(os.environ.get("DB_POOL_TIMEOUT", "30")),
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def create_tables(bind: AsyncEngine = engine) -> None:
    # Import registers the tables on Base.metadata
    import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Registry tables ready on {bind.url.drivername}")


async def dispose_engine() -> None:
    """Dispose the engine connection pool. Call once on application shutdown."""
    await engine.dispose()
