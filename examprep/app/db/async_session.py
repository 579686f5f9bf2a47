"""Async database session management for SQLAlchemy 2.0+.

This module provides async database operations using PostgreSQL with asyncpg
(or aiosqlite in tests). Services receive the session maker explicitly; the
module-level singletons here are only the default wiring for the app.
"""

from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from examprep.app.core.config import settings
from examprep.app.core.logging import get_logger

logger = get_logger(__name__)

# Global session maker instance
_AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


@lru_cache(maxsize=1)
def get_async_engine(database_url: str | None = None) -> AsyncEngine:
    """Get or create the async database engine (singleton).

    Args:
        database_url: Optional database URL. Uses settings if not provided.

    Returns:
        AsyncEngine instance
    """
    url = database_url or settings.database_url

    if "sqlite" in url.lower():
        engine = create_async_engine(
            url,
            echo=False,
            pool_size=settings.db_sqlite_pool_size,
            max_overflow=settings.db_sqlite_max_overflow,
        )
        logger.info(
            f"Created SQLite async engine (pool_size={settings.db_sqlite_pool_size})"
        )
    else:
        # command_timeout bounds every statement of the creation transaction
        connect_args = {"command_timeout": settings.db_command_timeout}
        engine = create_async_engine(
            url,
            echo=False,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=settings.db_pool_pre_ping,
            connect_args=connect_args,
        )
        logger.info(
            f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
            f"max_overflow={settings.db_max_overflow}, "
            f"pool_timeout={settings.db_pool_timeout}s)"
        )
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session maker with the settings every examprep service expects."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the default async session maker bound to the default engine."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = create_session_maker(get_async_engine())
    return _AsyncSessionLocal



async def init_async_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables. Called during application startup."""
    from examprep.app.db import models  # noqa: F401 - import to register models
    from examprep.app.db.base import Base

    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_async_engine() -> None:
    """Close the async engine on application shutdown."""
    global _AsyncSessionLocal

    engine = get_async_engine()
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch - connection already closed or different loop
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")

    get_async_engine.cache_clear()
    _AsyncSessionLocal = None
