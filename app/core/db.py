"""
Database connection and session management.

Provides the async SQLAlchemy engine and session factory used by the
database-backed bundle store.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

_async_engine: AsyncEngine | None = None
_async_sessionmaker: async_sessionmaker | None = None
_telemetry_instrumented: bool = False


def to_async_url(url: str) -> str:
    """
    Pick the async driver for a database URL.

    postgresql:// -> postgresql+asyncpg:// and sqlite:// -> sqlite+aiosqlite://.
    URLs that already name a driver are returned unchanged. libpq-style
    sslmode=require is rewritten to asyncpg's ssl=require.
    """
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    elif url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://") :]
    elif url.startswith("sqlite://"):
        url = "sqlite+aiosqlite://" + url[len("sqlite://") :]

    if url.startswith("postgresql+asyncpg://"):
        url = url.replace("sslmode=require", "ssl=require")
    return url


def create_fresh_async_engine(url: str | None = None) -> AsyncEngine:
    """Create a fresh async engine without caching.

    Used for tests to ensure each test gets its own engine bound to its event loop.
    """
    url = url or settings.database_url_app
    if not url:
        raise RuntimeError("DATABASE_URL_APP is required")

    async_url = to_async_url(url)
    if async_url.startswith("sqlite"):
        return create_async_engine(async_url, echo=False)

    return create_async_engine(
        async_url,
        pool_size=20,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,
        echo=False,
        connect_args={
            "server_settings": {"timezone": "UTC"},
            "timeout": 30,
        },
    )


def get_async_engine() -> AsyncEngine:
    """
    Create and configure the async SQLAlchemy engine.

    Uses asyncpg for PostgreSQL. The engine is created once per process and
    instrumented with OpenTelemetry on first use.

    Returns:
        Configured async SQLAlchemy engine
    """
    global _async_engine

    if _async_engine is not None:
        return _async_engine

    _async_engine = create_fresh_async_engine()
    _instrument_sqlalchemy(_async_engine)
    return _async_engine


def _instrument_sqlalchemy(engine: AsyncEngine) -> None:
    global _telemetry_instrumented

    if _telemetry_instrumented:
        return

    from app.core.telemetry import instrument_sqlalchemy

    instrument_sqlalchemy(engine.sync_engine)
    _telemetry_instrumented = True


def get_async_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the async sessionmaker.

    Returns:
        Async sessionmaker factory
    """
    global _async_sessionmaker
    if _async_sessionmaker is not None:
        return _async_sessionmaker

    _async_sessionmaker = async_sessionmaker(
        bind=get_async_engine(),
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return _async_sessionmaker


async def reset_async_engine() -> None:
    """Reset the async database engine and sessionmaker.

    Useful for tests to ensure fresh connections on new event loops.
    """
    global _async_engine, _async_sessionmaker

    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_sessionmaker = None


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Transactional session: commit on success, roll back on error."""
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
