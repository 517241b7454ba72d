"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses asyncpg for PostgreSQL in production and aiosqlite for local runs and tests.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, TypeVar

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from config.settings import settings
from shared.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Engine ────────────────────────────────────────────────────
def build_engine(url: str = settings.DATABASE_URL) -> AsyncEngine:
    """
    Create the async engine for `url`.

    SQLite has no row locks, so every transaction is opened with
    BEGIN IMMEDIATE: writers are serialized at BEGIN, which gives the
    booking/professional double-update the same isolation that
    SELECT ... FOR UPDATE gives on PostgreSQL.
    """
    if url.startswith("sqlite"):
        sqlite_engine = create_async_engine(
            url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            echo=settings.DEBUG,
        )

        @event.listens_for(sqlite_engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(sqlite_engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return sqlite_engine

    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,          # Detect stale connections
        pool_recycle=3600,           # Recycle connections every hour
        echo=settings.DEBUG,         # Log SQL in debug mode
        connect_args={"command_timeout": settings.DATABASE_STATEMENT_TIMEOUT_SECONDS},
    )


engine = build_engine()

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autoflush=False,
)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
def get_session_factory() -> async_sessionmaker:
    """
    FastAPI dependency: the session factory used by the booking engine.

    The engine opens its own short transactions (one per state change),
    so routes receive the factory rather than a request-scoped session.
    """
    return AsyncSessionLocal


@asynccontextmanager
async def transaction(
    factory: async_sessionmaker = AsyncSessionLocal,
) -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commits when the block exits cleanly, rolls back
    (and re-raises) on any exception.

    Usage:
        async with transaction(factory) as session:
            booking = await session.get(Booking, booking_id, with_for_update=True)
    """
    async with factory() as session:
        async with session.begin():
            yield session


async def run_with_timeout(awaitable: Awaitable[T], timeout: float, what: str = "database") -> T:
    """Bound a database round-trip; a missed deadline surfaces as UpstreamTimeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"{what} call exceeded {timeout}s deadline")
        raise UpstreamTimeout(f"The {what} did not respond in time. Please retry", retry_after_seconds=1)


async def init_db(target: AsyncEngine = engine) -> None:
    """Create all tables. Run during app startup."""
    # Importing models registers every table on Base.metadata
    import shared.models.models  # noqa: F401

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(target: AsyncEngine = engine) -> None:
    """Dispose engine. Run during app shutdown."""
    await target.dispose()
