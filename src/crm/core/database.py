"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for all CRM tables
- UTCDateTime: Column type that stores UTC and always returns aware datetimes
- get_engine(): Lazily created async engine singleton
- get_session(): Session factory generator used by repositories
- init_db() / close_db(): Startup table creation and shutdown disposal

SQLite connections get PRAGMA foreign_keys=ON so that ON DELETE CASCADE
behaves the same as on PostgreSQL, WAL journaling, and an explicit BEGIN
for every transaction so multi-statement reads see one snapshot.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from src.crm.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with dialect-appropriate pool settings."""
    engine_kwargs: dict[str, Any] = {"echo": echo}
    if not _is_sqlite(url):
        engine_kwargs["pool_size"] = 20
        engine_kwargs["max_overflow"] = 10
        engine_kwargs["pool_pre_ping"] = True

    engine = create_async_engine(url, **engine_kwargs)

    if _is_sqlite(url):

        @event.listens_for(engine.sync_engine, "connect")
        def configure_sqlite_connection(dbapi_conn: Any, connection_record: Any) -> None:
            # Hand transaction control to SQLAlchemy; BEGIN is emitted below
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            # SQLite ignores foreign keys (and so cascades) unless asked per connection
            cursor.execute("PRAGMA foreign_keys=ON")
            # WAL keeps a reader's snapshot while other connections commit
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def begin_sqlite_transaction(conn: Any) -> None:
            # The driver only opens transactions before writes; reads need one too
            conn.exec_driver_sql("BEGIN")

    return engine


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for_url(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for CRM models."""


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    PostgreSQL keeps the offset natively; SQLite drops it, so values read
    back without tzinfo are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the application engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create all CRM tables if they don't exist."""
    # Importing the models registers their tables on Base.metadata
    import src.crm.deals.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db() -> None:
    """Run a trivial query; raises if the database is unreachable."""
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
