"""Test fixtures for the CRM.

Provides:
- A file-backed SQLite database (aiosqlite) per test with all tables created
- A session factory matching src.crm.core.database.get_session
- CrmRepository and BoardAssembler bound to that database
- A fixed NOW (Thursday 2026-08-13 15:30 UTC) for deterministic timestamps
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

import src.crm.deals.models  # noqa: F401 -- registers tables on Base.metadata
from src.crm.core.database import Base, create_engine_for_url
from src.crm.deals.board import BoardAssembler
from src.crm.deals.repository import CrmRepository

NOW = datetime(2026, 8, 13, 15, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with the CRM schema."""
    db_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Async generator function yielding sessions, like get_session()."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def repo(session_factory) -> CrmRepository:
    return CrmRepository(session_factory=session_factory)


@pytest.fixture
def assembler(session_factory) -> BoardAssembler:
    return BoardAssembler(session_factory=session_factory, timezone="UTC")


@pytest.fixture
def count_rows(engine):
    """Count rows of a model's table directly, bypassing the repository."""

    async def _count(model) -> int:
        async with AsyncSession(engine) as session:
            result = await session.execute(select(func.count()).select_from(model))
            return result.scalar_one()

    return _count


@pytest.fixture
def now() -> datetime:
    return NOW
