"""
Shared pytest fixtures for all tests.

Provides repository, cache and clock fakes plus an async SQLite database.
"""

import os

# Must be set before app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.cache import InMemoryPromptCache
from app.domain.repositories.in_memory_prompt_repository import InMemoryPromptRepository


class ManualClock:
    """Monotonic clock for the cache that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# Monday 18 October 2027, 14:05 in Copenhagen
FIXED_NOW = datetime(2027, 10, 18, 14, 5, tzinfo=ZoneInfo("Europe/Copenhagen"))


# =============================================================================
# IN-MEMORY FIXTURES
# =============================================================================

@pytest.fixture
def repo():
    return InMemoryPromptRepository()


@pytest.fixture
def cache_clock():
    return ManualClock()


@pytest.fixture
def cache(cache_clock):
    return InMemoryPromptCache(clock=cache_clock)


@pytest.fixture
def fixed_clock():
    """Wall clock used for the trailing time paragraph."""
    return lambda: FIXED_NOW


# =============================================================================
# ASYNC DATABASE FIXTURES
# =============================================================================

@pytest.fixture
async def async_db_session():
    """
    Fresh async in-memory SQLite database with all tables, per test.

    Uses StaticPool so every session shares the one in-memory connection.
    """
    from app.core.database import Base
    import app.domain.models  # noqa: F401  (registers tables)

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
async def file_db_sessions(tmp_path):
    """
    Session factory over a file-backed SQLite database.

    Each session gets its own connection, so one session's commit is seen
    by another the way two concurrent requests would see it.
    """
    from app.core.database import Base
    import app.domain.models  # noqa: F401  (registers tables)

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'prompts.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
