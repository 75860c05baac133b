from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from authplane.domain.models import Base


FIXED_NOW = datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    # File-backed SQLite so every pooled connection sees the same schema.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'authplane.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW
