from asyncio import current_task
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_scoped_session,
    async_sessionmaker,
    create_async_engine,
)

from nursery.allocation.adapters.orm import metadata, start_mappers
from nursery.config import config


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(config.PG_DSN)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)
            await conn.run_sync(metadata.create_all)
    except (OSError, SQLAlchemyError) as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL is not reachable: {e}")
    start_mappers()
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_scoped_session:
    return async_scoped_session(
        async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False),
        scopefunc=current_task,
    )


@pytest.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, Any]:
    session = AsyncSession(bind=engine, expire_on_commit=False)
    yield session
    await session.close()
