from asyncio import current_task
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_scoped_session, async_sessionmaker, create_async_engine

from nursery.config import config

ENGINE = create_async_engine(config.PG_DSN, echo=False, pool_pre_ping=True)
SESSION_FACTORY = async_scoped_session(
    async_sessionmaker(bind=ENGINE, class_=AsyncSession, expire_on_commit=False),
    scopefunc=current_task,
)


class DB:
    def __init__(self, url: str) -> None:
        self._engine = create_async_engine(url, echo=False)
        self._session_factory = async_scoped_session(
            async_sessionmaker(bind=self._engine, class_=AsyncSession, expire_on_commit=False),
            scopefunc=current_task,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        session: AsyncSession = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await self._session_factory.remove()
