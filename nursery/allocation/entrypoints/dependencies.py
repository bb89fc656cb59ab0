import functools
from collections.abc import AsyncGenerator
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.allocation.adapters.db import DB
from nursery.allocation.service_layer.actions import RequestContext
from nursery.allocation.service_layer.unit_of_work import AbstractUnitOfWork, PGUnitOfWork
from nursery.config import config


@functools.lru_cache
def db() -> DB:
    return DB(config.PG_DSN)


async def session(db: DB = Depends(db)) -> AsyncGenerator[AsyncSession, None]:
    async with db.session() as session:
        yield session


def allocation_uow() -> AbstractUnitOfWork:
    return PGUnitOfWork()


def request_context(
    x_actor_id: UUID | None = Header(default=None),
    x_org_id: UUID | None = Header(default=None),
) -> RequestContext:
    return RequestContext(actor_id=x_actor_id, org_id=x_org_id)
