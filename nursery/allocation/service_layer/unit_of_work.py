from __future__ import annotations

import abc
from collections.abc import Iterator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_scoped_session

from nursery.allocation.adapters import repository
from nursery.allocation.adapters.db import SESSION_FACTORY
from nursery.allocation.domain import events


class AbstractUnitOfWork(abc.ABC):
    orders: repository.AbstractOrderRepository
    allocations: repository.AbstractAllocationRepository
    batches: repository.AbstractBatchRepository
    products: repository.AbstractProductRepository
    audit: repository.AbstractAuditRepository

    def __init__(self) -> None:
        self._events: list[events.Event] = []

    async def __aenter__(self) -> AbstractUnitOfWork:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.rollback()

    def add_event(self, event: events.Event) -> None:
        self._events.append(event)

    def collect_new_events(self) -> Iterator[events.Event]:
        while self._events:
            yield self._events.pop(0)

    async def commit(self) -> None:
        await self._commit()

    @abc.abstractmethod
    async def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def rollback(self) -> None:
        raise NotImplementedError


class PGUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory: async_scoped_session | None = None) -> None:
        super().__init__()
        self._session_factory = session_factory or SESSION_FACTORY
        self._session: AsyncSession | None = None

    async def __aenter__(self) -> AbstractUnitOfWork:
        self._session = self._session_factory()
        self.orders = repository.PGOrderRepository(self._session)
        self.allocations = repository.PGAllocationRepository(self._session)
        self.batches = repository.PGBatchRepository(self._session)
        self.products = repository.PGProductRepository(self._session)
        self.audit = repository.PGAuditRepository(self._session)
        return await super().__aenter__()

    async def __aexit__(self, *args: Any) -> None:
        try:
            await super().__aexit__(*args)
        finally:
            await self._session_factory.remove()

    async def _commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
