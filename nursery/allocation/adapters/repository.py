import abc
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from nursery.allocation.adapters.orm import allocation_ledger_table, batch_table, order_item_table
from nursery.allocation.domain import models


class AbstractOrderRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, order: models.Order) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, order_id: UUID) -> models.Order | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def order_id_for_allocation(self, allocation_id: UUID) -> UUID | None:
        raise NotImplementedError


class AbstractAllocationRepository(abc.ABC):
    @abc.abstractmethod
    async def tier1_reserved(self, product_id: UUID) -> int:
        raise NotImplementedError


class AbstractBatchRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, batch: models.Batch) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, batch_id: UUID) -> models.Batch | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_for_product(self, product_id: UUID) -> list[models.Batch]:
        raise NotImplementedError

    @abc.abstractmethod
    async def take(self, batch_id: UUID, qty: int) -> int | None:
        """Take qty off the batch if it has enough, returning what is left.

        Returns None and leaves the batch untouched when it has not.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def release(self, batch_id: UUID, qty: int) -> None:
        raise NotImplementedError


class AbstractProductRepository(abc.ABC):
    @abc.abstractmethod
    async def add(self, product: models.Product) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, product_id: UUID, lock: bool = False) -> models.Product | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_many(self, product_ids: list[UUID]) -> list[models.Product]:
        raise NotImplementedError


class AbstractAuditRepository(abc.ABC):
    @abc.abstractmethod
    def add_inventory_event(self, event: models.InventoryEvent) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def add_order_event(self, event: models.OrderEvent) -> None:
        raise NotImplementedError


class PGOrderRepository(AbstractOrderRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, order: models.Order) -> None:
        self._session.add(order)
        await self._session.flush()

    async def get(self, order_id: UUID) -> models.Order | None:
        """Load the order with its items and ledger rows, locked for update.

        Locks are always taken order row first, then its ledger rows, and
        batches last (through ``PGBatchRepository.take``/``release``). The
        items and allocations are read after the order lock is held, so they
        reflect whatever the previous holder committed.
        """
        # async sqlalchemy can't lazy load, so items and allocations are loaded eagerly
        result = await self._session.execute(
            sa.select(models.Order)
            .where(models.Order.id == order_id)  # type: ignore[arg-type]
            .options(selectinload(models.Order.items).selectinload(models.OrderItem.allocations))  # type: ignore
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            return None
        await self._session.execute(
            sa.select(allocation_ledger_table.c.id)
            .join(order_item_table, order_item_table.c.id == allocation_ledger_table.c.order_item_id)
            .where(order_item_table.c.order_id == order_id)
            .with_for_update(of=allocation_ledger_table)
        )
        return order

    async def order_id_for_allocation(self, allocation_id: UUID) -> UUID | None:
        result = await self._session.execute(
            sa.select(order_item_table.c.order_id)
            .join(allocation_ledger_table, allocation_ledger_table.c.order_item_id == order_item_table.c.id)
            .where(allocation_ledger_table.c.id == allocation_id)
        )
        return result.scalar_one_or_none()


class PGAllocationRepository(AbstractAllocationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def tier1_reserved(self, product_id: UUID) -> int:
        result = await self._session.execute(
            sa.select(sa.func.coalesce(sa.func.sum(allocation_ledger_table.c.quantity), 0)).where(
                allocation_ledger_table.c.product_id == product_id,
                allocation_ledger_table.c.tier == models.AllocationTier.PRODUCT,
                allocation_ledger_table.c.status == models.AllocationStatus.RESERVED,
            )
        )
        return int(result.scalar_one())


class PGBatchRepository(AbstractBatchRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, batch: models.Batch) -> None:
        self._session.add(batch)
        await self._session.flush()

    async def get(self, batch_id: UUID) -> models.Batch | None:
        return await self._session.get(models.Batch, batch_id)

    async def list_for_product(self, product_id: UUID) -> list[models.Batch]:
        result = await self._session.execute(
            sa.select(models.Batch).where(models.Batch.product_id == product_id)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())

    async def take(self, batch_id: UUID, qty: int) -> int | None:
        # check and decrement in one statement; concurrent pickers serialize on the row lock
        result = await self._session.execute(
            sa.update(batch_table)
            .where(batch_table.c.id == batch_id, batch_table.c.available_quantity >= qty)
            .values(available_quantity=batch_table.c.available_quantity - qty)
            .returning(batch_table.c.available_quantity)
        )
        return result.scalar_one_or_none()

    async def release(self, batch_id: UUID, qty: int) -> None:
        await self._session.execute(
            sa.update(batch_table)
            .where(batch_table.c.id == batch_id)
            .values(available_quantity=batch_table.c.available_quantity + qty)
        )


class PGProductRepository(AbstractProductRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, product: models.Product) -> None:
        self._session.add(product)
        await self._session.flush()

    async def get(self, product_id: UUID, lock: bool = False) -> models.Product | None:
        stmt = sa.select(models.Product).where(models.Product.id == product_id)  # type: ignore[arg-type]
        if lock:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, product_ids: list[UUID]) -> list[models.Product]:
        if not product_ids:
            return []
        result = await self._session.execute(
            sa.select(models.Product).where(models.Product.id.in_(product_ids))  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())


class PGAuditRepository(AbstractAuditRepository):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def add_inventory_event(self, event: models.InventoryEvent) -> None:
        self._session.add(event)

    def add_order_event(self, event: models.OrderEvent) -> None:
        self._session.add(event)
