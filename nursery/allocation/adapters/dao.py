from datetime import date
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.allocation.adapters.dto import AllocationEvent, BatchCandidate, OrderAllocation
from nursery.allocation.adapters.orm import (
    allocation_ledger_table,
    batch_table,
    inventory_event_table,
    order_item_table,
    order_table,
    product_table,
)
from nursery.allocation.domain import models

_saleable = sa.or_(
    batch_table.c.sales_status.is_(None),
    batch_table.c.sales_status.not_in(sorted(models.UNSALEABLE_SALES_STATUSES)),
)


async def product_ats(
    org_id: UUID, product_ids: list[UUID], session: AsyncSession
) -> dict[UUID, models.ProductATS]:
    if not product_ids:
        return {}
    products = (
        await session.execute(
            sa.select(product_table).where(
                product_table.c.id.in_(product_ids), product_table.c.org_id == org_id
            )
        )
    ).fetchall()
    calculated = dict(
        (
            await session.execute(
                sa.select(batch_table.c.product_id, sa.func.sum(batch_table.c.available_quantity))
                .where(batch_table.c.product_id.in_(product_ids), _saleable)
                .group_by(batch_table.c.product_id)
            )
        ).fetchall()
    )
    reserved = dict(
        (
            await session.execute(
                sa.select(allocation_ledger_table.c.product_id, sa.func.sum(allocation_ledger_table.c.quantity))
                .where(
                    allocation_ledger_table.c.product_id.in_(product_ids),
                    allocation_ledger_table.c.tier == models.AllocationTier.PRODUCT,
                    allocation_ledger_table.c.status == models.AllocationStatus.RESERVED,
                )
                .group_by(allocation_ledger_table.c.product_id)
            )
        ).fetchall()
    )
    return {
        p.id: models.ProductATS(
            product_id=p.id,
            calculated_ats=int(calculated.get(p.id) or 0),
            override_ats=p.ats_override,
            tier1_reserved=int(reserved.get(p.id) or 0),
            low_stock_threshold=p.low_stock_threshold,
            allow_oversell=p.allow_oversell,
        )
        for p in products
    }


async def allocation_candidates(
    org_id: UUID,
    product_id: UUID,
    session: AsyncSession,
    variety_filter: str | None = None,
    location_filter: str | None = None,
) -> list[BatchCandidate]:
    stmt = (
        sa.select(batch_table)
        .where(
            batch_table.c.org_id == org_id,
            batch_table.c.product_id == product_id,
            batch_table.c.available_quantity > 0,
            _saleable,
        )
        .order_by(batch_table.c.planted_at.asc().nulls_last(), batch_table.c.batch_number)
    )
    if variety_filter:
        stmt = stmt.where(batch_table.c.variety_name.ilike(f"%{variety_filter}%"))
    if location_filter:
        stmt = stmt.where(batch_table.c.location_name.ilike(f"%{location_filter}%"))
    result = await session.execute(stmt)
    today = date.today()
    return [
        BatchCandidate(
            batch_id=r.id,
            batch_number=r.batch_number,
            variety_name=r.variety_name,
            variety_id=r.variety_id,
            available_quantity=r.available_quantity,
            location_id=r.location_id,
            location_name=r.location_name,
            growing_status=r.growing_status,
            sales_status=r.sales_status,
            age_weeks=max(0, (today - r.planted_at).days // 7) if r.planted_at else 0,
            planted_at=r.planted_at,
        )
        for r in result.fetchall()
    ]


async def order_allocations(org_id: UUID, order_id: UUID, session: AsyncSession) -> list[OrderAllocation]:
    a = allocation_ledger_table
    result = await session.execute(
        sa.select(
            a,
            product_table.c.name.label("product_name"),
            batch_table.c.batch_number,
            batch_table.c.variety_name,
        )
        .join(order_item_table, a.c.order_item_id == order_item_table.c.id)
        .join(order_table, order_item_table.c.order_id == order_table.c.id)
        .outerjoin(product_table, a.c.product_id == product_table.c.id)
        .outerjoin(batch_table, a.c.batch_id == batch_table.c.id)
        .where(order_table.c.id == order_id, order_table.c.org_id == org_id)
        .order_by(a.c.reserved_at.asc())
    )
    return [OrderAllocation(**r._mapping) for r in result.fetchall()]


async def allocation_events(
    org_id: UUID,
    session: AsyncSession,
    allocation_id: UUID | None = None,
    order_id: UUID | None = None,
    order_item_id: UUID | None = None,
) -> list[AllocationEvent]:
    e = inventory_event_table
    stmt = (
        sa.select(e)
        .join(order_table, e.c.order_id == order_table.c.id)
        .where(order_table.c.org_id == org_id)
        .order_by(e.c.occurred_at.desc())
    )
    if allocation_id:
        stmt = stmt.where(e.c.allocation_id == allocation_id)
    elif order_id:
        stmt = stmt.where(e.c.order_id == order_id)
    elif order_item_id:
        stmt = stmt.where(e.c.order_item_id == order_item_id)
    else:
        raise ValueError("Must provide allocation_id, order_id, or order_item_id")
    result = await session.execute(stmt)
    return [
        AllocationEvent(
            id=r.id,
            event_type=r.event_type,
            quantity_change=r.quantity_change,
            occurred_at=r.occurred_at,
            metadata=r.details or {},
            actor_id=r.actor_id,
        )
        for r in result.fetchall()
    ]
