"""Two-tier stock allocation actions.

Tier 1 reserves stock at product level when an order is confirmed. Tier 2
assigns a concrete batch to each reservation while the order is picked.

Every action returns a result model instead of raising. Business failures
come back as ``success=False`` with an error message, and an oversell comes
back as warnings on a successful result because the order did go through.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Any, TypeVar
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.allocation.adapters import dao, dto
from nursery.allocation.adapters.cache import ats_cache
from nursery.allocation.domain import commands, models
from nursery.allocation.service_layer import messagebus, unit_of_work

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = "Not authenticated"

ResultT = TypeVar("ResultT", bound=dto.ActionResult)


@dataclass(frozen=True)
class RequestContext:
    actor_id: UUID | None
    org_id: UUID | None


async def _dispatch(
    cmd: commands.Command,
    uow: unit_of_work.AbstractUnitOfWork,
    failure: ResultT,
) -> tuple[Any, ResultT | None]:
    try:
        [result] = await messagebus.handle(cmd, uow)
    except models.AllocationError as e:
        logger.info("%s rejected: %s", type(cmd).__name__, e)
        return None, failure.model_copy(update={"error": str(e)})
    except Exception:
        logger.exception("Error handling %s", cmd)
        return None, failure
    return result, None


async def confirm_order_with_allocations(
    order_id: UUID, ctx: RequestContext, uow: unit_of_work.AbstractUnitOfWork
) -> dto.ConfirmOrderResult:
    if ctx.actor_id is None:
        return dto.ConfirmOrderResult(success=False, error=NOT_AUTHENTICATED)
    warnings, failed = await _dispatch(
        commands.ConfirmOrder(order_id=order_id, org_id=ctx.org_id, actor_id=ctx.actor_id),
        uow,
        dto.ConfirmOrderResult(success=False, error="Failed to confirm order"),
    )
    if failed is not None:
        return failed
    return dto.ConfirmOrderResult(
        success=True,
        has_oversell_warning=bool(warnings),
        oversell_items=[dto.OversellItem(**asdict(w)) for w in warnings],
    )


async def start_picking_order(
    order_id: UUID, ctx: RequestContext, uow: unit_of_work.AbstractUnitOfWork
) -> dto.StartPickingResult:
    if ctx.actor_id is None:
        return dto.StartPickingResult(success=False, error=NOT_AUTHENTICATED)
    pending, failed = await _dispatch(
        commands.StartPicking(order_id=order_id, org_id=ctx.org_id, actor_id=ctx.actor_id),
        uow,
        dto.StartPickingResult(success=False, error="Failed to start picking"),
    )
    if failed is not None:
        return failed
    return dto.StartPickingResult(
        success=True,
        pending_batch_selections=[dto.PendingBatchSelection(**asdict(p)) for p in pending],
    )


async def select_batch_for_allocation(
    allocation_id: UUID, batch_id: UUID, ctx: RequestContext, uow: unit_of_work.AbstractUnitOfWork
) -> dto.AllocationResult:
    if ctx.actor_id is None:
        return dto.AllocationResult(success=False, error=NOT_AUTHENTICATED)
    allocation, failed = await _dispatch(
        commands.SelectBatch(
            allocation_id=allocation_id, batch_id=batch_id, org_id=ctx.org_id, actor_id=ctx.actor_id
        ),
        uow,
        dto.AllocationResult(success=False, error="Failed to select batch"),
    )
    if failed is not None:
        return failed
    return dto.AllocationResult(
        success=True,
        allocation_id=allocation.id,
        tier=allocation.tier,
        status=allocation.status,
        quantity=allocation.quantity,
    )


async def mark_allocation_picked(
    allocation_id: UUID,
    ctx: RequestContext,
    uow: unit_of_work.AbstractUnitOfWork,
    picked_quantity: int | None = None,
) -> dto.MarkPickedResult:
    if ctx.actor_id is None:
        return dto.MarkPickedResult(success=False, error=NOT_AUTHENTICATED)
    outcome, failed = await _dispatch(
        commands.MarkPicked(
            allocation_id=allocation_id,
            picked_quantity=picked_quantity,
            org_id=ctx.org_id,
            actor_id=ctx.actor_id,
        ),
        uow,
        dto.MarkPickedResult(success=False, error="Failed to mark as picked"),
    )
    if failed is not None:
        return failed
    picked, shortage = outcome
    return dto.MarkPickedResult(success=True, picked_quantity=picked, shortage=shortage)


async def cancel_allocation(
    allocation_id: UUID,
    ctx: RequestContext,
    uow: unit_of_work.AbstractUnitOfWork,
    reason: str | None = None,
) -> dto.CancelAllocationResult:
    if ctx.actor_id is None:
        return dto.CancelAllocationResult(success=False, error=NOT_AUTHENTICATED)
    released, failed = await _dispatch(
        commands.CancelAllocation(
            allocation_id=allocation_id, reason=reason, org_id=ctx.org_id, actor_id=ctx.actor_id
        ),
        uow,
        dto.CancelAllocationResult(success=False, error="Failed to cancel allocation"),
    )
    if failed is not None:
        return failed
    return dto.CancelAllocationResult(success=True, quantity_released=released)


async def dispatch_order(
    order_id: UUID, ctx: RequestContext, uow: unit_of_work.AbstractUnitOfWork
) -> dto.DispatchOrderResult:
    if ctx.actor_id is None:
        return dto.DispatchOrderResult(success=False, error=NOT_AUTHENTICATED)
    shipped, failed = await _dispatch(
        commands.DispatchOrder(order_id=order_id, org_id=ctx.org_id, actor_id=ctx.actor_id),
        uow,
        dto.DispatchOrderResult(success=False, error="Failed to dispatch order"),
    )
    if failed is not None:
        return failed
    return dto.DispatchOrderResult(success=True, allocations_shipped=shipped)


async def void_order(
    order_id: UUID,
    ctx: RequestContext,
    uow: unit_of_work.AbstractUnitOfWork,
    reason: str | None = None,
) -> dto.VoidOrderResult:
    if ctx.actor_id is None:
        return dto.VoidOrderResult(success=False, error=NOT_AUTHENTICATED)
    released, failed = await _dispatch(
        commands.VoidOrder(order_id=order_id, reason=reason, org_id=ctx.org_id, actor_id=ctx.actor_id),
        uow,
        dto.VoidOrderResult(success=False, error="Failed to void order"),
    )
    if failed is not None:
        return failed
    return dto.VoidOrderResult(success=True, quantity_released=released)


def _ats_view(ats: models.ProductATS) -> dto.ProductATS:
    return dto.ProductATS(
        product_id=ats.product_id,
        calculated_ats=ats.calculated_ats,
        override_ats=ats.override_ats,
        effective_ats=ats.effective_ats,
        tier1_reserved=ats.tier1_reserved,
        stock_status=ats.stock_status,
        low_stock_threshold=ats.low_stock_threshold,
        allow_oversell=ats.allow_oversell,
    )


async def get_product_stock_status(
    product_id: UUID, ctx: RequestContext, session: AsyncSession
) -> dto.ProductStockStatusResult:
    try:
        cached = await ats_cache.get(product_id, ctx.org_id)
    except RedisError:
        logger.warning("ATS cache read failed for product %s", product_id, exc_info=True)
        cached = None
    if cached is not None:
        return dto.ProductStockStatusResult(data=dto.ProductATS(**cached))

    try:
        found = await dao.product_ats(ctx.org_id, [product_id], session)
    except Exception:
        logger.exception("Error fetching product ATS product_id=%s", product_id)
        return dto.ProductStockStatusResult(error="Failed to fetch product stock status")
    if product_id not in found:
        return dto.ProductStockStatusResult(error="Product not found")

    view = _ats_view(found[product_id])
    try:
        await ats_cache.set(product_id, ctx.org_id, view.model_dump(mode="json"))
    except RedisError:
        logger.warning("ATS cache write failed for product %s", product_id, exc_info=True)
    return dto.ProductStockStatusResult(data=view)


async def get_products_stock_status(
    product_ids: list[UUID], ctx: RequestContext, session: AsyncSession
) -> dto.ProductsStockStatusResult:
    if not product_ids:
        return dto.ProductsStockStatusResult(data={})
    try:
        found = await dao.product_ats(ctx.org_id, product_ids, session)
    except Exception:
        logger.exception("Error fetching products ATS")
        return dto.ProductsStockStatusResult(error="Failed to fetch product stock statuses")
    return dto.ProductsStockStatusResult(data={pid: _ats_view(ats) for pid, ats in found.items()})


async def get_available_batches(
    product_id: UUID,
    ctx: RequestContext,
    session: AsyncSession,
    variety_filter: str | None = None,
    location_filter: str | None = None,
) -> dto.BatchCandidatesResult:
    try:
        candidates = await dao.allocation_candidates(
            ctx.org_id, product_id, session, variety_filter=variety_filter, location_filter=location_filter
        )
    except Exception:
        logger.exception("Error fetching allocation candidates product_id=%s", product_id)
        return dto.BatchCandidatesResult(error="Failed to fetch available batches")
    return dto.BatchCandidatesResult(data=candidates)


async def get_order_allocations(
    order_id: UUID, ctx: RequestContext, session: AsyncSession
) -> dto.OrderAllocationsResult:
    try:
        allocations = await dao.order_allocations(ctx.org_id, order_id, session)
    except Exception:
        logger.exception("Error fetching order allocations order_id=%s", order_id)
        return dto.OrderAllocationsResult(error="Failed to fetch allocations")
    return dto.OrderAllocationsResult(data=allocations)


async def get_allocation_events(
    ctx: RequestContext,
    session: AsyncSession,
    allocation_id: UUID | None = None,
    order_id: UUID | None = None,
    order_item_id: UUID | None = None,
) -> dto.AllocationEventsResult:
    if not (allocation_id or order_id or order_item_id):
        return dto.AllocationEventsResult(error="Must provide allocation_id, order_id, or order_item_id")
    try:
        found = await dao.allocation_events(
            ctx.org_id, session, allocation_id=allocation_id, order_id=order_id, order_item_id=order_item_id
        )
    except Exception:
        logger.exception("Error fetching allocation events")
        return dto.AllocationEventsResult(error="Failed to fetch events")
    return dto.AllocationEventsResult(data=found)
