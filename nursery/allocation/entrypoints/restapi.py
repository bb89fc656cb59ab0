import logging
from typing import TypeVar
from uuid import UUID

from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from nursery.allocation.adapters import dto
from nursery.allocation.adapters.orm import start_mappers
from nursery.allocation.entrypoints.dependencies import allocation_uow, request_context, session
from nursery.allocation.service_layer import actions
from nursery.allocation.service_layer.actions import RequestContext
from nursery.allocation.service_layer.unit_of_work import AbstractUnitOfWork
from nursery.config import config
from nursery.log import configure_logging

configure_logging(config.LOG_LEVEL)
logger = logging.getLogger("nursery")

app = FastAPI(title="Nursery Allocation")
start_mappers()

ResultT = TypeVar("ResultT", bound=BaseModel)


@app.exception_handler(Exception)
async def _unhandled_exc(_req: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _respond(result: ResultT, response: Response) -> ResultT:
    if getattr(result, "success", True) is False or getattr(result, "error", None):
        response.status_code = 400
    return result


@app.post("/orders/{order_id}/confirm", response_model=dto.ConfirmOrderResult)
async def confirm_order(
    order_id: UUID,
    response: Response,
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.ConfirmOrderResult:
    return _respond(await actions.confirm_order_with_allocations(order_id, ctx, uow), response)


@app.post("/orders/{order_id}/start-picking", response_model=dto.StartPickingResult)
async def start_picking(
    order_id: UUID,
    response: Response,
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.StartPickingResult:
    return _respond(await actions.start_picking_order(order_id, ctx, uow), response)


@app.post("/orders/{order_id}/dispatch", response_model=dto.DispatchOrderResult)
async def dispatch_order(
    order_id: UUID,
    response: Response,
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.DispatchOrderResult:
    return _respond(await actions.dispatch_order(order_id, ctx, uow), response)


@app.post("/orders/{order_id}/void", response_model=dto.VoidOrderResult)
async def void_order(
    order_id: UUID,
    response: Response,
    reason: str | None = Body(default=None, embed=True),
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.VoidOrderResult:
    return _respond(await actions.void_order(order_id, ctx, uow, reason=reason), response)


@app.get("/orders/{order_id}/allocations", response_model=dto.OrderAllocationsResult)
async def order_allocations(
    order_id: UUID,
    response: Response,
    ctx: RequestContext = Depends(request_context),
    session: AsyncSession = Depends(session),
) -> dto.OrderAllocationsResult:
    return _respond(await actions.get_order_allocations(order_id, ctx, session), response)


@app.post("/allocations/{allocation_id}/select-batch", response_model=dto.AllocationResult)
async def select_batch(
    allocation_id: UUID,
    response: Response,
    batch_id: UUID = Body(embed=True),
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.AllocationResult:
    return _respond(await actions.select_batch_for_allocation(allocation_id, batch_id, ctx, uow), response)


@app.post("/allocations/{allocation_id}/picked", response_model=dto.MarkPickedResult)
async def mark_picked(
    allocation_id: UUID,
    response: Response,
    picked_quantity: int | None = Body(default=None, embed=True),
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.MarkPickedResult:
    return _respond(
        await actions.mark_allocation_picked(allocation_id, ctx, uow, picked_quantity=picked_quantity),
        response,
    )


@app.post("/allocations/{allocation_id}/cancel", response_model=dto.CancelAllocationResult)
async def cancel_allocation(
    allocation_id: UUID,
    response: Response,
    reason: str | None = Body(default=None, embed=True),
    ctx: RequestContext = Depends(request_context),
    uow: AbstractUnitOfWork = Depends(allocation_uow),
) -> dto.CancelAllocationResult:
    return _respond(await actions.cancel_allocation(allocation_id, ctx, uow, reason=reason), response)


@app.get("/allocation-events", response_model=dto.AllocationEventsResult)
async def allocation_events(
    response: Response,
    allocation_id: UUID | None = None,
    order_id: UUID | None = None,
    order_item_id: UUID | None = None,
    ctx: RequestContext = Depends(request_context),
    session: AsyncSession = Depends(session),
) -> dto.AllocationEventsResult:
    return _respond(
        await actions.get_allocation_events(
            ctx, session, allocation_id=allocation_id, order_id=order_id, order_item_id=order_item_id
        ),
        response,
    )


@app.get("/products/stock-status", response_model=dto.ProductsStockStatusResult)
async def products_stock_status(
    response: Response,
    product_ids: list[UUID] = Query(default=[]),
    ctx: RequestContext = Depends(request_context),
    session: AsyncSession = Depends(session),
) -> dto.ProductsStockStatusResult:
    return _respond(await actions.get_products_stock_status(product_ids, ctx, session), response)


@app.get("/products/{product_id}/stock-status", response_model=dto.ProductStockStatusResult)
async def product_stock_status(
    product_id: UUID,
    response: Response,
    ctx: RequestContext = Depends(request_context),
    session: AsyncSession = Depends(session),
) -> dto.ProductStockStatusResult:
    result = await actions.get_product_stock_status(product_id, ctx, session)
    if result.error == "Product not found":
        response.status_code = 404
        return result
    return _respond(result, response)


@app.get("/products/{product_id}/batches", response_model=dto.BatchCandidatesResult)
async def available_batches(
    product_id: UUID,
    response: Response,
    variety: str | None = None,
    location: str | None = None,
    ctx: RequestContext = Depends(request_context),
    session: AsyncSession = Depends(session),
) -> dto.BatchCandidatesResult:
    return _respond(
        await actions.get_available_batches(
            product_id, ctx, session, variety_filter=variety, location_filter=location
        ),
        response,
    )
