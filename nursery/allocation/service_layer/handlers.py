import logging
from typing import Protocol, TypeVar
from uuid import UUID

import orjson

from nursery.allocation import constants
from nursery.allocation.adapters.cache import ats_cache
from nursery.allocation.adapters.redis import redis
from nursery.allocation.domain import commands, events, models
from nursery.allocation.service_layer import unit_of_work

logger = logging.getLogger(__name__)

P = TypeVar("P", contravariant=True)
R = TypeVar("R", covariant=True)


class Handler(Protocol[P, R]):
    async def handle(self, cmd: P) -> R:
        ...


class ConfirmOrderCmdHandler(Handler[commands.ConfirmOrder, list[models.OversellWarning]]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.ConfirmOrder) -> list[models.OversellWarning]:
        async with self._uow:
            order = await _get_order(self._uow, cmd)
            if not order.items:
                raise models.InvalidTransition(f"Order {order.id} has no items to confirm")
            order.ensure_can_transition(models.OrderStatus.CONFIRMED)

            # lock products in id order so concurrent confirmations can't deadlock
            ats: dict[UUID, models.ProductATS] = {}
            for product_id in order.product_ids:
                product = await self._uow.products.get(product_id, lock=True)
                if product is None:
                    raise models.NotFound(f"Product {product_id} not found")
                batches = await self._uow.batches.list_for_product(product_id)
                reserved = await self._uow.allocations.tier1_reserved(product_id)
                ats[product_id] = models.ProductATS.calculate(product, batches, reserved)

            warnings: list[models.OversellWarning] = []
            for item in order.items:
                product_ats = ats[item.product_id]
                requested = item.outstanding_quantity
                if requested > product_ats.effective_ats:
                    if not product_ats.allow_oversell:
                        raise models.InsufficientStock(
                            f"Insufficient stock for product {item.product_id}: "
                            f"requested {requested}, available {product_ats.effective_ats}"
                        )
                    warnings.append(
                        models.OversellWarning(
                            order_item_id=item.id,
                            product_id=item.product_id,
                            quantity=requested,
                            warning=(
                                f"Requested {requested} but only {product_ats.effective_ats} "
                                "available to sell; reserved as oversell"
                            ),
                        )
                    )
                ats[item.product_id] = product_ats.reserve(requested)

            order.transition(models.OrderStatus.CONFIRMED)
            oversold = {w.order_item_id for w in warnings}
            now = models.utcnow()
            for item in order.items:
                allocation = item.reserve(now)
                self._uow.audit.add_inventory_event(
                    models.InventoryEvent(
                        event_type="reserved",
                        quantity_change=-allocation.quantity,
                        allocation_id=allocation.id,
                        order_id=order.id,
                        order_item_id=item.id,
                        actor_id=cmd.actor_id,
                        details={"tier": "product", "oversell": item.id in oversold},
                        occurred_at=now,
                    )
                )
            self._uow.audit.add_order_event(
                models.OrderEvent(
                    org_id=order.org_id,
                    order_id=order.id,
                    event_type="order_confirmed",
                    description="Order confirmed with Tier 1 (product-level) allocations",
                    created_by=cmd.actor_id,
                    created_at=now,
                )
            )
            self._uow.add_event(events.OrderConfirmed(order.id, order.product_ids, bool(warnings)))
            await self._uow.commit()
            if warnings:
                logger.info("Order %s confirmed with %d oversell warning(s)", order.id, len(warnings))
            return warnings


class StartPickingCmdHandler(Handler[commands.StartPicking, list[models.PendingBatchSelection]]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.StartPicking) -> list[models.PendingBatchSelection]:
        async with self._uow:
            order = await _get_order(self._uow, cmd)
            order.transition(models.OrderStatus.PICKING)
            pending = [
                a
                for a in order.allocations
                if a.tier == models.AllocationTier.PRODUCT and a.status == models.AllocationStatus.RESERVED
            ]
            products = await self._uow.products.get_many(sorted({a.product_id for a in pending}))
            names = {p.id: p.name for p in products}
            self._uow.audit.add_order_event(
                models.OrderEvent(
                    org_id=order.org_id,
                    order_id=order.id,
                    event_type="picking_started",
                    description="Picking started - batch selection required",
                    created_by=cmd.actor_id,
                )
            )
            self._uow.add_event(events.PickingStarted(order.id, order.product_ids, len(pending)))
            await self._uow.commit()
            return [
                models.PendingBatchSelection(
                    allocation_id=a.id,
                    order_item_id=a.order_item_id,
                    product_id=a.product_id,
                    product_name=names.get(a.product_id, ""),
                    quantity=a.quantity,
                )
                for a in pending
            ]


class SelectBatchCmdHandler(Handler[commands.SelectBatch, models.Allocation]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.SelectBatch) -> models.Allocation:
        async with self._uow:
            order, allocation = await _get_allocation(self._uow, cmd)
            batch = await self._uow.batches.get(cmd.batch_id)
            if batch is None:
                raise models.NotFound(f"Batch {cmd.batch_id} not found")
            if batch.org_id != cmd.org_id:
                raise models.NotAuthorized("Not authorized to allocate from this batch")
            if batch.product_id != allocation.product_id:
                raise models.InvalidTransition(
                    f"Batch {batch.batch_number} does not belong to product {allocation.product_id}"
                )
            allocation.check_transition_to_batch()

            remaining = await self._uow.batches.take(batch.id, allocation.quantity)
            if remaining is None:
                logger.info("Batch %s short for allocation %s", batch.batch_number, allocation.id)
                raise models.InsufficientStock(
                    f"Batch {batch.batch_number} does not have {allocation.quantity} available"
                )
            now = models.utcnow()
            allocation.transition_to_batch(batch.id, now)
            self._uow.audit.add_inventory_event(
                models.InventoryEvent(
                    event_type="allocated",
                    quantity_change=-allocation.quantity,
                    allocation_id=allocation.id,
                    order_id=order.id,
                    order_item_id=allocation.order_item_id,
                    batch_id=batch.id,
                    actor_id=cmd.actor_id,
                    details={"tier": "batch", "batch_remaining": remaining},
                    occurred_at=now,
                )
            )
            self._uow.add_event(
                events.BatchAllocated(allocation.id, allocation.product_id, batch.id, allocation.quantity)
            )
            await self._uow.commit()
            return allocation


class MarkPickedCmdHandler(Handler[commands.MarkPicked, tuple[int, int]]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.MarkPicked) -> tuple[int, int]:
        async with self._uow:
            order, allocation = await _get_allocation(self._uow, cmd)
            now = models.utcnow()
            shortage = allocation.mark_picked(cmd.picked_quantity, now)
            self._uow.audit.add_inventory_event(
                models.InventoryEvent(
                    event_type="picked",
                    quantity_change=0,
                    allocation_id=allocation.id,
                    order_id=order.id,
                    order_item_id=allocation.order_item_id,
                    batch_id=allocation.batch_id,
                    actor_id=cmd.actor_id,
                    details={"picked_quantity": allocation.picked_quantity, "shortage": shortage},
                    occurred_at=now,
                )
            )
            self._uow.add_event(
                events.AllocationPicked(allocation.id, allocation.product_id, allocation.picked_quantity, shortage)
            )
            await self._uow.commit()
            return allocation.picked_quantity, shortage


class CancelAllocationCmdHandler(Handler[commands.CancelAllocation, int]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.CancelAllocation) -> int:
        async with self._uow:
            order, allocation = await _get_allocation(self._uow, cmd)
            released = await _cancel(self._uow, allocation, order.id, cmd.reason, cmd.actor_id)
            if released:
                self._uow.add_event(
                    events.AllocationCancelled(allocation.id, allocation.product_id, allocation.batch_id, released)
                )
            await self._uow.commit()
            return released


class DispatchOrderCmdHandler(Handler[commands.DispatchOrder, int]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.DispatchOrder) -> int:
        async with self._uow:
            order = await _get_order(self._uow, cmd)
            order.ensure_can_transition(models.OrderStatus.DISPATCHED)
            active = [a for a in order.allocations if a.is_active]
            unpicked = [a for a in active if a.status != models.AllocationStatus.PICKED]
            if unpicked:
                raise models.InvalidTransition(
                    f"Cannot dispatch order - {len(unpicked)} allocation(s) have not been picked"
                )
            order.transition(models.OrderStatus.DISPATCHED)
            now = models.utcnow()
            for allocation in active:
                allocation.ship()
                self._uow.audit.add_inventory_event(
                    models.InventoryEvent(
                        event_type="shipped",
                        quantity_change=0,
                        allocation_id=allocation.id,
                        order_id=order.id,
                        order_item_id=allocation.order_item_id,
                        batch_id=allocation.batch_id,
                        actor_id=cmd.actor_id,
                        details={"picked_quantity": allocation.picked_quantity},
                        occurred_at=now,
                    )
                )
            self._uow.audit.add_order_event(
                models.OrderEvent(
                    org_id=order.org_id,
                    order_id=order.id,
                    event_type="order_dispatched",
                    description=f"Order dispatched with {len(active)} picked allocation(s)",
                    created_by=cmd.actor_id,
                    created_at=now,
                )
            )
            self._uow.add_event(events.OrderDispatched(order.id, order.product_ids))
            await self._uow.commit()
            return len(active)


class VoidOrderCmdHandler(Handler[commands.VoidOrder, int]):
    def __init__(self, uow: unit_of_work.AbstractUnitOfWork) -> None:
        self._uow = uow

    async def handle(self, cmd: commands.VoidOrder) -> int:
        async with self._uow:
            order = await _get_order(self._uow, cmd)
            order.transition(models.OrderStatus.VOID)
            reason = cmd.reason or "Order voided"
            released = 0
            for allocation in order.allocations:
                if not allocation.is_terminal:
                    released += await _cancel(self._uow, allocation, order.id, reason, cmd.actor_id)
            self._uow.audit.add_order_event(
                models.OrderEvent(
                    org_id=order.org_id,
                    order_id=order.id,
                    event_type="order_voided",
                    description=f"Order voided: {reason}",
                    created_by=cmd.actor_id,
                )
            )
            self._uow.add_event(events.OrderVoided(order.id, order.product_ids, released))
            await self._uow.commit()
            return released


async def _get_order(
    uow: unit_of_work.AbstractUnitOfWork,
    cmd: commands.ConfirmOrder | commands.StartPicking | commands.DispatchOrder | commands.VoidOrder,
) -> models.Order:
    order = await uow.orders.get(cmd.order_id)
    if order is None:
        raise models.NotFound(f"Order {cmd.order_id} not found")
    order.ensure_org(cmd.org_id)
    return order


async def _get_allocation(
    uow: unit_of_work.AbstractUnitOfWork,
    cmd: commands.SelectBatch | commands.MarkPicked | commands.CancelAllocation,
) -> tuple[models.Order, models.Allocation]:
    # the owning order is locked before the row itself, as on every other write path
    order_id = await uow.orders.order_id_for_allocation(cmd.allocation_id)
    order = await uow.orders.get(order_id) if order_id is not None else None
    if order is None:
        raise models.NotFound(f"Allocation {cmd.allocation_id} not found")
    order.ensure_org(cmd.org_id)
    allocation = next(a for a in order.allocations if a.id == cmd.allocation_id)
    return order, allocation


async def _cancel(
    uow: unit_of_work.AbstractUnitOfWork,
    allocation: models.Allocation,
    order_id: UUID | None,
    reason: str | None,
    actor_id: UUID | None,
) -> int:
    tier = allocation.tier
    released = allocation.cancel(reason)
    if not released:
        return 0
    # product-tier quantity flows back into ATS once the reservation stops counting
    if tier == models.AllocationTier.BATCH:
        await uow.batches.release(allocation.batch_id, released)
    uow.audit.add_inventory_event(
        models.InventoryEvent(
            event_type="cancelled",
            quantity_change=released,
            allocation_id=allocation.id,
            order_id=order_id,
            order_item_id=allocation.order_item_id,
            batch_id=allocation.batch_id,
            actor_id=actor_id,
            details={"tier": tier.value, "reason": reason},
            occurred_at=allocation.cancelled_at,
        )
    )
    return released


CHANNELS: dict[type[events.Event], str] = {
    events.OrderConfirmed: constants.ORDER_CONFIRMED_CHANNEL,
    events.PickingStarted: constants.PICKING_STARTED_CHANNEL,
    events.BatchAllocated: constants.BATCH_ALLOCATED_CHANNEL,
    events.AllocationPicked: constants.ALLOCATION_PICKED_CHANNEL,
    events.AllocationCancelled: constants.ALLOCATION_CANCELLED_CHANNEL,
    events.OrderDispatched: constants.ORDER_DISPATCHED_CHANNEL,
    events.OrderVoided: constants.ORDER_VOIDED_CHANNEL,
}


def revalidation_paths(event: events.Event) -> list[str]:
    if isinstance(event, events.OrderConfirmed):
        return ["/sales/orders", f"/sales/orders/{event.order_id}"]
    if isinstance(event, events.PickingStarted):
        return ["/sales/orders", "/sales/picking", f"/sales/orders/{event.order_id}"]
    if isinstance(event, (events.BatchAllocated, events.AllocationPicked)):
        return ["/sales/picking"]
    if isinstance(event, events.AllocationCancelled):
        return ["/sales/orders", "/sales/picking"]
    if isinstance(event, (events.OrderDispatched, events.OrderVoided)):
        return ["/sales/orders", "/sales/picking", f"/sales/orders/{event.order_id}"]
    return []


def affected_products(event: events.Event) -> list[UUID]:
    if hasattr(event, "product_ids"):
        return list(event.product_ids)
    return [event.product_id]  # type: ignore[attr-defined]


async def invalidate_cache(event: events.Event) -> None:
    await ats_cache.invalidate(affected_products(event), revalidation_paths(event))


async def publish_event(event: events.Event) -> None:
    await redis.publish(CHANNELS[type(event)], orjson.dumps(event))


EVENT_HANDLERS = [invalidate_cache, publish_event]
