from dataclasses import dataclass
from uuid import UUID


class Event:
    pass


@dataclass
class OrderConfirmed(Event):
    order_id: UUID
    product_ids: list[UUID]
    has_oversell_warning: bool = False


@dataclass
class PickingStarted(Event):
    order_id: UUID
    product_ids: list[UUID]
    pending_selections: int


@dataclass
class BatchAllocated(Event):
    allocation_id: UUID
    product_id: UUID
    batch_id: UUID
    quantity: int


@dataclass
class AllocationPicked(Event):
    allocation_id: UUID
    product_id: UUID
    picked_quantity: int
    shortage: int


@dataclass
class AllocationCancelled(Event):
    allocation_id: UUID
    product_id: UUID
    batch_id: UUID | None
    quantity_released: int


@dataclass
class OrderDispatched(Event):
    order_id: UUID
    product_ids: list[UUID]


@dataclass
class OrderVoided(Event):
    order_id: UUID
    product_ids: list[UUID]
    quantity_released: int
