from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from nursery.allocation.domain.models import AllocationStatus, AllocationTier, StockStatus


class ActionResult(BaseModel):
    success: bool
    error: str | None = None


class OversellItem(BaseModel):
    order_item_id: UUID
    product_id: UUID
    quantity: int
    warning: str


class ConfirmOrderResult(ActionResult):
    has_oversell_warning: bool = False
    oversell_items: list[OversellItem] = Field(default_factory=list)


class PendingBatchSelection(BaseModel):
    allocation_id: UUID
    order_item_id: UUID
    product_id: UUID
    product_name: str
    quantity: int


class StartPickingResult(ActionResult):
    pending_batch_selections: list[PendingBatchSelection] = Field(default_factory=list)


class AllocationResult(ActionResult):
    allocation_id: UUID | None = None
    tier: AllocationTier | None = None
    status: AllocationStatus | None = None
    quantity: int | None = None


class MarkPickedResult(ActionResult):
    picked_quantity: int | None = None
    shortage: int | None = None


class CancelAllocationResult(ActionResult):
    quantity_released: int | None = None


class DispatchOrderResult(ActionResult):
    allocations_shipped: int | None = None


class VoidOrderResult(ActionResult):
    quantity_released: int | None = None


class ProductATS(BaseModel):
    product_id: UUID
    calculated_ats: int
    override_ats: int | None
    effective_ats: int
    tier1_reserved: int
    stock_status: StockStatus
    low_stock_threshold: int
    allow_oversell: bool


class ProductStockStatusResult(BaseModel):
    data: ProductATS | None = None
    error: str | None = None


class ProductsStockStatusResult(BaseModel):
    data: dict[UUID, ProductATS] | None = None
    error: str | None = None


class BatchCandidate(BaseModel):
    batch_id: UUID
    batch_number: str
    variety_name: str | None
    variety_id: UUID | None
    available_quantity: int
    location_id: UUID | None
    location_name: str | None
    growing_status: str | None
    sales_status: str | None
    age_weeks: int
    planted_at: date | None


class BatchCandidatesResult(BaseModel):
    data: list[BatchCandidate] | None = None
    error: str | None = None


class OrderAllocation(BaseModel):
    id: UUID
    order_item_id: UUID
    product_id: UUID
    batch_id: UUID | None
    tier: AllocationTier
    status: AllocationStatus
    quantity: int
    picked_quantity: int
    reserved_at: datetime
    allocated_at: datetime | None
    picked_at: datetime | None
    product_name: str | None = None
    batch_number: str | None = None
    variety_name: str | None = None


class OrderAllocationsResult(BaseModel):
    data: list[OrderAllocation] | None = None
    error: str | None = None


class AllocationEvent(BaseModel):
    id: UUID
    event_type: str
    quantity_change: int
    occurred_at: datetime
    metadata: dict[str, Any]
    actor_id: UUID | None


class AllocationEventsResult(BaseModel):
    data: list[AllocationEvent] | None = None
    error: str | None = None
