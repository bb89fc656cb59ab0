from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID, uuid4

UNSALEABLE_SALES_STATUSES = frozenset({"not_for_sale", "archived"})


class AllocationError(Exception):
    pass


class InvalidTransition(AllocationError):
    pass


class InsufficientStock(AllocationError):
    pass


class NotFound(AllocationError):
    pass


class NotAuthorized(AllocationError):
    pass


class AllocationTier(str, enum.Enum):
    PRODUCT = "product"
    BATCH = "batch"


class AllocationStatus(str, enum.Enum):
    RESERVED = "reserved"
    ALLOCATED = "allocated"
    PICKED = "picked"
    SHIPPED = "shipped"
    CANCELLED = "cancelled"


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    PICKING = "picking"
    PACKED = "packed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    VOID = "void"


class StockStatus(str, enum.Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.DRAFT: frozenset({OrderStatus.CONFIRMED, OrderStatus.VOID}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PICKING, OrderStatus.VOID}),
    OrderStatus.PICKING: frozenset({OrderStatus.PACKED, OrderStatus.DISPATCHED, OrderStatus.VOID}),
    OrderStatus.PACKED: frozenset({OrderStatus.DISPATCHED, OrderStatus.VOID}),
    OrderStatus.DISPATCHED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.VOID: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(kw_only=True)
class Product:
    id: UUID = field(default_factory=uuid4)
    org_id: UUID
    name: str
    ats_override: int | None = None
    low_stock_threshold: int = 10
    allow_oversell: bool = True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Product):
            return False
        return other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)


@dataclass(kw_only=True)
class Batch:
    id: UUID = field(default_factory=uuid4)
    org_id: UUID
    product_id: UUID
    batch_number: str
    variety_id: UUID | None = None
    variety_name: str | None = None
    location_id: UUID | None = None
    location_name: str | None = None
    available_quantity: int = 0
    growing_status: str | None = None
    sales_status: str | None = None
    planted_at: date | None = None

    def __repr__(self) -> str:
        return f"<Batch {self.batch_number}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Batch):
            return False
        return other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def is_saleable(self) -> bool:
        return self.sales_status not in UNSALEABLE_SALES_STATUSES

    def age_weeks(self, today: date | None = None) -> int:
        if self.planted_at is None:
            return 0
        today = today or date.today()
        return max(0, (today - self.planted_at).days // 7)


@dataclass(kw_only=True)
class Allocation:
    """One row of the allocation ledger.

    A product-tier row is a reservation against the product's available-to-sell
    figure and carries no batch. A batch-tier row has taken its quantity off a
    concrete batch.
    """

    id: UUID = field(default_factory=uuid4)
    order_item_id: UUID
    product_id: UUID
    batch_id: UUID | None = None
    tier: AllocationTier = AllocationTier.PRODUCT
    status: AllocationStatus = AllocationStatus.RESERVED
    quantity: int
    picked_quantity: int = 0
    reserved_at: datetime = field(default_factory=utcnow)
    allocated_at: datetime | None = None
    picked_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    def __repr__(self) -> str:
        return f"<Allocation {self.id} {self.tier.value}/{self.status.value}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Allocation):
            return False
        return other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def is_active(self) -> bool:
        return self.status != AllocationStatus.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self.status in (AllocationStatus.SHIPPED, AllocationStatus.CANCELLED)

    def check_transition_to_batch(self) -> None:
        if self.tier != AllocationTier.PRODUCT or self.status != AllocationStatus.RESERVED:
            raise InvalidTransition(
                f"Allocation {self.id} is {self.tier.value}/{self.status.value}, "
                "expected a product-level reservation"
            )

    def transition_to_batch(self, batch_id: UUID, now: datetime | None = None) -> None:
        self.check_transition_to_batch()
        self.batch_id = batch_id
        self.tier = AllocationTier.BATCH
        self.status = AllocationStatus.ALLOCATED
        self.allocated_at = now or utcnow()

    def mark_picked(self, picked_quantity: int | None = None, now: datetime | None = None) -> int:
        """Record the physically picked quantity and return the shortage."""
        if self.status != AllocationStatus.ALLOCATED:
            raise InvalidTransition(f"Allocation {self.id} is {self.status.value}, expected allocated")
        if picked_quantity is None:
            picked_quantity = self.quantity
        if picked_quantity < 0:
            raise InvalidTransition("Picked quantity cannot be negative")
        if picked_quantity > self.quantity:
            raise InvalidTransition(
                f"Picked quantity {picked_quantity} exceeds allocated quantity {self.quantity}"
            )
        self.picked_quantity = picked_quantity
        self.status = AllocationStatus.PICKED
        self.picked_at = now or utcnow()
        return self.quantity - picked_quantity

    def ship(self) -> None:
        if self.status != AllocationStatus.PICKED:
            raise InvalidTransition(f"Allocation {self.id} is {self.status.value}, expected picked")
        self.status = AllocationStatus.SHIPPED

    def cancel(self, reason: str | None = None, now: datetime | None = None) -> int:
        """Cancel the allocation and return the quantity to put back into the pool.

        Cancelling twice releases nothing the second time.
        """
        if self.status == AllocationStatus.CANCELLED:
            return 0
        if self.status == AllocationStatus.SHIPPED:
            raise InvalidTransition(f"Allocation {self.id} has already shipped")
        self.status = AllocationStatus.CANCELLED
        self.cancelled_at = now or utcnow()
        self.cancel_reason = reason
        return self.quantity


@dataclass(kw_only=True)
class OrderItem:
    id: UUID = field(default_factory=uuid4)
    order_id: UUID | None = None
    product_id: UUID
    quantity: int
    allocations: list[Allocation] = field(default_factory=list)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OrderItem):
            return False
        return other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def active_quantity(self) -> int:
        return sum(a.quantity for a in self.allocations if a.is_active)

    @property
    def outstanding_quantity(self) -> int:
        return self.quantity - self.active_quantity

    def reserve(self, now: datetime | None = None) -> Allocation:
        outstanding = self.outstanding_quantity
        if outstanding <= 0:
            raise InvalidTransition(f"Order item {self.id} is already fully allocated")
        allocation = Allocation(
            order_item_id=self.id,
            product_id=self.product_id,
            quantity=outstanding,
            reserved_at=now or utcnow(),
        )
        self.allocations.append(allocation)
        return allocation


@dataclass(kw_only=True)
class Order:
    id: UUID = field(default_factory=uuid4)
    org_id: UUID
    status: OrderStatus = OrderStatus.DRAFT
    items: list[OrderItem] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.status.value}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Order):
            return False
        return other.id == self.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def allocations(self) -> list[Allocation]:
        return [a for item in self.items for a in item.allocations]

    @property
    def product_ids(self) -> list[UUID]:
        return sorted({item.product_id for item in self.items})

    def ensure_org(self, org_id: UUID | None) -> None:
        if self.org_id != org_id:
            raise NotAuthorized("Not authorized to modify this order")

    def ensure_can_transition(self, new_status: OrderStatus) -> None:
        if new_status not in ORDER_TRANSITIONS[self.status]:
            raise InvalidTransition(f"Cannot transition from {self.status.value} to {new_status.value}")

    def transition(self, new_status: OrderStatus) -> None:
        self.ensure_can_transition(new_status)
        self.status = new_status


@dataclass(frozen=True, kw_only=True)
class ProductATS:
    product_id: UUID
    calculated_ats: int
    override_ats: int | None
    tier1_reserved: int
    low_stock_threshold: int
    allow_oversell: bool

    @classmethod
    def calculate(cls, product: Product, batches: list[Batch], tier1_reserved: int) -> ProductATS:
        calculated = sum(
            b.available_quantity for b in batches if b.product_id == product.id and b.is_saleable
        )
        return cls(
            product_id=product.id,
            calculated_ats=calculated,
            override_ats=product.ats_override,
            tier1_reserved=tier1_reserved,
            low_stock_threshold=product.low_stock_threshold,
            allow_oversell=product.allow_oversell,
        )

    @property
    def effective_ats(self) -> int:
        base = self.override_ats if self.override_ats is not None else self.calculated_ats
        return max(0, base - self.tier1_reserved)

    @property
    def stock_status(self) -> StockStatus:
        if self.effective_ats <= 0:
            return StockStatus.OUT_OF_STOCK
        if self.effective_ats <= self.low_stock_threshold:
            return StockStatus.LOW_STOCK
        return StockStatus.IN_STOCK

    def reserve(self, qty: int) -> ProductATS:
        return dataclasses.replace(self, tier1_reserved=self.tier1_reserved + qty)


@dataclass(kw_only=True)
class OversellWarning:
    order_item_id: UUID
    product_id: UUID
    quantity: int
    warning: str


@dataclass(kw_only=True)
class PendingBatchSelection:
    allocation_id: UUID
    order_item_id: UUID
    product_id: UUID
    product_name: str
    quantity: int


@dataclass(kw_only=True)
class InventoryEvent:
    id: UUID = field(default_factory=uuid4)
    event_type: str
    quantity_change: int
    allocation_id: UUID | None = None
    order_id: UUID | None = None
    order_item_id: UUID | None = None
    batch_id: UUID | None = None
    actor_id: UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(kw_only=True)
class OrderEvent:
    id: UUID = field(default_factory=uuid4)
    org_id: UUID
    order_id: UUID
    event_type: str
    description: str
    created_by: UUID | None = None
    created_at: datetime = field(default_factory=utcnow)
