from dataclasses import dataclass
from uuid import UUID


@dataclass(kw_only=True)
class Command:
    org_id: UUID | None = None
    actor_id: UUID | None = None


@dataclass(kw_only=True)
class ConfirmOrder(Command):
    order_id: UUID


@dataclass(kw_only=True)
class StartPicking(Command):
    order_id: UUID


@dataclass(kw_only=True)
class SelectBatch(Command):
    allocation_id: UUID
    batch_id: UUID


@dataclass(kw_only=True)
class MarkPicked(Command):
    allocation_id: UUID
    picked_quantity: int | None = None


@dataclass(kw_only=True)
class CancelAllocation(Command):
    allocation_id: UUID
    reason: str | None = None


@dataclass(kw_only=True)
class DispatchOrder(Command):
    order_id: UUID


@dataclass(kw_only=True)
class VoidOrder(Command):
    order_id: UUID
    reason: str | None = None
