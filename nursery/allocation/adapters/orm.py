import enum

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import registry, relationship

from nursery.allocation.domain import models

mapper_registry = registry()
metadata = mapper_registry.metadata


def _enum(enum_cls: type[enum.Enum], name: str) -> sa.Enum:
    return sa.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
    )


product_table = sa.Table(
    "product",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("org_id", UUID(as_uuid=True), nullable=False, index=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("ats_override", sa.Integer, nullable=True),
    sa.Column("low_stock_threshold", sa.Integer, nullable=False, server_default="10"),
    sa.Column("allow_oversell", sa.Boolean, nullable=False, server_default=sa.true()),
)

batch_table = sa.Table(
    "batch",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("org_id", UUID(as_uuid=True), nullable=False, index=True),
    sa.Column("product_id", sa.ForeignKey("product.id"), nullable=False, index=True),
    sa.Column("batch_number", sa.String(64), nullable=False),
    sa.Column("variety_id", UUID(as_uuid=True), nullable=True),
    sa.Column("variety_name", sa.String(255), nullable=True),
    sa.Column("location_id", UUID(as_uuid=True), nullable=True),
    sa.Column("location_name", sa.String(255), nullable=True),
    sa.Column("available_quantity", sa.Integer, nullable=False, server_default="0"),
    sa.Column("growing_status", sa.String(32), nullable=True),
    sa.Column("sales_status", sa.String(32), nullable=True),
    sa.Column("planted_at", sa.Date, nullable=True),
    sa.CheckConstraint("available_quantity >= 0", name="ck_batch_available_quantity_non_negative"),
)

order_table = sa.Table(
    "order",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("org_id", UUID(as_uuid=True), nullable=False, index=True),
    sa.Column("status", _enum(models.OrderStatus, "order_status"), nullable=False),
)

order_item_table = sa.Table(
    "order_item",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("order_id", sa.ForeignKey("order.id"), nullable=False, index=True),
    sa.Column("product_id", sa.ForeignKey("product.id"), nullable=False),
    sa.Column("quantity", sa.Integer, nullable=False),
)

allocation_ledger_table = sa.Table(
    "allocation_ledger",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("order_item_id", sa.ForeignKey("order_item.id"), nullable=False, index=True),
    sa.Column("product_id", sa.ForeignKey("product.id"), nullable=False, index=True),
    sa.Column("batch_id", sa.ForeignKey("batch.id"), nullable=True),
    sa.Column("tier", _enum(models.AllocationTier, "allocation_tier"), nullable=False),
    sa.Column("status", _enum(models.AllocationStatus, "allocation_status"), nullable=False),
    sa.Column("quantity", sa.Integer, nullable=False),
    sa.Column("picked_quantity", sa.Integer, nullable=False, server_default="0"),
    sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("picked_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("cancel_reason", sa.Text, nullable=True),
    sa.CheckConstraint(
        "(tier = 'product' AND batch_id IS NULL) OR (tier = 'batch' AND batch_id IS NOT NULL)",
        name="ck_allocation_ledger_tier_batch",
    ),
    sa.CheckConstraint("quantity > 0", name="ck_allocation_ledger_quantity_positive"),
)

# audit tables carry plain ids so they outlive the rows they describe
inventory_event_table = sa.Table(
    "inventory_event",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("event_type", sa.String(32), nullable=False),
    sa.Column("quantity_change", sa.Integer, nullable=False),
    sa.Column("allocation_id", UUID(as_uuid=True), nullable=True, index=True),
    sa.Column("order_id", UUID(as_uuid=True), nullable=True, index=True),
    sa.Column("order_item_id", UUID(as_uuid=True), nullable=True, index=True),
    sa.Column("batch_id", UUID(as_uuid=True), nullable=True),
    sa.Column("actor_id", UUID(as_uuid=True), nullable=True),
    sa.Column("details", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
)

order_event_table = sa.Table(
    "order_event",
    metadata,
    sa.Column("id", UUID(as_uuid=True), primary_key=True),
    sa.Column("org_id", UUID(as_uuid=True), nullable=False),
    sa.Column("order_id", UUID(as_uuid=True), nullable=False, index=True),
    sa.Column("event_type", sa.String(32), nullable=False),
    sa.Column("description", sa.Text, nullable=False),
    sa.Column("created_by", UUID(as_uuid=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)


def start_mappers() -> None:
    if sa.inspect(models.Order, raiseerr=False) is not None:
        return
    mapper_registry.map_imperatively(models.Product, product_table)
    mapper_registry.map_imperatively(models.Batch, batch_table)
    allocation_mapper = mapper_registry.map_imperatively(models.Allocation, allocation_ledger_table)
    order_item_mapper = mapper_registry.map_imperatively(
        models.OrderItem,
        order_item_table,
        properties={
            "allocations": relationship(
                allocation_mapper, order_by=allocation_ledger_table.c.reserved_at
            )
        },
    )
    mapper_registry.map_imperatively(
        models.Order,
        order_table,
        properties={
            "items": relationship(order_item_mapper, order_by=order_item_table.c.id)
        },
    )
    mapper_registry.map_imperatively(models.InventoryEvent, inventory_event_table)
    mapper_registry.map_imperatively(models.OrderEvent, order_event_table)
