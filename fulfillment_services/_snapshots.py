"""Frozen read models returned by the fulfillment services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.models.fulfillment import Shipment
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.order import Order, OrderItem


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: UUID
    order_number: str
    status: str
    category: str

    @classmethod
    def of(cls, order: Order) -> OrderSnapshot:
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            category=order.category,
        )


@dataclass(frozen=True)
class ItemSnapshot:
    order_item_id: UUID
    line_number: int
    sku_id: UUID | None
    packaging_material_id: UUID | None
    requested_quantity: int
    allocated_quantity: int
    fulfilled_quantity: int
    status: str

    @classmethod
    def of(cls, item: OrderItem) -> ItemSnapshot:
        return cls(
            order_item_id=item.id,
            line_number=item.line_number,
            sku_id=item.sku_id,
            packaging_material_id=item.packaging_material_id,
            requested_quantity=item.requested_quantity,
            allocated_quantity=item.allocated_quantity,
            fulfilled_quantity=item.fulfilled_quantity,
            status=item.status,
        )


@dataclass(frozen=True)
class AllocationLine:
    """One allocation as reported to callers."""

    allocation_id: UUID
    order_item_id: UUID
    lot_id: UUID
    lot_number: str
    warehouse_id: UUID
    quantity: int
    strategy: str
    status: str

    @classmethod
    def of(cls, allocation: Allocation, lot: InventoryLot) -> AllocationLine:
        return cls(
            allocation_id=allocation.id,
            order_item_id=allocation.order_item_id,
            lot_id=allocation.lot_id,
            lot_number=lot.lot_number,
            warehouse_id=allocation.warehouse_id,
            quantity=allocation.quantity,
            strategy=allocation.strategy,
            status=allocation.status,
        )


@dataclass(frozen=True)
class ShipmentSnapshot:
    shipment_id: UUID
    shipment_number: str
    warehouse_id: UUID
    delivery_method: str
    status: str
    dispatched_at: datetime | None

    @classmethod
    def of(cls, shipment: Shipment) -> ShipmentSnapshot:
        return cls(
            shipment_id=shipment.id,
            shipment_number=shipment.shipment_number,
            warehouse_id=shipment.warehouse_id,
            delivery_method=shipment.delivery_method,
            status=shipment.status,
            dispatched_at=shipment.dispatched_at,
        )
