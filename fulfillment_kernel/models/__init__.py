"""ORM models for the fulfillment kernel."""

from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.models.fulfillment import (
    Fulfillment,
    FulfillmentAllocation,
    Shipment,
    ShipmentLot,
)
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.ledger import LedgerEntry
from fulfillment_kernel.models.order import Order, OrderItem

__all__ = [
    "Allocation",
    "Fulfillment",
    "FulfillmentAllocation",
    "InventoryLot",
    "LedgerEntry",
    "Order",
    "OrderItem",
    "Shipment",
    "ShipmentLot",
]
