"""
Status vocabularies for orders, items, lots, allocations, fulfillments,
shipments, and ledger actions.

Every status column stores the lowercase ``value`` of one of these enums.
``parse_status`` is the single entry point for turning caller-supplied codes
into members; unknown codes raise UnknownStatusError before any lock is taken.
"""

from enum import Enum
from typing import TypeVar

from fulfillment_kernel.exceptions import UnknownStatusError

E = TypeVar("E", bound=Enum)


class OrderCategory(str, Enum):
    SALES = "sales"
    TRANSFER = "transfer"
    INTERNAL = "internal"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_ALLOCATED = "partially_allocated"
    ALLOCATED = "allocated"
    CONFIRMED = "confirmed"
    FULFILLMENT_IN_PROGRESS = "fulfillment_in_progress"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderItemStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_ALLOCATED = "partially_allocated"
    FULLY_ALLOCATED = "fully_allocated"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class LotStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    QUARANTINED = "quarantined"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    DISPOSED = "disposed"


class AllocationStatus(str, Enum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    PICKING = "picking"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ShipmentStatus(str, Enum):
    PENDING = "pending"
    PICKING = "picking"
    PACKED = "packed"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryMethod(str, Enum):
    CARRIER = "carrier"
    PICKUP = "pickup"
    PERSONAL_DELIVERY = "personal_delivery"

    @property
    def is_manual(self) -> bool:
        """Pickup and personal delivery are handed over without a carrier."""
        return self is not DeliveryMethod.CARRIER


class LedgerAction(str, Enum):
    RECEIVE = "receive"
    RESERVE = "reserve"
    CONFIRM = "confirm"
    RELEASE = "release"
    SHIP = "ship"
    ADJUST = "adjust"


# Fulfillments in these states still hold their reservation (not dispatched).
OPEN_FULFILLMENT_STATUSES = frozenset({
    FulfillmentStatus.PENDING,
    FulfillmentStatus.PICKING,
    FulfillmentStatus.PACKED,
})

# Fulfillments in these states have consumed their inventory.
DISPATCHED_FULFILLMENT_STATUSES = frozenset({
    FulfillmentStatus.SHIPPED,
    FulfillmentStatus.COMPLETED,
    FulfillmentStatus.DELIVERED,
})

OPEN_SHIPMENT_STATUSES = frozenset({
    ShipmentStatus.PENDING,
    ShipmentStatus.PICKING,
    ShipmentStatus.PACKED,
})

# Lot statuses that quantity mutations may re-derive; anything else is sticky.
DERIVED_LOT_STATUSES = frozenset({
    LotStatus.AVAILABLE,
    LotStatus.RESERVED,
    LotStatus.CONSUMED,
})


def parse_status(enum_cls: type[E], value: str | E) -> E:
    """Return the enum member for ``value`` or raise UnknownStatusError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise UnknownStatusError(enum_cls.__name__, value) from None
