"""
Value objects passed by value across the kernel / engine / service seams.

All are frozen dataclasses; operations take these explicitly instead of
reading any ambient request state.
"""

from dataclasses import dataclass
from uuid import UUID

from fulfillment_kernel.domain.statuses import (
    FulfillmentStatus,
    OrderStatus,
    ShipmentStatus,
    parse_status,
)
from fulfillment_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class ItemRef:
    """
    Reference to a sellable unit: exactly one of SKU or packaging material.
    """

    sku_id: UUID | None = None
    packaging_material_id: UUID | None = None

    def __post_init__(self) -> None:
        if (self.sku_id is None) == (self.packaging_material_id is None):
            raise ValidationError(
                "Item reference needs exactly one of sku_id / packaging_material_id",
                field="item",
            )

    @property
    def key(self) -> tuple[str, UUID]:
        if self.sku_id is not None:
            return ("sku", self.sku_id)
        return ("packaging_material", self.packaging_material_id)

    @classmethod
    def sku(cls, sku_id: UUID) -> "ItemRef":
        return cls(sku_id=sku_id)

    @classmethod
    def packaging_material(cls, packaging_material_id: UUID) -> "ItemRef":
        return cls(packaging_material_id=packaging_material_id)


@dataclass(frozen=True)
class UnmetItem:
    """Shortfall for one order line after lot selection."""

    order_item_id: UUID
    item: ItemRef
    requested_quantity: int
    allocated_quantity: int
    shortfall: int


@dataclass(frozen=True)
class FulfillmentTargets:
    """
    Requested target statuses for a dispatch / progress operation.

    Use ``parse`` to build from raw codes: unknown codes fail with
    UnknownStatusError before any lock is taken.
    """

    order: OrderStatus | None = None
    shipment: ShipmentStatus | None = None
    fulfillment: FulfillmentStatus | None = None

    @classmethod
    def parse(
        cls,
        order: str | OrderStatus | None = None,
        shipment: str | ShipmentStatus | None = None,
        fulfillment: str | FulfillmentStatus | None = None,
    ) -> "FulfillmentTargets":
        return cls(
            order=parse_status(OrderStatus, order) if order is not None else None,
            shipment=parse_status(ShipmentStatus, shipment) if shipment is not None else None,
            fulfillment=(
                parse_status(FulfillmentStatus, fulfillment)
                if fulfillment is not None
                else None
            ),
        )

    def require_all(self) -> None:
        missing = [
            name
            for name, value in (
                ("order", self.order),
                ("shipment", self.shipment),
                ("fulfillment", self.fulfillment),
            )
            if value is None
        ]
        if missing:
            raise ValidationError(
                f"Target statuses required for: {', '.join(missing)}",
                field="targets",
            )
