"""
Module: fulfillment_kernel.models.fulfillment
Responsibility: ORM persistence for outbound shipments, per-item
    fulfillments, the fulfillment -> allocation links, and per-lot shipped
    quantities.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - A shipment draws from exactly one warehouse (warehouse_id NOT NULL;
      the orchestrator rejects mixed-warehouse allocation sets).
    - One fulfillment per order item per shipment (UNIQUE).
    - An allocation belongs to at most one live fulfillment; cancelled
      fulfillments release the link for re-initiation (enforced by the
      orchestrator under the allocation row lock).
    - Fulfillment quantity equals the sum of its linked allocations.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_kernel.db.base import Base, TrackedBase, UUIDString


class Shipment(TrackedBase):
    """
    A dispatch grouping of one or more fulfillments.

    Status is shipment-scoped and independent of the item fulfillments.
    """

    __tablename__ = "shipments"

    __table_args__ = (
        Index("idx_shipment_order", "order_id", "status"),
    )

    shipment_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )

    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # carrier / pickup / personal_delivery
    delivery_method: Mapped[str] = mapped_column(String(30), nullable=False, default="carrier")

    carrier: Mapped[str | None] = mapped_column(String(100), nullable=True)

    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    dispatched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    fulfillments: Mapped[list[Fulfillment]] = relationship(
        back_populates="shipment",
        order_by="Fulfillment.id",
    )

    lots: Mapped[list[ShipmentLot]] = relationship(order_by="ShipmentLot.lot_id")

    def __repr__(self) -> str:
        return f"<Shipment {self.shipment_number} status={self.status}>"


class Fulfillment(TrackedBase):
    """Shipment readiness of one order item's confirmed allocations."""

    __tablename__ = "fulfillments"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_fulfillment_quantity_positive"),
        UniqueConstraint("shipment_id", "order_item_id", name="uq_fulfillment_shipment_item"),
        Index("idx_fulfillment_order", "order_id", "status"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )

    order_item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("order_items.id"), nullable=False
    )

    shipment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("shipments.id"), nullable=False
    )

    quantity: Mapped[int] = mapped_column(nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    shipment: Mapped[Shipment] = relationship(back_populates="fulfillments")

    def __repr__(self) -> str:
        return (
            f"<Fulfillment {self.id} item={self.order_item_id} "
            f"qty={self.quantity} status={self.status}>"
        )


class FulfillmentAllocation(Base):
    """Link row: which allocations a fulfillment consumes."""

    __tablename__ = "fulfillment_allocations"

    __table_args__ = (
        UniqueConstraint(
            "fulfillment_id", "allocation_id", name="uq_fulfillment_allocation"
        ),
        Index("idx_fulfillment_allocation_alloc", "allocation_id"),
    )

    fulfillment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("fulfillments.id"), nullable=False
    )

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("allocations.id"), nullable=False
    )


class ShipmentLot(Base):
    """Quantity shipped from one lot within one shipment."""

    __tablename__ = "shipment_lots"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_shipment_lot_quantity_positive"),
        UniqueConstraint("shipment_id", "lot_id", name="uq_shipment_lot"),
    )

    shipment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("shipments.id"), nullable=False
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("inventory_lots.id"), nullable=False
    )

    quantity: Mapped[int] = mapped_column(nullable=False)
