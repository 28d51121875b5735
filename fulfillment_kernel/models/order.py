"""
Module: fulfillment_kernel.models.order
Responsibility: ORM persistence for orders and their line items as seen by
    the allocation engine.  Orders are created upstream (validated); this
    subsystem only moves their statuses and allocation/fulfillment counters.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - 0 <= allocated_quantity <= requested_quantity (CHECK constraint).
    - 0 <= fulfilled_quantity <= allocated_quantity (CHECK constraint).
    - Each item references exactly one of sku_id / packaging_material_id.
    - Status changes go through fulfillment_kernel.domain.workflows only.

Failure modes:
    - IntegrityError if a counter update would break a CHECK constraint;
      services validate first, so this indicates a bug, not a user error.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment_kernel.db.base import TrackedBase, UUIDString
from fulfillment_kernel.domain.dtos import ItemRef


class Order(TrackedBase):
    """
    Order header.

    Contract:
        Owns an ordered collection of OrderItems (by line_number).  Status is
        one of ``OrderStatus`` values and is only changed by the allocation,
        review, and fulfillment services.
    """

    __tablename__ = "orders"

    __table_args__ = (
        Index("idx_order_status", "status"),
    )

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    # sales / transfer / internal
    category: Mapped[str] = mapped_column(String(30), nullable=False, default="sales")

    status: Mapped[str] = mapped_column(String(40), nullable=False, default="pending")

    requester_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Preferred warehouse; allocation may still be constrained per call.
    warehouse_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list[OrderItem]] = relationship(
        back_populates="order",
        order_by="OrderItem.line_number",
    )

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status}>"


class OrderItem(TrackedBase):
    """
    One order line: a sellable unit, requested quantity, and running
    allocated / fulfilled counters.
    """

    __tablename__ = "order_items"

    __table_args__ = (
        CheckConstraint("requested_quantity > 0", name="ck_order_item_requested_positive"),
        CheckConstraint(
            "allocated_quantity >= 0 AND allocated_quantity <= requested_quantity",
            name="ck_order_item_allocated_range",
        ),
        CheckConstraint(
            "fulfilled_quantity >= 0 AND fulfilled_quantity <= allocated_quantity",
            name="ck_order_item_fulfilled_range",
        ),
        CheckConstraint(
            "(sku_id IS NOT NULL AND packaging_material_id IS NULL) OR "
            "(sku_id IS NULL AND packaging_material_id IS NOT NULL)",
            name="ck_order_item_single_item_ref",
        ),
        Index("idx_order_item_order", "order_id", "line_number"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )

    line_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    sku_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    packaging_material_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    requested_quantity: Mapped[int] = mapped_column(nullable=False)

    allocated_quantity: Mapped[int] = mapped_column(nullable=False, default=0)

    fulfilled_quantity: Mapped[int] = mapped_column(nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(40), nullable=False, default="pending")

    order: Mapped[Order] = relationship(back_populates="items")

    @property
    def item_ref(self) -> ItemRef:
        return ItemRef(sku_id=self.sku_id, packaging_material_id=self.packaging_material_id)

    @property
    def outstanding_quantity(self) -> int:
        """Quantity still to be allocated."""
        return self.requested_quantity - self.allocated_quantity

    @property
    def is_fully_allocated(self) -> bool:
        return self.allocated_quantity == self.requested_quantity

    def __repr__(self) -> str:
        return (
            f"<OrderItem {self.id} line={self.line_number} "
            f"req={self.requested_quantity} alloc={self.allocated_quantity} "
            f"ful={self.fulfilled_quantity}>"
        )
