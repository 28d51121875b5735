"""
Module: fulfillment_kernel.models.allocation
Responsibility: ORM persistence for allocations: a reservation of a quantity
    from one inventory lot to one order item.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - quantity > 0 (CHECK constraint).
    - order_item_id, lot_id, and quantity never change after insert; an
      allocation is cancelled and re-created instead (ORM listener in
      db/immutability.py).
    - A cancelled allocation is final.

Audit relevance:
    Each allocation is paired with a ``reserve`` ledger entry on creation,
    a ``confirm`` entry on confirmation, and a ``release`` or ``ship``
    entry when its reservation ends.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_kernel.db.base import TrackedBase, UUIDString


class Allocation(TrackedBase):
    """
    Binding of one order item to one lot for a fixed quantity.

    Contract:
        Status is ``proposed`` on creation, ``confirmed`` after review, or
        ``cancelled``.  Multiple allocations may exist per item (multi-lot
        split) and per lot (several orders drawing on one batch).
    """

    __tablename__ = "allocations"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_allocation_quantity_positive"),
        Index("idx_allocation_order", "order_id", "status"),
        Index("idx_allocation_item", "order_item_id"),
        Index("idx_allocation_lot", "lot_id"),
        Index("idx_allocation_proposed_at", "status", "proposed_at"),
    )

    order_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("orders.id"), nullable=False
    )

    order_item_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("order_items.id"), nullable=False
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("inventory_lots.id"), nullable=False
    )

    # Denormalized from the lot for single-warehouse shipment checks
    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    quantity: Mapped[int] = mapped_column(nullable=False)

    # fefo / fifo
    strategy: Mapped[str] = mapped_column(String(10), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="proposed")

    proposed_at: Mapped[datetime] = mapped_column(nullable=False)

    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Allocation {self.id} item={self.order_item_id} lot={self.lot_id} "
            f"qty={self.quantity} status={self.status}>"
        )
