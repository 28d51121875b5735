"""
Module: fulfillment_kernel.models.inventory_lot
Responsibility: ORM persistence for physical stock: one row per batch of a
    sellable unit at a warehouse, with expiry / manufacture metadata and a
    reserved / available split.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - 0 <= reserved_quantity <= total_quantity (CHECK constraints).
    - Exactly one of sku_id / packaging_material_id.
    - Quantities are mutated only through services.lot_store.LotStore,
      which appends a ledger entry for every change.

Audit relevance:
    Replaying the lot's inventory_activity_log entries must reproduce
    total_quantity and reserved_quantity exactly.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_kernel.db.base import TrackedBase, UUIDString
from fulfillment_kernel.domain.dtos import ItemRef


class InventoryLot(TrackedBase):
    """
    A warehouse lot (batch) of one SKU or packaging material.

    Guarantees:
        - ``available_quantity`` is always ``total - reserved`` (never stored).
        - Selection eligibility additionally requires status ``available``.
    """

    __tablename__ = "inventory_lots"

    __table_args__ = (
        CheckConstraint("total_quantity >= 0", name="ck_lot_total_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_lot_reserved_non_negative"),
        CheckConstraint(
            "reserved_quantity <= total_quantity", name="ck_lot_reserved_within_total"
        ),
        CheckConstraint(
            "(sku_id IS NOT NULL AND packaging_material_id IS NULL) OR "
            "(sku_id IS NULL AND packaging_material_id IS NOT NULL)",
            name="ck_lot_single_item_ref",
        ),
        # Candidate lookup for the allocation engine
        Index("idx_lot_sku_status", "sku_id", "status"),
        Index("idx_lot_packaging_status", "packaging_material_id", "status"),
        Index("idx_lot_warehouse", "warehouse_id"),
    )

    warehouse_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)

    sku_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    packaging_material_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    expiry_date: Mapped[date | None] = mapped_column(nullable=True)

    manufacture_date: Mapped[date | None] = mapped_column(nullable=True)

    # Receipt date; FIFO ordering key
    inbound_date: Mapped[date | None] = mapped_column(nullable=True)

    total_quantity: Mapped[int] = mapped_column(nullable=False, default=0)

    reserved_quantity: Mapped[int] = mapped_column(nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="available")

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity

    @property
    def item_ref(self) -> ItemRef:
        return ItemRef(sku_id=self.sku_id, packaging_material_id=self.packaging_material_id)

    def __repr__(self) -> str:
        return (
            f"<InventoryLot {self.lot_number} wh={self.warehouse_id} "
            f"total={self.total_quantity} reserved={self.reserved_quantity} "
            f"status={self.status}>"
        )
