"""
Module: fulfillment_kernel.models.ledger
Responsibility: ORM persistence for the inventory activity ledger -- the
    append-only, checksummed record of every quantity mutation on a lot.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Exactly one subject: warehouse_lot_id XOR location_lot_id (CHECK).
    - new_quantity = previous_quantity + quantity_delta (CHECK).
    - new_reserved = previous_reserved + reserved_delta (CHECK).
    - sequence is unique and strictly increasing (SequenceService).
    - Never updated or deleted (ORM listeners in db/immutability.py).

Failure modes:
    - ImmutabilityViolationError on any UPDATE / DELETE through the ORM.
    - IntegrityError on a CHECK violation (indicates a service bug).

Audit relevance:
    ``checksum`` is the SHA-256 of the subject, action, both quantity
    triples, and the timestamp (utils/hashing.hash_ledger_entry).  The
    LedgerService recomputes it during verification; a mismatch is a
    LedgerIntegrityError and is never auto-corrected.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_kernel.db.base import Base, UUIDString


class LedgerEntry(Base):
    """
    One immutable inventory activity record.

    The on-hand triple (previous_quantity / quantity_delta / new_quantity)
    tracks total stock; the reserved triple tracks the reservation.  A
    reservation changes only the reserved triple; a shipment changes both.
    """

    __tablename__ = "inventory_activity_log"

    __table_args__ = (
        CheckConstraint(
            "(warehouse_lot_id IS NOT NULL AND location_lot_id IS NULL) OR "
            "(warehouse_lot_id IS NULL AND location_lot_id IS NOT NULL)",
            name="ck_ledger_single_subject",
        ),
        CheckConstraint(
            "new_quantity = previous_quantity + quantity_delta",
            name="ck_ledger_quantity_arithmetic",
        ),
        CheckConstraint(
            "new_reserved = previous_reserved + reserved_delta",
            name="ck_ledger_reserved_arithmetic",
        ),
        Index("idx_ledger_warehouse_lot", "warehouse_lot_id", "sequence"),
        Index("idx_ledger_location_lot", "location_lot_id", "sequence"),
        Index("idx_ledger_action", "action_type"),
    )

    sequence: Mapped[int] = mapped_column(nullable=False, unique=True)

    warehouse_lot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    location_lot_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    action_type: Mapped[str] = mapped_column(String(20), nullable=False)

    previous_quantity: Mapped[int] = mapped_column(nullable=False)

    quantity_delta: Mapped[int] = mapped_column(nullable=False)

    new_quantity: Mapped[int] = mapped_column(nullable=False)

    previous_reserved: Mapped[int] = mapped_column(nullable=False)

    reserved_delta: Mapped[int] = mapped_column(nullable=False)

    new_reserved: Mapped[int] = mapped_column(nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    @property
    def subject_id(self) -> UUID:
        return self.warehouse_lot_id if self.warehouse_lot_id is not None else self.location_lot_id

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry #{self.sequence} {self.action_type} subject={self.subject_id} "
            f"qty {self.previous_quantity}->{self.new_quantity} "
            f"reserved {self.previous_reserved}->{self.new_reserved}>"
        )
