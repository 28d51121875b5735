"""
LedgerService -- append-only, checksummed inventory activity ledger.

Responsibility:
    Records one ``inventory_activity_log`` row per quantity mutation on a
    lot, and verifies the recorded history: per-entry checksums and
    arithmetic, continuity between consecutive entries of one subject, and
    replay of a lot's entries against its current quantities.

Architecture position:
    Kernel > Services -- imperative shell.  Called by LotStore for every
    quantity change, and by the review service for zero-delta ``confirm``
    snapshots.  Does NOT commit; the caller owns the transaction.

Invariants enforced:
    - new = previous + delta for the on-hand and the reserved triple.
    - sequence is drawn from SequenceService (locked counter row), so
      entries of one subject are totally ordered; replay uses that order.
    - checksum = SHA-256 over subject, action, both triples, and the
      normalised timestamp (utils.hashing.hash_ledger_entry).

Failure modes:
    - LedgerIntegrityError on a checksum / arithmetic / continuity / replay
      mismatch.  Logged at CRITICAL and never auto-corrected.
    - InvalidQuantityError if a caller asks to record a negative result.

Audit relevance:
    The ledger is the forensic record of stock movements.  Every entry
    carries the acting user and the order / allocation / fulfillment /
    shipment ids in its metadata.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fulfillment_kernel.domain.statuses import LedgerAction
from fulfillment_kernel.exceptions import (
    InvalidQuantityError,
    LedgerIntegrityError,
    LotNotFoundError,
)
from fulfillment_kernel.logging_config import get_logger
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.ledger import LedgerEntry
from fulfillment_kernel.services.sequence_service import SequenceService
from fulfillment_kernel.utils.hashing import hash_ledger_entry

logger = get_logger("services.ledger")


class SubjectKind(str, Enum):
    WAREHOUSE_LOT = "warehouse_lot"
    LOCATION_LOT = "location_lot"


@dataclass(frozen=True)
class LedgerSubject:
    """The lot a ledger entry is about: a warehouse lot or a location lot."""

    kind: SubjectKind
    lot_id: UUID

    @classmethod
    def warehouse_lot(cls, lot_id: UUID) -> "LedgerSubject":
        return cls(SubjectKind.WAREHOUSE_LOT, lot_id)

    @classmethod
    def location_lot(cls, lot_id: UUID) -> "LedgerSubject":
        return cls(SubjectKind.LOCATION_LOT, lot_id)

    @property
    def column(self):
        if self.kind is SubjectKind.WAREHOUSE_LOT:
            return LedgerEntry.warehouse_lot_id
        return LedgerEntry.location_lot_id


@dataclass(frozen=True)
class LotReplay:
    """Quantities reconstructed from a lot's ledger entries."""

    lot_id: UUID
    entry_count: int
    opening_quantity: int
    opening_reserved: int
    closing_quantity: int
    closing_reserved: int


class LedgerService:
    """
    Writer and verifier for the inventory activity ledger.

    Contract:
        ``record`` flushes one entry and returns it.  The verification
        methods are read-only and raise LedgerIntegrityError on the first
        discrepancy.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT lock lots; callers record entries while holding the lot
          row lock so the previous values are current.
    """

    def __init__(self, session: Session):
        self._session = session
        self._sequence_service = SequenceService(session)

    # -------------------------------------------------------------------------
    # Write side
    # -------------------------------------------------------------------------

    def record(
        self,
        subject: LedgerSubject,
        action: LedgerAction,
        previous_quantity: int,
        quantity_delta: int,
        previous_reserved: int,
        reserved_delta: int,
        actor_id: UUID,
        occurred_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """
        Append one ledger entry.

        Postconditions:
            - The entry is flushed with the next ledger sequence.
            - ``checksum`` covers the subject, action, both triples and
              ``occurred_at``.
        """
        new_quantity = previous_quantity + quantity_delta
        new_reserved = previous_reserved + reserved_delta
        if new_quantity < 0:
            raise InvalidQuantityError(
                "quantity_delta", quantity_delta,
                f"would leave lot {subject.lot_id} with negative quantity",
            )
        if new_reserved < 0 or new_reserved > new_quantity:
            raise InvalidQuantityError(
                "reserved_delta", reserved_delta,
                f"reserved {new_reserved} outside 0..{new_quantity} for lot {subject.lot_id}",
            )

        sequence = self._sequence_service.next_value(SequenceService.LEDGER)

        checksum = hash_ledger_entry(
            subject_id=subject.lot_id,
            action_type=action,
            previous_quantity=previous_quantity,
            quantity_delta=quantity_delta,
            new_quantity=new_quantity,
            occurred_at=occurred_at,
            previous_reserved=previous_reserved,
            reserved_delta=reserved_delta,
            new_reserved=new_reserved,
        )

        entry = LedgerEntry(
            sequence=sequence,
            warehouse_lot_id=(
                subject.lot_id if subject.kind is SubjectKind.WAREHOUSE_LOT else None
            ),
            location_lot_id=(
                subject.lot_id if subject.kind is SubjectKind.LOCATION_LOT else None
            ),
            action_type=action.value,
            previous_quantity=previous_quantity,
            quantity_delta=quantity_delta,
            new_quantity=new_quantity,
            previous_reserved=previous_reserved,
            reserved_delta=reserved_delta,
            new_reserved=new_reserved,
            actor_id=actor_id,
            occurred_at=occurred_at,
            checksum=checksum,
            entry_metadata=metadata or None,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "ledger_entry_recorded",
            extra={
                "subject_id": str(subject.lot_id),
                "subject_kind": subject.kind.value,
                "action_type": action.value,
                "sequence": sequence,
                "quantity_delta": quantity_delta,
                "reserved_delta": reserved_delta,
                "new_quantity": new_quantity,
                "new_reserved": new_reserved,
            },
        )
        return entry

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def entries_for(self, subject: LedgerSubject) -> list[LedgerEntry]:
        """All entries of a subject in sequence order."""
        return list(
            self._session.execute(
                select(LedgerEntry)
                .where(subject.column == subject.lot_id)
                .order_by(LedgerEntry.sequence)
            ).scalars().all()
        )

    def verify_entry(self, entry: LedgerEntry) -> None:
        """
        Recompute one entry's checksum and arithmetic.

        Raises:
            LedgerIntegrityError: On any mismatch.
        """
        subject_id = str(entry.subject_id)

        if entry.new_quantity != entry.previous_quantity + entry.quantity_delta:
            self._fail(
                subject_id,
                "quantity arithmetic mismatch",
                entry,
                expected=entry.previous_quantity + entry.quantity_delta,
                actual=entry.new_quantity,
            )
        if entry.new_reserved != entry.previous_reserved + entry.reserved_delta:
            self._fail(
                subject_id,
                "reserved arithmetic mismatch",
                entry,
                expected=entry.previous_reserved + entry.reserved_delta,
                actual=entry.new_reserved,
            )

        expected_checksum = hash_ledger_entry(
            subject_id=entry.subject_id,
            action_type=entry.action_type,
            previous_quantity=entry.previous_quantity,
            quantity_delta=entry.quantity_delta,
            new_quantity=entry.new_quantity,
            occurred_at=entry.occurred_at,
            previous_reserved=entry.previous_reserved,
            reserved_delta=entry.reserved_delta,
            new_reserved=entry.new_reserved,
        )
        if entry.checksum != expected_checksum:
            self._fail(
                subject_id,
                "checksum mismatch",
                entry,
                expected=expected_checksum,
                actual=entry.checksum,
            )

    def verify_subject(self, subject: LedgerSubject) -> int:
        """
        Verify every entry of a subject and the continuity between them.

        Each entry's previous values must equal the prior entry's new values.

        Returns:
            Number of entries verified.
        """
        entries = self.entries_for(subject)
        prior: LedgerEntry | None = None
        for entry in entries:
            self.verify_entry(entry)
            if prior is not None:
                if entry.previous_quantity != prior.new_quantity:
                    self._fail(
                        str(subject.lot_id),
                        "quantity continuity broken",
                        entry,
                        expected=prior.new_quantity,
                        actual=entry.previous_quantity,
                    )
                if entry.previous_reserved != prior.new_reserved:
                    self._fail(
                        str(subject.lot_id),
                        "reserved continuity broken",
                        entry,
                        expected=prior.new_reserved,
                        actual=entry.previous_reserved,
                    )
            prior = entry

        logger.info(
            "ledger_subject_verified",
            extra={"subject_id": str(subject.lot_id), "entry_count": len(entries)},
        )
        return len(entries)

    def replay_lot(self, lot_id: UUID) -> LotReplay:
        """
        Replay a warehouse lot's entries in sequence order.

        Starts from the first entry's previous values and applies every
        delta.  A lot with no entries replays to zero.
        """
        entries = self.entries_for(LedgerSubject.warehouse_lot(lot_id))
        if not entries:
            return LotReplay(lot_id, 0, 0, 0, 0, 0)

        opening_quantity = entries[0].previous_quantity
        opening_reserved = entries[0].previous_reserved
        quantity, reserved = opening_quantity, opening_reserved
        for entry in entries:
            quantity += entry.quantity_delta
            reserved += entry.reserved_delta

        return LotReplay(
            lot_id=lot_id,
            entry_count=len(entries),
            opening_quantity=opening_quantity,
            opening_reserved=opening_reserved,
            closing_quantity=quantity,
            closing_reserved=reserved,
        )

    def verify_lot(self, lot_id: UUID) -> LotReplay:
        """
        Verify a lot's entries, then compare the replay with the lot row.

        Raises:
            LotNotFoundError: Unknown lot.
            LedgerIntegrityError: Entry, continuity, or replay mismatch.
        """
        lot = self._session.get(InventoryLot, lot_id)
        if lot is None:
            raise LotNotFoundError(str(lot_id))

        self.verify_subject(LedgerSubject.warehouse_lot(lot_id))
        replay = self.replay_lot(lot_id)

        if replay.closing_quantity != lot.total_quantity:
            self._fail(
                str(lot_id),
                "replayed total does not match lot",
                expected=lot.total_quantity,
                actual=replay.closing_quantity,
            )
        if replay.closing_reserved != lot.reserved_quantity:
            self._fail(
                str(lot_id),
                "replayed reserved does not match lot",
                expected=lot.reserved_quantity,
                actual=replay.closing_reserved,
            )
        return replay

    def _fail(
        self,
        subject_id: str,
        reason: str,
        entry: LedgerEntry | None = None,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        error = LedgerIntegrityError(
            subject_id=subject_id,
            reason=reason,
            entry_id=str(entry.id) if entry is not None else None,
            expected=expected,
            actual=actual,
        )
        logger.critical(
            "ledger_integrity_violation",
            extra={
                "subject_id": subject_id,
                "entry_id": error.entry_id,
                "sequence": entry.sequence if entry is not None else None,
                "reason": reason,
                "expected": expected,
                "actual": actual,
            },
        )
        raise error
