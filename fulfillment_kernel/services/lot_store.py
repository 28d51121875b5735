"""
LotStore -- the only writer of inventory lot quantities.

Responsibility:
    Receives lots, applies manual adjustments and status changes, and
    performs the reserve / release / consume mutations used by the
    allocation and fulfillment services.  Every quantity change appends a
    ledger entry through LedgerService in the same flush.

Architecture position:
    Kernel > Services -- imperative shell.  Does NOT commit; callers own the
    transaction boundary (fulfillment_services, or ``session_scope`` for
    receiving and adjustments).

Invariants enforced:
    - 0 <= reserved_quantity <= total_quantity after every mutation.
    - Status is re-derived after every quantity mutation:
        total == 0                  -> consumed
        total > 0, available == 0   -> reserved
        available > 0               -> available
      Quarantined / expired / disposed lots keep their status.
    - Lots are locked FOR UPDATE in ascending id order (db.locking).
    - ``occurred_at`` is read from the clock after the lot lock is held.

Failure modes:
    - LotNotFoundError: unknown lot id.
    - InvalidQuantityError: non-positive quantity, or a mutation that would
      break the reserved / total bounds.
    - InvalidTransitionError: illegal manual status change, or reserving
      from a lot that is not available.
    - LockTimeoutError / ConflictError: lot lock not acquired.
"""

from collections.abc import Iterable
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from fulfillment_kernel.db.locking import lock_rows_in_order, translate_lock_errors
from fulfillment_kernel.domain.clock import Clock, SystemClock
from fulfillment_kernel.domain.dtos import ItemRef
from fulfillment_kernel.domain.statuses import (
    DERIVED_LOT_STATUSES,
    LedgerAction,
    LotStatus,
    parse_status,
)
from fulfillment_kernel.domain.workflows import LOT_WORKFLOW, validate_transition
from fulfillment_kernel.exceptions import (
    InvalidQuantityError,
    InvalidTransitionError,
    LotNotFoundError,
)
from fulfillment_kernel.logging_config import get_logger
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.ledger import LedgerEntry
from fulfillment_kernel.services.ledger_service import LedgerService, LedgerSubject

logger = get_logger("services.lot_store")


def derive_lot_status(current: str, total: int, reserved: int) -> str:
    """Status implied by the quantities; sticky statuses are returned unchanged."""
    if LotStatus(current) not in DERIVED_LOT_STATUSES:
        return current
    if total == 0:
        return LotStatus.CONSUMED.value
    if total - reserved == 0:
        return LotStatus.RESERVED.value
    return LotStatus.AVAILABLE.value


def _require_positive(field: str, quantity: int) -> None:
    if quantity <= 0:
        raise InvalidQuantityError(field, quantity, "must be positive")


class LotStore:
    """
    Quantity and status mutations for inventory lots.

    Contract:
        Mutation methods taking an ``InventoryLot`` expect the caller to
        hold its row lock (``lock_lots``).  Methods taking a ``lot_id`` lock
        the row themselves.

    Guarantees:
        - One ledger entry per quantity mutation, with the pre-mutation
          quantities as its previous values.
        - CHECK-constraint bounds are validated before any write, so a
          violation surfaces as InvalidQuantityError, not IntegrityError.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT select lots for allocation (fulfillment_engines).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._ledger = ledger or LedgerService(session)

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def lock_lots(self, lot_ids: Iterable[UUID], nowait: bool = False) -> list[InventoryLot]:
        """
        Lock lots FOR UPDATE in ascending id order.

        Raises:
            LotNotFoundError: If any id does not exist.
        """
        wanted = sorted(set(lot_ids), key=str)
        with translate_lock_errors("inventory_lots", wanted):
            lots = lock_rows_in_order(self._session, InventoryLot, wanted, nowait=nowait)
        found = {lot.id for lot in lots}
        for lot_id in wanted:
            if lot_id not in found:
                raise LotNotFoundError(str(lot_id))
        return lots

    def lock_lot(self, lot_id: UUID) -> InventoryLot:
        return self.lock_lots([lot_id])[0]

    # -------------------------------------------------------------------------
    # Receiving, adjustment, status
    # -------------------------------------------------------------------------

    def receive_lot(
        self,
        warehouse_id: UUID,
        lot_number: str,
        item: ItemRef,
        quantity: int,
        actor_id: UUID,
        expiry_date: date | None = None,
        manufacture_date: date | None = None,
        inbound_date: date | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> InventoryLot:
        """
        Create a lot with ``quantity`` on hand and record a ``receive`` entry.

        ``inbound_date`` defaults to the clock's current date.
        """
        _require_positive("quantity", quantity)
        now = self._clock.now()

        lot = InventoryLot(
            warehouse_id=warehouse_id,
            lot_number=lot_number,
            sku_id=item.sku_id,
            packaging_material_id=item.packaging_material_id,
            expiry_date=expiry_date,
            manufacture_date=manufacture_date,
            inbound_date=inbound_date or now.date(),
            total_quantity=quantity,
            reserved_quantity=0,
            status=LotStatus.AVAILABLE.value,
            created_by_id=actor_id,
        )
        self._session.add(lot)
        self._session.flush()

        self._ledger.record(
            subject=LedgerSubject.warehouse_lot(lot.id),
            action=LedgerAction.RECEIVE,
            previous_quantity=0,
            quantity_delta=quantity,
            previous_reserved=0,
            reserved_delta=0,
            actor_id=actor_id,
            occurred_at=now,
            metadata=metadata,
        )

        logger.info(
            "lot_received",
            extra={
                "lot_id": str(lot.id),
                "lot_number": lot_number,
                "warehouse_id": str(warehouse_id),
                "quantity": quantity,
            },
        )
        return lot

    def adjust_lot(
        self,
        lot_id: UUID,
        delta: int,
        reason: str,
        actor_id: UUID,
    ) -> InventoryLot:
        """
        Manual stock adjustment (count correction, damage, found stock).

        Raises:
            InvalidQuantityError: delta is zero, or total + delta < reserved.
        """
        if delta == 0:
            raise InvalidQuantityError("delta", delta, "adjustment must be non-zero")

        lot = self.lock_lot(lot_id)
        new_total = lot.total_quantity + delta
        if new_total < lot.reserved_quantity:
            raise InvalidQuantityError(
                "delta",
                delta,
                f"total {new_total} would fall below reserved {lot.reserved_quantity}",
            )

        self._apply(
            lot,
            LedgerAction.ADJUST,
            quantity_delta=delta,
            reserved_delta=0,
            actor_id=actor_id,
            metadata={"reason": reason},
        )
        logger.info(
            "lot_adjusted",
            extra={"lot_id": str(lot.id), "delta": delta, "reason": reason},
        )
        return lot

    def change_status(
        self,
        lot_id: UUID,
        status: str | LotStatus,
        actor_id: UUID,
        reason: str | None = None,
    ) -> InventoryLot:
        """
        Manual status change following the lot workflow.

        Releasing a quarantine re-derives the status from quantities, so a
        fully reserved lot comes back as ``reserved``.  Status changes write
        no ledger entry.
        """
        target = parse_status(LotStatus, status)
        lot = self.lock_lot(lot_id)
        previous = lot.status

        validate_transition(LOT_WORKFLOW, lot.id, previous, target)

        new_status = target.value
        if target in DERIVED_LOT_STATUSES:
            new_status = derive_lot_status(
                target.value, lot.total_quantity, lot.reserved_quantity
            )
        lot.status = new_status
        lot.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "lot_status_changed",
            extra={
                "lot_id": str(lot.id),
                "from_status": previous,
                "to_status": new_status,
                "reason": reason,
            },
        )
        return lot

    # -------------------------------------------------------------------------
    # Reservation lifecycle (caller holds the lot lock)
    # -------------------------------------------------------------------------

    def reserve(
        self,
        lot: InventoryLot,
        quantity: int,
        actor_id: UUID,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Move ``quantity`` from available to reserved."""
        _require_positive("quantity", quantity)
        if lot.status != LotStatus.AVAILABLE.value:
            raise InvalidTransitionError(
                entity_type=LOT_WORKFLOW.name,
                entity_id=str(lot.id),
                current_status=lot.status,
                target_status=LotStatus.RESERVED.value,
                reason="only available lots can be reserved",
            )
        if quantity > lot.available_quantity:
            raise InvalidQuantityError(
                "quantity",
                quantity,
                f"exceeds available {lot.available_quantity} on lot {lot.id}",
            )

        entry = self._apply(
            lot, LedgerAction.RESERVE,
            quantity_delta=0, reserved_delta=quantity,
            actor_id=actor_id, metadata=metadata,
        )
        logger.info(
            "lot_reserved",
            extra={
                "lot_id": str(lot.id),
                "quantity": quantity,
                "reserved_quantity": lot.reserved_quantity,
                "status": lot.status,
            },
        )
        return entry

    def release(
        self,
        lot: InventoryLot,
        quantity: int,
        actor_id: UUID,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Return ``quantity`` from reserved to available."""
        _require_positive("quantity", quantity)
        if quantity > lot.reserved_quantity:
            raise InvalidQuantityError(
                "quantity",
                quantity,
                f"exceeds reserved {lot.reserved_quantity} on lot {lot.id}",
            )

        entry = self._apply(
            lot, LedgerAction.RELEASE,
            quantity_delta=0, reserved_delta=-quantity,
            actor_id=actor_id, metadata=metadata,
        )
        logger.info(
            "lot_released",
            extra={
                "lot_id": str(lot.id),
                "quantity": quantity,
                "reserved_quantity": lot.reserved_quantity,
                "status": lot.status,
            },
        )
        return entry

    def consume(
        self,
        lot: InventoryLot,
        quantity: int,
        actor_id: UUID,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Ship ``quantity`` of reserved stock: reserved and total both drop."""
        _require_positive("quantity", quantity)
        if quantity > lot.reserved_quantity:
            raise InvalidQuantityError(
                "quantity",
                quantity,
                f"exceeds reserved {lot.reserved_quantity} on lot {lot.id}",
            )

        entry = self._apply(
            lot, LedgerAction.SHIP,
            quantity_delta=-quantity, reserved_delta=-quantity,
            actor_id=actor_id, metadata=metadata,
        )
        logger.info(
            "lot_consumed",
            extra={
                "lot_id": str(lot.id),
                "quantity": quantity,
                "total_quantity": lot.total_quantity,
                "status": lot.status,
            },
        )
        return entry

    def record_confirmation(
        self,
        lot: InventoryLot,
        actor_id: UUID,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Zero-delta ``confirm`` entry snapshotting the lot's quantities."""
        return self._apply(
            lot, LedgerAction.CONFIRM,
            quantity_delta=0, reserved_delta=0,
            actor_id=actor_id, metadata=metadata,
        )

    def _apply(
        self,
        lot: InventoryLot,
        action: LedgerAction,
        quantity_delta: int,
        reserved_delta: int,
        actor_id: UUID,
        metadata: dict[str, Any] | None,
    ) -> LedgerEntry:
        previous_quantity = lot.total_quantity
        previous_reserved = lot.reserved_quantity

        entry = self._ledger.record(
            subject=LedgerSubject.warehouse_lot(lot.id),
            action=action,
            previous_quantity=previous_quantity,
            quantity_delta=quantity_delta,
            previous_reserved=previous_reserved,
            reserved_delta=reserved_delta,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            metadata=metadata,
        )

        if quantity_delta or reserved_delta:
            lot.total_quantity = previous_quantity + quantity_delta
            lot.reserved_quantity = previous_reserved + reserved_delta
            lot.status = derive_lot_status(
                lot.status, lot.total_quantity, lot.reserved_quantity
            )
            lot.updated_by_id = actor_id
            self._session.flush()

        return entry
