"""
Allocation Review Service (``fulfillment_services.review_service``).

Responsibility
--------------
Read-only review of proposed allocations, confirmation of an order's
proposed allocations, explicit cancellation of allocations with release of
their reservations, and the ageing sweep that expires stale proposals.

Architecture
------------
Layer: **Services** -- stateful orchestration.  Each mutating public method
owns its transaction; ``review_allocations`` takes no locks and writes
nothing.

Invariants
----------
- Confirmation is idempotent: with no ``proposed`` allocations left, a
  second call writes nothing and reports ``already_confirmed``. An order
  with no live allocations at all is refused.
- Every confirmed allocation gets one zero-delta ``confirm`` ledger entry
  snapshotting its lot.
- Cancellation releases exactly the cancelled quantity from each lot and
  moves the order back through the workflow's reversal edges only.
- Review fails closed: any unknown, foreign, or out-of-warehouse id is a
  StaleAllocationError; nothing partial is returned.

Failure Modes
-------------
- OrderNotFoundError, StaleAllocationError, InvalidTransitionError.
- LockTimeoutError (ConflictError) when a lock is not acquired in time.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fulfillment_config.settings import EngineSettings
from fulfillment_kernel.db.locking import for_update, lock_rows_in_order, translate_lock_errors
from fulfillment_kernel.domain.clock import Clock, SystemClock
from fulfillment_kernel.domain.statuses import (
    AllocationStatus,
    FulfillmentStatus,
    OrderStatus,
)
from fulfillment_kernel.exceptions import (
    ConflictError,
    InvalidTransitionError,
    OrderNotFoundError,
    StaleAllocationError,
)
from fulfillment_kernel.logging_config import LogContext, get_logger
from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.models.fulfillment import Fulfillment, FulfillmentAllocation
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.order import Order, OrderItem
from fulfillment_kernel.services.lot_store import LotStore
from fulfillment_services._snapshots import ItemSnapshot, OrderSnapshot
from fulfillment_services._unit_of_work import (
    allocation_status_for,
    lock_order,
    lock_order_items,
    move_order,
    refresh_item_statuses,
    transaction,
)

logger = get_logger("services.review")

CONFIRMABLE_ORDER_STATUSES = frozenset({
    OrderStatus.ALLOCATED.value,
    OrderStatus.PARTIALLY_ALLOCATED.value,
})

CANCELLABLE_ORDER_STATUSES = frozenset({
    OrderStatus.PENDING.value,
    OrderStatus.PARTIALLY_ALLOCATED.value,
    OrderStatus.ALLOCATED.value,
    OrderStatus.CONFIRMED.value,
})

EXPIRED_REASON = "expired"


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class ReviewHeader:
    order_id: UUID
    order_number: str
    status: str
    category: str
    requester_id: UUID | None
    item_count: int


@dataclass(frozen=True)
class ReviewItem:
    """One allocation with its item and lot details."""

    allocation_id: UUID
    order_item_id: UUID
    line_number: int
    sku_id: UUID | None
    packaging_material_id: UUID | None
    requested_quantity: int
    lot_id: UUID
    lot_number: str
    warehouse_id: UUID
    expiry_date: date | None
    manufacture_date: date | None
    lot_total_quantity: int
    lot_reserved_quantity: int
    lot_available_quantity: int
    quantity: int
    strategy: str
    status: str


@dataclass(frozen=True)
class AllocationReview:
    header: ReviewHeader
    items: tuple[ReviewItem, ...]


@dataclass(frozen=True)
class ConfirmationSummary:
    order: OrderSnapshot
    items: tuple[ItemSnapshot, ...]
    confirmed_allocation_ids: tuple[UUID, ...]
    already_confirmed: bool


@dataclass(frozen=True)
class CancellationResult:
    order_id: UUID
    cancelled_allocation_ids: tuple[UUID, ...]
    released_quantity: int
    order_status: str


# =============================================================================
# Service
# =============================================================================


class ReviewService:
    """
    Review, confirmation and cancellation of allocations.

    Contract
    --------
    Mutating methods commit on success and roll back on any failure.  Lock
    order within a transaction: order, items, allocations, lots.

    Non-goals
    ---------
    - Does NOT create allocations (AllocationService).
    - Does NOT touch fulfillments or shipments.
    """

    def __init__(
        self,
        session: Session,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._settings = settings or EngineSettings()
        self._clock = clock or SystemClock()
        self._lot_store = LotStore(session, self._clock)

    # -------------------------------------------------------------------------
    # Review (read-only)
    # -------------------------------------------------------------------------

    def review_allocations(
        self,
        order_id: UUID,
        allocation_ids: Sequence[UUID] = (),
        warehouse_ids: Sequence[UUID] = (),
    ) -> AllocationReview:
        """
        Describe allocations of an order for human review.

        An empty ``allocation_ids`` means every non-cancelled allocation of
        the order (restricted to ``warehouse_ids`` when given).  Takes no
        locks and writes nothing.

        Raises:
            OrderNotFoundError: Unknown order.
            StaleAllocationError: A requested id is unknown, belongs to
                another order, or lies outside ``warehouse_ids``.
        """
        order = self._session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))

        warehouses = set(warehouse_ids)
        if allocation_ids:
            wanted = list(dict.fromkeys(allocation_ids))
            allocations = list(
                self._session.execute(
                    select(Allocation)
                    .where(Allocation.id.in_(wanted))
                    .order_by(Allocation.id)
                ).scalars().all()
            )
            found = {a.id for a in allocations}
            self._fail_closed(order.id, [i for i in wanted if i not in found], "unknown allocation")
            self._fail_closed(
                order.id,
                [a.id for a in allocations if a.order_id != order.id],
                "allocation belongs to another order",
            )
            if warehouses:
                self._fail_closed(
                    order.id,
                    [a.id for a in allocations if a.warehouse_id not in warehouses],
                    "allocation outside the requested warehouses",
                )
        else:
            stmt = (
                select(Allocation)
                .where(
                    Allocation.order_id == order.id,
                    Allocation.status != AllocationStatus.CANCELLED.value,
                )
                .order_by(Allocation.id)
            )
            if warehouses:
                stmt = stmt.where(Allocation.warehouse_id.in_(sorted(warehouses, key=str)))
            allocations = list(self._session.execute(stmt).scalars().all())

        items = {
            i.id: i
            for i in self._session.execute(
                select(OrderItem).where(OrderItem.order_id == order.id)
            ).scalars().all()
        }
        lot_ids = sorted({a.lot_id for a in allocations}, key=str)
        lots = {
            lot.id: lot
            for lot in self._session.execute(
                select(InventoryLot).where(InventoryLot.id.in_(lot_ids))
            ).scalars().all()
        } if lot_ids else {}

        review_items = tuple(
            _review_item(a, items[a.order_item_id], lots[a.lot_id])
            for a in sorted(
                allocations,
                key=lambda a: (items[a.order_item_id].line_number, str(a.id)),
            )
        )
        header = ReviewHeader(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            category=order.category,
            requester_id=order.requester_id,
            item_count=len(items),
        )
        logger.info(
            "allocations_reviewed",
            extra={"order_id": str(order.id), "allocation_count": len(review_items)},
        )
        return AllocationReview(header=header, items=review_items)

    def _fail_closed(self, order_id: UUID, bad_ids: list[UUID], reason: str) -> None:
        if bad_ids:
            logger.warning(
                "allocation_reference_stale",
                extra={
                    "order_id": str(order_id),
                    "allocation_ids": [str(i) for i in bad_ids],
                    "reason": reason,
                },
            )
            raise StaleAllocationError(str(order_id), [str(i) for i in bad_ids], reason)

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    def confirm_allocations(self, order_id: UUID, actor_id: UUID) -> ConfirmationSummary:
        """
        Confirm every ``proposed`` allocation of an order.

        Postconditions:
            - Allocations are ``confirmed`` with ``confirmed_at`` stamped.
            - One ``confirm`` ledger entry per allocation (zero deltas).
            - Order moves ``allocated -> confirmed`` when every item is
              fully allocated; a partially allocated order stays
              ``partially_allocated``.
            - With nothing proposed, nothing is written and
              ``already_confirmed`` is True.

        Raises:
            InvalidTransitionError when the order has neither proposed nor
            confirmed allocations.
        """
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            with transaction(
                self._session,
                "confirm_allocations",
                self._settings.locking.lock_timeout_ms,
                [order_id],
            ):
                summary = self._confirm(order_id, actor_id)

            logger.info(
                "allocations_confirmed",
                extra={
                    "confirmed_count": len(summary.confirmed_allocation_ids),
                    "already_confirmed": summary.already_confirmed,
                    "order_status": summary.order.status,
                },
            )
            return summary

    def _confirm(self, order_id: UUID, actor_id: UUID) -> ConfirmationSummary:
        order = lock_order(self._session, order_id)
        items = lock_order_items(self._session, order.id)

        with translate_lock_errors("allocations", [order.id]):
            proposed = list(
                self._session.execute(
                    for_update(
                        select(Allocation)
                        .where(
                            Allocation.order_id == order.id,
                            Allocation.status == AllocationStatus.PROPOSED.value,
                        )
                        .order_by(Allocation.id)
                    )
                ).scalars().all()
            )

        if not proposed:
            confirmed = self._session.execute(
                select(Allocation.id)
                .where(
                    Allocation.order_id == order.id,
                    Allocation.status == AllocationStatus.CONFIRMED.value,
                )
                .limit(1)
            ).first()
            if confirmed is None:
                raise InvalidTransitionError(
                    entity_type="order",
                    entity_id=str(order.id),
                    current_status=order.status,
                    target_status=OrderStatus.CONFIRMED.value,
                    reason="order has no allocations to confirm",
                )
            return ConfirmationSummary(
                order=OrderSnapshot.of(order),
                items=tuple(ItemSnapshot.of(i) for i in items),
                confirmed_allocation_ids=(),
                already_confirmed=True,
            )

        if order.status not in CONFIRMABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                entity_type="order",
                entity_id=str(order.id),
                current_status=order.status,
                target_status=OrderStatus.CONFIRMED.value,
                reason="proposed allocations can only be confirmed on an allocated order",
            )

        lots = {
            lot.id: lot
            for lot in self._lot_store.lock_lots(a.lot_id for a in proposed)
        }
        now = self._clock.now()
        for allocation in proposed:
            allocation.status = AllocationStatus.CONFIRMED.value
            allocation.confirmed_at = now
            allocation.updated_by_id = actor_id
            self._lot_store.record_confirmation(
                lots[allocation.lot_id],
                actor_id,
                metadata={
                    "order_id": str(order.id),
                    "order_item_id": str(allocation.order_item_id),
                    "allocation_id": str(allocation.id),
                },
            )

        refresh_item_statuses(items, actor_id)
        if allocation_status_for(items) is OrderStatus.ALLOCATED:
            move_order(order, OrderStatus.CONFIRMED, actor_id)
        self._session.flush()

        return ConfirmationSummary(
            order=OrderSnapshot.of(order),
            items=tuple(ItemSnapshot.of(i) for i in items),
            confirmed_allocation_ids=tuple(a.id for a in proposed),
            already_confirmed=False,
        )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel_allocations(
        self,
        order_id: UUID,
        actor_id: UUID,
        allocation_ids: Sequence[UUID] | None = None,
        reason: str = "cancelled",
    ) -> CancellationResult:
        """
        Cancel allocations and release their reservations.

        ``allocation_ids=None`` cancels every live allocation of the order.

        Raises:
            InvalidTransitionError: Order is past confirmation.
            StaleAllocationError: A target is unknown, foreign, already
                cancelled, or linked to a live fulfillment.
        """
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            with transaction(
                self._session,
                "cancel_allocations",
                self._settings.locking.lock_timeout_ms,
                [order_id],
            ):
                result = self._cancel(order_id, actor_id, allocation_ids, reason)

            logger.info(
                "allocations_cancelled",
                extra={
                    "cancelled_count": len(result.cancelled_allocation_ids),
                    "released_quantity": result.released_quantity,
                    "order_status": result.order_status,
                    "reason": reason,
                },
            )
            return result

    def _cancel(
        self,
        order_id: UUID,
        actor_id: UUID,
        allocation_ids: Sequence[UUID] | None,
        reason: str,
    ) -> CancellationResult:
        order = lock_order(self._session, order_id)
        items = lock_order_items(self._session, order.id)

        if order.status not in CANCELLABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                entity_type="order",
                entity_id=str(order.id),
                current_status=order.status,
                target_status=OrderStatus.PENDING.value,
                reason="allocations can only be released before fulfillment starts",
            )

        if allocation_ids is None:
            with translate_lock_errors("allocations", [order.id]):
                targets = list(
                    self._session.execute(
                        for_update(
                            select(Allocation)
                            .where(
                                Allocation.order_id == order.id,
                                Allocation.status != AllocationStatus.CANCELLED.value,
                            )
                            .order_by(Allocation.id)
                        )
                    ).scalars().all()
                )
        else:
            wanted = list(dict.fromkeys(allocation_ids))
            with translate_lock_errors("allocations", wanted):
                targets = lock_rows_in_order(self._session, Allocation, wanted)
            found = {a.id for a in targets}
            self._fail_closed(order.id, [i for i in wanted if i not in found], "unknown allocation")
            self._fail_closed(
                order.id,
                [a.id for a in targets if a.order_id != order.id],
                "allocation belongs to another order",
            )
            self._fail_closed(
                order.id,
                [a.id for a in targets if a.status == AllocationStatus.CANCELLED.value],
                "allocation already cancelled",
            )

        linked = self._live_fulfillment_links([a.id for a in targets])
        self._fail_closed(order.id, sorted(linked, key=str), "allocation is in a live fulfillment")

        if not targets:
            return CancellationResult(order.id, (), 0, order.status)

        lots = {lot.id: lot for lot in self._lot_store.lock_lots(a.lot_id for a in targets)}
        items_by_id = {i.id: i for i in items}
        now = self._clock.now()
        released = 0
        for allocation in targets:
            self._lot_store.release(
                lots[allocation.lot_id],
                allocation.quantity,
                actor_id,
                metadata={
                    "order_id": str(order.id),
                    "order_item_id": str(allocation.order_item_id),
                    "allocation_id": str(allocation.id),
                    "reason": reason,
                },
            )
            allocation.status = AllocationStatus.CANCELLED.value
            allocation.cancelled_at = now
            allocation.cancel_reason = reason
            allocation.updated_by_id = actor_id

            item = items_by_id[allocation.order_item_id]
            item.allocated_quantity -= allocation.quantity
            item.updated_by_id = actor_id
            released += allocation.quantity

        refresh_item_statuses(items, actor_id)
        target_status = allocation_status_for(items)
        if target_status is not OrderStatus.ALLOCATED:
            move_order(order, target_status, actor_id, allow_reversal=True)
        self._session.flush()

        return CancellationResult(
            order_id=order.id,
            cancelled_allocation_ids=tuple(a.id for a in targets),
            released_quantity=released,
            order_status=order.status,
        )

    def _live_fulfillment_links(self, allocation_ids: list[UUID]) -> set[UUID]:
        if not allocation_ids:
            return set()
        rows = self._session.execute(
            select(FulfillmentAllocation.allocation_id)
            .join(Fulfillment, Fulfillment.id == FulfillmentAllocation.fulfillment_id)
            .where(
                FulfillmentAllocation.allocation_id.in_(allocation_ids),
                Fulfillment.status != FulfillmentStatus.CANCELLED.value,
            )
        ).scalars().all()
        return set(rows)

    # -------------------------------------------------------------------------
    # Ageing
    # -------------------------------------------------------------------------

    def expire_proposed_allocations(
        self,
        actor_id: UUID,
        older_than: timedelta | None = None,
    ) -> list[UUID]:
        """
        Cancel ``proposed`` allocations older than the TTL, one order at a time.

        Orders that cannot be locked (or whose allocations changed under
        us) are skipped and picked up by the next sweep.

        Returns:
            Ids of the expired allocations.
        """
        ttl = older_than or timedelta(minutes=self._settings.review.proposed_ttl_minutes)
        cutoff = self._clock.now() - ttl

        rows = self._session.execute(
            select(Allocation.order_id, Allocation.id)
            .where(
                Allocation.status == AllocationStatus.PROPOSED.value,
                Allocation.proposed_at < cutoff,
            )
            .order_by(Allocation.order_id, Allocation.id)
        ).all()
        self._session.rollback()

        by_order: dict[UUID, list[UUID]] = defaultdict(list)
        for order_id, allocation_id in rows:
            by_order[order_id].append(allocation_id)

        logger.info(
            "allocation_expiry_sweep_started",
            extra={
                "cutoff": cutoff,
                "order_count": len(by_order),
                "allocation_count": len(rows),
            },
        )

        expired: list[UUID] = []
        for order_id, ids in by_order.items():
            try:
                result = self.cancel_allocations(
                    order_id, actor_id, allocation_ids=ids, reason=EXPIRED_REASON
                )
            except ConflictError as exc:
                logger.warning(
                    "allocation_expiry_skipped",
                    extra={
                        "order_id": str(order_id),
                        "error_code": exc.code,
                        "error": str(exc),
                    },
                )
                continue
            expired.extend(result.cancelled_allocation_ids)

        logger.info("allocation_expiry_sweep_completed", extra={"expired_count": len(expired)})
        return expired


def _review_item(allocation: Allocation, item: OrderItem, lot: InventoryLot) -> ReviewItem:
    return ReviewItem(
        allocation_id=allocation.id,
        order_item_id=item.id,
        line_number=item.line_number,
        sku_id=item.sku_id,
        packaging_material_id=item.packaging_material_id,
        requested_quantity=item.requested_quantity,
        lot_id=lot.id,
        lot_number=lot.lot_number,
        warehouse_id=allocation.warehouse_id,
        expiry_date=lot.expiry_date,
        manufacture_date=lot.manufacture_date,
        lot_total_quantity=lot.total_quantity,
        lot_reserved_quantity=lot.reserved_quantity,
        lot_available_quantity=lot.available_quantity,
        quantity=allocation.quantity,
        strategy=allocation.strategy,
        status=allocation.status,
    )
