"""
Allocation Service (``fulfillment_services.allocation_service``).

Responsibility
--------------
Reserves inventory for an order: locks the order and its items, loads and
locks candidate lots in one statement, runs the pure lot selector per item
against a shared availability map, and persists ``proposed`` allocations
with their ``reserve`` ledger entries.

Architecture
------------
Layer: **Services** -- stateful orchestration.

1. ``fulfillment_engines.select_lots`` decides which lots to draw from.
2. ``LotStore.reserve`` mutates lot quantities and writes the ledger.
3. This service owns the transaction boundary.

Invariants
----------
- At most one allocation pass per order: the order row is locked with
  ``FOR UPDATE NOWAIT``; a second pass fails fast with
  AllocationInFlightError.  The guarantee is the database lock, so it
  holds across processes.
- No over-reservation: every candidate lot is locked before it is read for
  mutation, and the availability map is shared by all items of the pass.
- All-or-nothing: with ``allow_partial`` off, any shortfall raises
  InsufficientInventoryError and nothing is written.
- Per item: sum of live allocation quantities == allocated_quantity
  <= requested_quantity.

Failure Modes
-------------
- UnknownStrategyError before any lock.
- OrderNotFoundError, InvalidTransitionError (order not allocatable).
- AllocationInFlightError / LockTimeoutError (ConflictError; retryable).
- InsufficientInventoryError (business error; not retried).

Usage::

    service = AllocationService(session, settings, clock)
    outcome = service.allocate(order_id, actor_id, strategy="fefo")
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from fulfillment_config.settings import EngineSettings
from fulfillment_engines.lot_selector import (
    AllocationStrategy,
    LotCandidate,
    SelectionResult,
    parse_strategy,
    select_lots,
)
from fulfillment_kernel.db.locking import for_update, translate_lock_errors
from fulfillment_kernel.domain.clock import Clock, SystemClock
from fulfillment_kernel.domain.dtos import UnmetItem
from fulfillment_kernel.domain.statuses import (
    AllocationStatus,
    LotStatus,
    OrderItemStatus,
    OrderStatus,
)
from fulfillment_kernel.exceptions import (
    AllocationInFlightError,
    InsufficientInventoryError,
    InvalidTransitionError,
)
from fulfillment_kernel.logging_config import LogContext, get_logger
from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.order import OrderItem
from fulfillment_kernel.services.lot_store import LotStore
from fulfillment_services._snapshots import AllocationLine
from fulfillment_services._unit_of_work import (
    allocation_status_for,
    lock_order,
    lock_order_items,
    move_order,
    refresh_item_statuses,
    transaction,
)

logger = get_logger("services.allocation")

ALLOCATABLE_ORDER_STATUSES = frozenset({
    OrderStatus.PENDING.value,
    OrderStatus.PARTIALLY_ALLOCATED.value,
    OrderStatus.ALLOCATED.value,
})


@dataclass(frozen=True)
class AllocationOutcome:
    """Result of one allocation pass."""

    order_id: UUID
    allocations: tuple[AllocationLine, ...]
    unmet_items: tuple[UnmetItem, ...]
    order_status: str

    @property
    def allocated_quantity(self) -> int:
        return sum(a.quantity for a in self.allocations)

    @property
    def is_complete(self) -> bool:
        return not self.unmet_items


class AllocationService:
    """
    Reserves lots for order items.

    Contract
    --------
    ``allocate`` either commits every allocation it selected or writes
    nothing.  Settings and clock are injected; the service reads no global
    state.

    Non-goals
    ---------
    - Does NOT confirm allocations (ReviewService).
    - Does NOT retry on conflict; callers decide.
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

    def allocate(
        self,
        order_id: UUID,
        actor_id: UUID,
        strategy: AllocationStrategy | str | None = None,
        warehouse_id: UUID | None = None,
        allow_partial: bool | None = None,
    ) -> AllocationOutcome:
        """
        Allocate every outstanding order item.

        Preconditions:
            - The order is ``pending``, ``partially_allocated`` or
              ``allocated``.

        Postconditions:
            - One ``proposed`` allocation and one ``reserve`` ledger entry
              per pick.
            - Order is ``allocated`` when every item is fully allocated,
              else ``partially_allocated`` (or unchanged when nothing could
              be allocated in partial mode).

        Raises:
            UnknownStrategyError, OrderNotFoundError, InvalidTransitionError,
            AllocationInFlightError, LockTimeoutError,
            InsufficientInventoryError.
        """
        resolved = parse_strategy(
            strategy if strategy is not None else self._settings.allocation.default_strategy
        )
        partial = self._settings.allocation.allow_partial if allow_partial is None else allow_partial

        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            logger.info(
                "allocation_started",
                extra={
                    "strategy": resolved.value,
                    "warehouse_id": str(warehouse_id) if warehouse_id else None,
                    "allow_partial": partial,
                },
            )
            with transaction(
                self._session, "allocate", self._settings.locking.lock_timeout_ms, [order_id]
            ):
                outcome = self._allocate(order_id, actor_id, resolved, warehouse_id, partial)

            logger.info(
                "allocation_committed",
                extra={
                    "allocation_count": len(outcome.allocations),
                    "allocated_quantity": outcome.allocated_quantity,
                    "unmet_item_count": len(outcome.unmet_items),
                    "order_status": outcome.order_status,
                },
            )
            return outcome

    def _allocate(
        self,
        order_id: UUID,
        actor_id: UUID,
        strategy: AllocationStrategy,
        warehouse_id: UUID | None,
        allow_partial: bool,
    ) -> AllocationOutcome:
        order = lock_order(
            self._session,
            order_id,
            nowait=True,
            on_lock_failure=lambda: AllocationInFlightError(str(order_id)),
        )
        items = lock_order_items(self._session, order.id, nowait=True)

        if order.status not in ALLOCATABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                entity_type="order",
                entity_id=str(order.id),
                current_status=order.status,
                target_status=OrderStatus.ALLOCATED.value,
                reason="order is not open for allocation",
            )

        open_items = [
            item for item in items
            if item.outstanding_quantity > 0
            and item.status != OrderItemStatus.CANCELLED.value
        ]
        if not open_items:
            logger.info("allocation_nothing_outstanding")
            return AllocationOutcome(order.id, (), (), order.status)

        lots = self._lock_candidate_lots(open_items, warehouse_id)
        plans, unmet = self._plan(open_items, lots, strategy, warehouse_id)

        if unmet and not allow_partial:
            logger.warning(
                "allocation_insufficient_inventory",
                extra={
                    "unmet_item_count": len(unmet),
                    "shortfall": sum(u.shortfall for u in unmet),
                },
            )
            raise InsufficientInventoryError(str(order.id), tuple(unmet))

        lots_by_id = {lot.id: lot for lot in lots}
        now = self._clock.now()
        lines: list[AllocationLine] = []
        for item, result in plans:
            for pick in result.picks:
                lot = lots_by_id[pick.lot_id]
                allocation = Allocation(
                    id=uuid4(),
                    order_id=order.id,
                    order_item_id=item.id,
                    lot_id=lot.id,
                    warehouse_id=lot.warehouse_id,
                    quantity=pick.quantity,
                    strategy=strategy.value,
                    status=AllocationStatus.PROPOSED.value,
                    proposed_at=now,
                    created_by_id=actor_id,
                )
                self._session.add(allocation)
                self._lot_store.reserve(
                    lot,
                    pick.quantity,
                    actor_id,
                    metadata={
                        "order_id": str(order.id),
                        "order_item_id": str(item.id),
                        "allocation_id": str(allocation.id),
                    },
                )
                item.allocated_quantity += pick.quantity
                item.updated_by_id = actor_id
                lines.append(AllocationLine.of(allocation, lot))

        refresh_item_statuses(items, actor_id)
        if lines:
            move_order(order, allocation_status_for(items), actor_id)
        self._session.flush()

        return AllocationOutcome(
            order_id=order.id,
            allocations=tuple(lines),
            unmet_items=tuple(unmet),
            order_status=order.status,
        )

    def _lock_candidate_lots(
        self,
        items: list[OrderItem],
        warehouse_id: UUID | None,
    ) -> list[InventoryLot]:
        """One locking SELECT for the candidate lots of every open item."""
        sku_ids = sorted({i.sku_id for i in items if i.sku_id is not None}, key=str)
        material_ids = sorted(
            {i.packaging_material_id for i in items if i.packaging_material_id is not None},
            key=str,
        )
        item_filters = []
        if sku_ids:
            item_filters.append(InventoryLot.sku_id.in_(sku_ids))
        if material_ids:
            item_filters.append(InventoryLot.packaging_material_id.in_(material_ids))

        conditions = [
            or_(*item_filters),
            InventoryLot.status == LotStatus.AVAILABLE.value,
            InventoryLot.total_quantity > InventoryLot.reserved_quantity,
        ]
        if warehouse_id is not None:
            conditions.append(InventoryLot.warehouse_id == warehouse_id)

        stmt = select(InventoryLot).where(and_(*conditions)).order_by(InventoryLot.id)
        with translate_lock_errors("inventory_lots"):
            lots = list(self._session.execute(for_update(stmt)).scalars().all())

        logger.debug("allocation_candidates_locked", extra={"lot_count": len(lots)})
        return lots

    def _plan(
        self,
        items: list[OrderItem],
        lots: list[InventoryLot],
        strategy: AllocationStrategy,
        warehouse_id: UUID | None,
    ) -> tuple[list[tuple[OrderItem, SelectionResult]], list[UnmetItem]]:
        """Run the selector per item against a shared availability map."""
        lots_by_item: dict[tuple, list[InventoryLot]] = defaultdict(list)
        for lot in lots:
            lots_by_item[lot.item_ref.key].append(lot)

        availability = {lot.id: lot.available_quantity for lot in lots}
        as_of = self._clock.today() if self._settings.allocation.exclude_expired else None

        plans: list[tuple[OrderItem, SelectionResult]] = []
        unmet: list[UnmetItem] = []
        for item in items:
            candidates = [
                _candidate(lot, availability[lot.id])
                for lot in lots_by_item.get(item.item_ref.key, ())
            ]
            result = select_lots(
                required_quantity=item.outstanding_quantity,
                candidates=candidates,
                strategy=strategy,
                warehouse_id=warehouse_id,
                exclude_expired_as_of=as_of,
            )
            for pick in result.picks:
                availability[pick.lot_id] -= pick.quantity
            plans.append((item, result))

            if not result.is_fulfilled:
                unmet.append(
                    UnmetItem(
                        order_item_id=item.id,
                        item=item.item_ref,
                        requested_quantity=item.requested_quantity,
                        allocated_quantity=item.allocated_quantity + result.allocated_quantity,
                        shortfall=result.unmet_quantity,
                    )
                )
        return plans, unmet


def _candidate(lot: InventoryLot, available: int) -> LotCandidate:
    return LotCandidate(
        lot_id=lot.id,
        warehouse_id=lot.warehouse_id,
        status=lot.status,
        total_quantity=lot.total_quantity,
        reserved_quantity=lot.total_quantity - available,
        expiry_date=lot.expiry_date,
        inbound_date=lot.inbound_date,
        received_at=lot.created_at,
        lot_number=lot.lot_number,
    )
