"""
Fulfillment Orchestrator (``fulfillment_services.fulfillment_orchestrator``).

Responsibility
--------------
Moves confirmed allocations through shipment: groups them into a shipment
with per-item fulfillments, dispatches (the single inventory-consuming
step), advances shipments after hand-over, and cancels shipments or whole
orders while releasing what was never shipped.

Architecture
------------
Layer: **Services** -- stateful orchestration.

- Status legality comes from ``fulfillment_kernel.domain.workflows``.
- Inventory is consumed only through ``LotStore.consume``, which writes the
  ``ship`` ledger entry.
- Carrier dispatch and manual completion share one path (``_dispatch``),
  parameterised by a ``DispatchProfile``.

Invariants
----------
- Every requested target status is validated before the first mutation;
  an illegal target leaves the database untouched.
- Inventory leaves a lot exactly once per allocation: dispatched
  fulfillments are no longer open, so a second dispatch finds nothing.
- A shipment draws from exactly one warehouse.
- The order reaches its dispatch status only when the dispatch fulfills
  every live item; ``cancelled`` is reachable only through cancel_order.
- Lock order: order, items, shipments, fulfillments, allocations, lots,
  sequence counter.

Failure Modes
-------------
- ValidationError / UnknownStatusError / MixedWarehouseError.
- OrderNotFoundError, ShipmentNotFoundError.
- StaleAllocationError, LockTimeoutError (ConflictError).
- InvalidTransitionError for any illegal target or wrong dispatch profile.

Audit relevance
---------------
``fulfillment_dispatched`` is logged with one inventory delta per lot; the
matching ``ship`` ledger entries carry order, allocation, fulfillment and
shipment ids in their metadata.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from fulfillment_config.settings import EngineSettings
from fulfillment_kernel.db.locking import for_update, lock_rows_in_order, translate_lock_errors
from fulfillment_kernel.domain.clock import Clock, SystemClock
from fulfillment_kernel.domain.dtos import FulfillmentTargets
from fulfillment_kernel.domain.statuses import (
    DISPATCHED_FULFILLMENT_STATUSES,
    OPEN_FULFILLMENT_STATUSES,
    OPEN_SHIPMENT_STATUSES,
    AllocationStatus,
    DeliveryMethod,
    FulfillmentStatus,
    OrderItemStatus,
    OrderStatus,
    ShipmentStatus,
    parse_status,
)
from fulfillment_kernel.domain.workflows import (
    FULFILLMENT_WORKFLOW,
    ORDER_WORKFLOW,
    SHIPMENT_WORKFLOW,
    validate_transition,
)
from fulfillment_kernel.exceptions import (
    InvalidTransitionError,
    MixedWarehouseError,
    ShipmentNotFoundError,
    StaleAllocationError,
    ValidationError,
)
from fulfillment_kernel.logging_config import LogContext, get_logger
from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.models.fulfillment import (
    Fulfillment,
    FulfillmentAllocation,
    Shipment,
    ShipmentLot,
)
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.order import Order, OrderItem
from fulfillment_kernel.services.lot_store import LotStore
from fulfillment_kernel.services.sequence_service import SequenceService
from fulfillment_services._snapshots import ItemSnapshot, OrderSnapshot, ShipmentSnapshot
from fulfillment_services._unit_of_work import (
    lock_order,
    lock_order_items,
    move_order,
    refresh_item_statuses,
    transaction,
)

logger = get_logger("services.fulfillment")

INITIABLE_ORDER_STATUSES = frozenset({
    OrderStatus.CONFIRMED.value,
    OrderStatus.FULFILLMENT_IN_PROGRESS.value,
})

_OPEN_FULFILLMENT_VALUES = tuple(sorted(s.value for s in OPEN_FULFILLMENT_STATUSES))
_OPEN_SHIPMENT_VALUES = tuple(sorted(s.value for s in OPEN_SHIPMENT_STATUSES))
_DISPATCHED_FULFILLMENT_VALUES = tuple(sorted(s.value for s in DISPATCHED_FULFILLMENT_STATUSES))


# =============================================================================
# Dispatch profiles
# =============================================================================


@dataclass(frozen=True)
class DispatchProfile:
    """Target statuses that consume inventory for one kind of hand-over."""

    name: str
    fulfillment_status: FulfillmentStatus
    shipment_status: ShipmentStatus
    order_status: OrderStatus
    manual: bool

    def accepts(self, delivery_method: str) -> bool:
        return parse_status(DeliveryMethod, delivery_method).is_manual == self.manual


CARRIER_DISPATCH = DispatchProfile(
    name="carrier",
    fulfillment_status=FulfillmentStatus.SHIPPED,
    shipment_status=ShipmentStatus.DISPATCHED,
    order_status=OrderStatus.SHIPPED,
    manual=False,
)

MANUAL_DISPATCH = DispatchProfile(
    name="manual",
    fulfillment_status=FulfillmentStatus.COMPLETED,
    shipment_status=ShipmentStatus.COMPLETED,
    order_status=OrderStatus.COMPLETED,
    manual=True,
)

_DISPATCH_FULFILLMENT_TARGETS = frozenset({
    CARRIER_DISPATCH.fulfillment_status,
    MANUAL_DISPATCH.fulfillment_status,
})
_DISPATCH_SHIPMENT_TARGETS = frozenset({
    CARRIER_DISPATCH.shipment_status,
    MANUAL_DISPATCH.shipment_status,
})

# Order moves allowed from advance_shipment; everything else is owned by
# dispatch or cancel_order.
_ADVANCE_ORDER_STEPS = frozenset({
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    (OrderStatus.DELIVERED, OrderStatus.COMPLETED),
})


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class InitiationResult:
    shipment_id: UUID
    shipment_number: str
    fulfillment_ids: tuple[UUID, ...]


@dataclass(frozen=True)
class InventoryDelta:
    """Net effect of one dispatch on one lot."""

    lot_id: UUID
    lot_number: str
    warehouse_id: UUID
    quantity_shipped: int
    total_quantity: int
    reserved_quantity: int
    status: str


@dataclass(frozen=True)
class DispatchResult:
    order: OrderSnapshot
    items: tuple[ItemSnapshot, ...]
    shipments: tuple[ShipmentSnapshot, ...]
    inventory_deltas: tuple[InventoryDelta, ...]


@dataclass(frozen=True)
class OrderCancellation:
    order_id: UUID
    cancelled_allocation_ids: tuple[UUID, ...]
    cancelled_shipment_ids: tuple[UUID, ...]
    released_quantity: int
    order_status: str


# =============================================================================
# Orchestrator
# =============================================================================


class FulfillmentOrchestrator:
    """
    Shipment lifecycle for confirmed allocations.

    Contract
    --------
    Every public method is one transaction: commit on success, full
    rollback on any error.  Targets arrive as ``FulfillmentTargets`` so
    unknown codes fail in ``FulfillmentTargets.parse`` before any lock.

    Non-goals
    ---------
    - No carrier integration; ``carrier`` and ``tracking_number`` are
      recorded as given.
    - No partial dispatch of a single fulfillment.
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
    # Initiation
    # -------------------------------------------------------------------------

    def initiate_fulfillment(
        self,
        order_id: UUID,
        allocation_ids: Sequence[UUID],
        actor_id: UUID,
        notes: str | None = None,
        delivery_method: DeliveryMethod | str = DeliveryMethod.CARRIER,
        carrier: str | None = None,
        tracking_number: str | None = None,
    ) -> InitiationResult:
        """
        Group confirmed allocations into a new pending shipment.

        Creates one shipment, one fulfillment per affected item, the
        fulfillment/allocation links and per-lot shipment rows.  The order
        moves to ``fulfillment_in_progress``.  Inventory is not touched.
        """
        if not allocation_ids:
            raise ValidationError("At least one allocation is required", field="allocation_ids")
        if len(set(allocation_ids)) != len(allocation_ids):
            raise ValidationError("Duplicate allocation ids", field="allocation_ids")
        method = parse_status(DeliveryMethod, delivery_method)

        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            with transaction(
                self._session,
                "initiate_fulfillment",
                self._settings.locking.lock_timeout_ms,
                [order_id],
            ):
                result = self._initiate(
                    order_id, list(allocation_ids), actor_id,
                    notes, method, carrier, tracking_number,
                )

            logger.info(
                "fulfillment_initiated",
                extra={
                    "shipment_id": str(result.shipment_id),
                    "shipment_number": result.shipment_number,
                    "fulfillment_count": len(result.fulfillment_ids),
                    "delivery_method": method.value,
                },
            )
            return result

    def _initiate(
        self,
        order_id: UUID,
        allocation_ids: list[UUID],
        actor_id: UUID,
        notes: str | None,
        method: DeliveryMethod,
        carrier: str | None,
        tracking_number: str | None,
    ) -> InitiationResult:
        order = lock_order(self._session, order_id)
        items = lock_order_items(self._session, order.id)

        if order.status not in INITIABLE_ORDER_STATUSES:
            raise InvalidTransitionError(
                entity_type="order",
                entity_id=str(order.id),
                current_status=order.status,
                target_status=OrderStatus.FULFILLMENT_IN_PROGRESS.value,
                reason="allocations must be confirmed before fulfillment",
            )

        with translate_lock_errors("allocations", allocation_ids):
            allocations = lock_rows_in_order(self._session, Allocation, allocation_ids)

        found = {a.id for a in allocations}
        _stale(order.id, [i for i in allocation_ids if i not in found], "unknown allocation")
        _stale(
            order.id,
            [a.id for a in allocations if a.order_id != order.id],
            "allocation belongs to another order",
        )
        _stale(
            order.id,
            [a.id for a in allocations if a.status != AllocationStatus.CONFIRMED.value],
            "allocation is not confirmed",
        )
        _stale(
            order.id,
            sorted(self._live_links(allocation_ids), key=str),
            "allocation is already in a live fulfillment",
        )

        warehouses = sorted({str(a.warehouse_id) for a in allocations})
        if len(warehouses) > 1:
            raise MixedWarehouseError(str(order.id), warehouses)

        shipment_number = SequenceService(self._session).next_number(
            SequenceService.SHIPMENT, self._settings.fulfillment.shipment_number_prefix
        )
        shipment = Shipment(
            id=uuid4(),
            shipment_number=shipment_number,
            order_id=order.id,
            warehouse_id=allocations[0].warehouse_id,
            delivery_method=method.value,
            carrier=carrier,
            tracking_number=tracking_number,
            notes=notes,
            status=ShipmentStatus.PENDING.value,
            created_by_id=actor_id,
        )
        self._session.add(shipment)

        by_item: dict[UUID, list[Allocation]] = defaultdict(list)
        by_lot: dict[UUID, int] = defaultdict(int)
        for allocation in allocations:
            by_item[allocation.order_item_id].append(allocation)
            by_lot[allocation.lot_id] += allocation.quantity

        line_numbers = {item.id: item.line_number for item in items}
        fulfillment_ids: list[UUID] = []
        for order_item_id in sorted(by_item, key=lambda i: line_numbers[i]):
            linked = by_item[order_item_id]
            fulfillment = Fulfillment(
                id=uuid4(),
                order_id=order.id,
                order_item_id=order_item_id,
                shipment_id=shipment.id,
                quantity=sum(a.quantity for a in linked),
                status=FulfillmentStatus.PENDING.value,
                created_by_id=actor_id,
            )
            self._session.add(fulfillment)
            for allocation in linked:
                self._session.add(
                    FulfillmentAllocation(
                        fulfillment_id=fulfillment.id,
                        allocation_id=allocation.id,
                    )
                )
            fulfillment_ids.append(fulfillment.id)

        for lot_id in sorted(by_lot, key=str):
            self._session.add(
                ShipmentLot(shipment_id=shipment.id, lot_id=lot_id, quantity=by_lot[lot_id])
            )

        move_order(order, OrderStatus.FULFILLMENT_IN_PROGRESS, actor_id)
        self._session.flush()

        return InitiationResult(
            shipment_id=shipment.id,
            shipment_number=shipment.shipment_number,
            fulfillment_ids=tuple(fulfillment_ids),
        )

    def _live_links(self, allocation_ids: Sequence[UUID]) -> set[UUID]:
        rows = self._session.execute(
            select(FulfillmentAllocation.allocation_id)
            .join(Fulfillment, Fulfillment.id == FulfillmentAllocation.fulfillment_id)
            .where(
                FulfillmentAllocation.allocation_id.in_(list(allocation_ids)),
                Fulfillment.status != FulfillmentStatus.CANCELLED.value,
            )
        ).scalars().all()
        return set(rows)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def confirm_fulfillment(
        self,
        order_id: UUID,
        targets: FulfillmentTargets,
        actor_id: UUID,
    ) -> DispatchResult:
        """
        Dispatch every open carrier shipment of an order.

        Consumes the linked allocations from their lots (``ship`` ledger
        entries), moves fulfillments to ``shipped``, shipments to
        ``dispatched`` and the order to ``targets.order``.
        """
        targets.require_all()
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            with transaction(
                self._session,
                "confirm_fulfillment",
                self._settings.locking.lock_timeout_ms,
                [order_id],
            ):
                order = lock_order(self._session, order_id)
                items = lock_order_items(self._session, order.id)
                shipments = self._lock_shipments(
                    select(Shipment)
                    .where(
                        Shipment.order_id == order.id,
                        Shipment.delivery_method == DeliveryMethod.CARRIER.value,
                        Shipment.status.in_(_OPEN_SHIPMENT_VALUES),
                    )
                    .order_by(Shipment.id)
                )
                result = self._dispatch(order, items, shipments, targets, CARRIER_DISPATCH, actor_id)

            self._log_dispatch(result, CARRIER_DISPATCH)
            return result

    def complete_manual_fulfillment(
        self,
        shipment_id: UUID,
        targets: FulfillmentTargets,
        actor_id: UUID,
    ) -> DispatchResult:
        """
        Hand over a pickup / personal-delivery shipment.

        Same validation and inventory path as ``confirm_fulfillment``; the
        dispatch status is ``completed`` for both fulfillment and shipment.
        """
        targets.require_all()
        order_id = self._shipment_order_id(shipment_id)
        with LogContext.bind(order_id=order_id, shipment_id=shipment_id, actor_id=actor_id):
            with transaction(
                self._session,
                "complete_manual_fulfillment",
                self._settings.locking.lock_timeout_ms,
                [shipment_id],
            ):
                order = lock_order(self._session, order_id)
                items = lock_order_items(self._session, order.id)
                shipment = self._lock_shipment(shipment_id)
                shipments = [shipment]
                if not MANUAL_DISPATCH.accepts(shipment.delivery_method):
                    raise InvalidTransitionError(
                        entity_type="shipment",
                        entity_id=str(shipment.id),
                        current_status=shipment.status,
                        target_status=targets.shipment.value,
                        reason="carrier shipments are dispatched with confirm_fulfillment",
                    )
                result = self._dispatch(order, items, shipments, targets, MANUAL_DISPATCH, actor_id)

            self._log_dispatch(result, MANUAL_DISPATCH)
            return result

    def _dispatch(
        self,
        order: Order,
        items: list[OrderItem],
        shipments: list[Shipment],
        targets: FulfillmentTargets,
        profile: DispatchProfile,
        actor_id: UUID,
    ) -> DispatchResult:
        fulfillments = self._lock_fulfillments([s.id for s in shipments], open_only=True)
        if not fulfillments:
            raise InvalidTransitionError(
                entity_type="fulfillment",
                entity_id=str(order.id),
                current_status=order.status,
                target_status=targets.fulfillment.value,
                reason=f"no open {profile.name} fulfillments to dispatch",
            )

        if targets.fulfillment is not profile.fulfillment_status:
            raise InvalidTransitionError(
                entity_type="fulfillment",
                entity_id=str(fulfillments[0].id),
                current_status=fulfillments[0].status,
                target_status=targets.fulfillment.value,
                reason=f"{profile.name} dispatch requires {profile.fulfillment_status.value}",
            )
        if targets.shipment is not profile.shipment_status:
            raise InvalidTransitionError(
                entity_type="shipment",
                entity_id=str(shipments[0].id),
                current_status=shipments[0].status,
                target_status=targets.shipment.value,
                reason=f"{profile.name} dispatch requires {profile.shipment_status.value}",
            )

        # Validate every target before the first write.
        for fulfillment in fulfillments:
            validate_transition(
                FULFILLMENT_WORKFLOW, fulfillment.id, fulfillment.status, targets.fulfillment
            )
        dispatched_shipment_ids = {f.shipment_id for f in fulfillments}
        dispatched = [s for s in shipments if s.id in dispatched_shipment_ids]
        for shipment in dispatched:
            validate_transition(SHIPMENT_WORKFLOW, shipment.id, shipment.status, targets.shipment)
        self._check_dispatch_order_target(order, items, fulfillments, targets, profile)
        if order.status != targets.order.value:
            validate_transition(ORDER_WORKFLOW, order.id, order.status, targets.order)

        links = self._links_for([f.id for f in fulfillments])
        allocation_ids = [a for ids in links.values() for a in ids]
        with translate_lock_errors("allocations", allocation_ids):
            allocations = {
                a.id: a for a in lock_rows_in_order(self._session, Allocation, allocation_ids)
            }
        lots = {
            lot.id: lot
            for lot in self._lot_store.lock_lots(a.lot_id for a in allocations.values())
        }

        shipped_per_lot: dict[UUID, int] = defaultdict(int)
        items_by_id = {item.id: item for item in items}
        now = self._clock.now()
        for fulfillment in fulfillments:
            for allocation_id in links.get(fulfillment.id, ()):
                allocation = allocations[allocation_id]
                self._lot_store.consume(
                    lots[allocation.lot_id],
                    allocation.quantity,
                    actor_id,
                    metadata={
                        "order_id": str(order.id),
                        "allocation_id": str(allocation.id),
                        "fulfillment_id": str(fulfillment.id),
                        "shipment_id": str(fulfillment.shipment_id),
                    },
                )
                shipped_per_lot[allocation.lot_id] += allocation.quantity

            fulfillment.status = targets.fulfillment.value
            fulfillment.updated_by_id = actor_id
            item = items_by_id[fulfillment.order_item_id]
            item.fulfilled_quantity += fulfillment.quantity
            item.updated_by_id = actor_id

        for shipment in dispatched:
            shipment.status = targets.shipment.value
            shipment.dispatched_at = now
            shipment.updated_by_id = actor_id

        refresh_item_statuses(items, actor_id)
        move_order(order, targets.order, actor_id)
        self._session.flush()

        deltas = tuple(
            _delta(lots[lot_id], quantity)
            for lot_id, quantity in sorted(shipped_per_lot.items(), key=lambda kv: str(kv[0]))
        )
        return DispatchResult(
            order=OrderSnapshot.of(order),
            items=tuple(ItemSnapshot.of(i) for i in items),
            shipments=tuple(ShipmentSnapshot.of(s) for s in dispatched),
            inventory_deltas=deltas,
        )

    @staticmethod
    def _check_dispatch_order_target(
        order: Order,
        items: list[OrderItem],
        fulfillments: list[Fulfillment],
        targets: FulfillmentTargets,
        profile: DispatchProfile,
    ) -> None:
        """
        The order reaches the profile's status only once every live item is
        fully fulfilled; a partial dispatch keeps it in progress.
        """
        dispatching: dict[UUID, int] = defaultdict(int)
        for fulfillment in fulfillments:
            dispatching[fulfillment.order_item_id] += fulfillment.quantity
        complete = all(
            item.fulfilled_quantity + dispatching[item.id] >= item.requested_quantity
            for item in items
            if item.status != OrderItemStatus.CANCELLED.value
        )
        expected = profile.order_status if complete else OrderStatus.FULFILLMENT_IN_PROGRESS
        if targets.order is not expected:
            raise InvalidTransitionError(
                entity_type="order",
                entity_id=str(order.id),
                current_status=order.status,
                target_status=targets.order.value,
                reason=(
                    f"{profile.name} dispatch of "
                    f"{'the whole' if complete else 'part of the'} order requires {expected.value}"
                ),
            )

    def _log_dispatch(self, result: DispatchResult, profile: DispatchProfile) -> None:
        logger.info(
            "fulfillment_dispatched",
            extra={
                "dispatch_profile": profile.name,
                "shipment_ids": [str(s.shipment_id) for s in result.shipments],
                "order_status": result.order.status,
                "inventory_deltas": [
                    {
                        "lot_id": str(d.lot_id),
                        "quantity_shipped": d.quantity_shipped,
                        "total_quantity": d.total_quantity,
                        "reserved_quantity": d.reserved_quantity,
                    }
                    for d in result.inventory_deltas
                ],
            },
        )

    # -------------------------------------------------------------------------
    # Shipment progress and cancellation
    # -------------------------------------------------------------------------

    def advance_shipment(
        self,
        shipment_id: UUID,
        targets: FulfillmentTargets,
        actor_id: UUID,
    ) -> DispatchResult:
        """
        Status-only progress: ``picking``, ``packed``, and ``delivered``.

        Dispatch statuses are refused; they consume inventory and go
        through ``confirm_fulfillment`` / ``complete_manual_fulfillment``.
        """
        if targets.shipment is None and targets.fulfillment is None:
            raise ValidationError(
                "A shipment or fulfillment target is required", field="targets"
            )
        order_id = self._shipment_order_id(shipment_id)
        with LogContext.bind(order_id=order_id, shipment_id=shipment_id, actor_id=actor_id):
            with transaction(
                self._session,
                "advance_shipment",
                self._settings.locking.lock_timeout_ms,
                [shipment_id],
            ):
                result = self._advance(order_id, shipment_id, targets, actor_id)

            logger.info(
                "shipment_advanced",
                extra={
                    "shipment_status": result.shipments[0].status,
                    "order_status": result.order.status,
                },
            )
            return result

    def _advance(
        self,
        order_id: UUID,
        shipment_id: UUID,
        targets: FulfillmentTargets,
        actor_id: UUID,
    ) -> DispatchResult:
        order = lock_order(self._session, order_id)
        items = lock_order_items(self._session, order.id)
        shipment = self._lock_shipment(shipment_id)
        fulfillments = [
            f for f in self._lock_fulfillments([shipment.id], open_only=False)
            if f.status != FulfillmentStatus.CANCELLED.value
        ]

        if targets.shipment in _DISPATCH_SHIPMENT_TARGETS:
            raise InvalidTransitionError(
                entity_type="shipment",
                entity_id=str(shipment.id),
                current_status=shipment.status,
                target_status=targets.shipment.value,
                reason="dispatch statuses move inventory and need a dispatch operation",
            )
        if targets.fulfillment in _DISPATCH_FULFILLMENT_TARGETS:
            raise InvalidTransitionError(
                entity_type="fulfillment",
                entity_id=str(shipment.id),
                current_status=shipment.status,
                target_status=targets.fulfillment.value,
                reason="dispatch statuses move inventory and need a dispatch operation",
            )

        if targets.shipment is not None:
            validate_transition(SHIPMENT_WORKFLOW, shipment.id, shipment.status, targets.shipment)
        if targets.fulfillment is not None:
            for fulfillment in fulfillments:
                validate_transition(
                    FULFILLMENT_WORKFLOW, fulfillment.id, fulfillment.status, targets.fulfillment
                )
        if targets.order is not None and (
            targets.order is OrderStatus.CANCELLED or order.status != targets.order.value
        ):
            if (parse_status(OrderStatus, order.status), targets.order) not in _ADVANCE_ORDER_STEPS:
                raise InvalidTransitionError(
                    entity_type="order",
                    entity_id=str(order.id),
                    current_status=order.status,
                    target_status=targets.order.value,
                    reason="shipment progress only moves a dispatched order to delivered or completed",
                )
            validate_transition(ORDER_WORKFLOW, order.id, order.status, targets.order)

        if targets.shipment is not None:
            shipment.status = targets.shipment.value
            shipment.updated_by_id = actor_id
        if targets.fulfillment is not None:
            for fulfillment in fulfillments:
                fulfillment.status = targets.fulfillment.value
                fulfillment.updated_by_id = actor_id
        if targets.order is not None:
            move_order(order, targets.order, actor_id)
        self._session.flush()

        return DispatchResult(
            order=OrderSnapshot.of(order),
            items=tuple(ItemSnapshot.of(i) for i in items),
            shipments=(ShipmentSnapshot.of(shipment),),
            inventory_deltas=(),
        )

    def cancel_shipment(self, shipment_id: UUID, reason: str, actor_id: UUID) -> ShipmentSnapshot:
        """
        Cancel an undispatched shipment and its fulfillments.

        Allocations stay ``confirmed`` so they can be initiated again; the
        order stays ``fulfillment_in_progress``.
        """
        order_id = self._shipment_order_id(shipment_id)
        with LogContext.bind(order_id=order_id, shipment_id=shipment_id, actor_id=actor_id):
            with transaction(
                self._session,
                "cancel_shipment",
                self._settings.locking.lock_timeout_ms,
                [shipment_id],
            ):
                lock_order(self._session, order_id)
                shipment = self._lock_shipment(shipment_id)
                validate_transition(
                    SHIPMENT_WORKFLOW, shipment.id, shipment.status, ShipmentStatus.CANCELLED
                )
                fulfillments = [
                    f for f in self._lock_fulfillments([shipment.id], open_only=False)
                    if f.status != FulfillmentStatus.CANCELLED.value
                ]
                for fulfillment in fulfillments:
                    validate_transition(
                        FULFILLMENT_WORKFLOW,
                        fulfillment.id,
                        fulfillment.status,
                        FulfillmentStatus.CANCELLED,
                    )
                for fulfillment in fulfillments:
                    fulfillment.status = FulfillmentStatus.CANCELLED.value
                    fulfillment.updated_by_id = actor_id
                shipment.status = ShipmentStatus.CANCELLED.value
                shipment.updated_by_id = actor_id
                self._session.flush()
                snapshot = ShipmentSnapshot.of(shipment)

            logger.info(
                "shipment_cancelled",
                extra={"fulfillment_count": len(fulfillments), "reason": reason},
            )
            return snapshot

    def cancel_order(self, order_id: UUID, reason: str, actor_id: UUID) -> OrderCancellation:
        """
        Cancel a non-terminal order.

        Undispatched shipments and fulfillments are cancelled; every
        allocation not consumed by a dispatched fulfillment is cancelled and
        its reservation released.  Items with nothing fulfilled become
        ``cancelled``.
        """
        with LogContext.bind(order_id=order_id, actor_id=actor_id):
            with transaction(
                self._session,
                "cancel_order",
                self._settings.locking.lock_timeout_ms,
                [order_id],
            ):
                result = self._cancel_order(order_id, reason, actor_id)

            logger.info(
                "order_cancelled",
                extra={
                    "cancelled_allocation_count": len(result.cancelled_allocation_ids),
                    "cancelled_shipment_count": len(result.cancelled_shipment_ids),
                    "released_quantity": result.released_quantity,
                    "reason": reason,
                },
            )
            return result

    def _cancel_order(self, order_id: UUID, reason: str, actor_id: UUID) -> OrderCancellation:
        order = lock_order(self._session, order_id)
        items = lock_order_items(self._session, order.id)
        validate_transition(ORDER_WORKFLOW, order.id, order.status, OrderStatus.CANCELLED)

        shipments = self._lock_shipments(
            select(Shipment).where(Shipment.order_id == order.id).order_by(Shipment.id)
        )
        fulfillments = self._lock_fulfillments([s.id for s in shipments], open_only=False)
        with translate_lock_errors("allocations", [order.id]):
            allocations = list(
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

        dispatched_ids = [
            f.id for f in fulfillments if f.status in _DISPATCHED_FULFILLMENT_VALUES
        ]
        consumed = {a for ids in self._links_for(dispatched_ids).values() for a in ids}
        to_release = [a for a in allocations if a.id not in consumed]
        lots = {
            lot.id: lot for lot in self._lot_store.lock_lots(a.lot_id for a in to_release)
        }

        cancelled_shipments: list[UUID] = []
        for shipment in shipments:
            if shipment.status in _OPEN_SHIPMENT_VALUES:
                shipment.status = ShipmentStatus.CANCELLED.value
                shipment.updated_by_id = actor_id
                cancelled_shipments.append(shipment.id)
        for fulfillment in fulfillments:
            if fulfillment.status in _OPEN_FULFILLMENT_VALUES:
                fulfillment.status = FulfillmentStatus.CANCELLED.value
                fulfillment.updated_by_id = actor_id

        items_by_id = {item.id: item for item in items}
        now = self._clock.now()
        released = 0
        for allocation in to_release:
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
        for item in items:
            if item.fulfilled_quantity == 0 and item.status != OrderItemStatus.CANCELLED.value:
                item.status = OrderItemStatus.CANCELLED.value
                item.updated_by_id = actor_id
        move_order(order, OrderStatus.CANCELLED, actor_id)
        self._session.flush()

        return OrderCancellation(
            order_id=order.id,
            cancelled_allocation_ids=tuple(a.id for a in to_release),
            cancelled_shipment_ids=tuple(cancelled_shipments),
            released_quantity=released,
            order_status=order.status,
        )

    # -------------------------------------------------------------------------
    # Locking helpers
    # -------------------------------------------------------------------------

    def _shipment_order_id(self, shipment_id: UUID) -> UUID:
        order_id = self._session.execute(
            select(Shipment.order_id).where(Shipment.id == shipment_id)
        ).scalar_one_or_none()
        # End the read-only transaction so the order lock is the first lock.
        self._session.rollback()
        if order_id is None:
            raise ShipmentNotFoundError(str(shipment_id))
        return order_id

    def _lock_shipments(self, stmt) -> list[Shipment]:
        with translate_lock_errors("shipments"):
            return list(self._session.execute(for_update(stmt)).scalars().all())

    def _lock_shipment(self, shipment_id: UUID) -> Shipment:
        shipments = self._lock_shipments(select(Shipment).where(Shipment.id == shipment_id))
        if not shipments:
            raise ShipmentNotFoundError(str(shipment_id))
        return shipments[0]

    def _lock_fulfillments(
        self, shipment_ids: list[UUID], open_only: bool
    ) -> list[Fulfillment]:
        if not shipment_ids:
            return []
        stmt = select(Fulfillment).where(Fulfillment.shipment_id.in_(shipment_ids))
        if open_only:
            stmt = stmt.where(Fulfillment.status.in_(_OPEN_FULFILLMENT_VALUES))
        with translate_lock_errors("fulfillments", shipment_ids):
            return list(
                self._session.execute(for_update(stmt.order_by(Fulfillment.id))).scalars().all()
            )

    def _links_for(self, fulfillment_ids: list[UUID]) -> dict[UUID, list[UUID]]:
        if not fulfillment_ids:
            return {}
        rows = self._session.execute(
            select(FulfillmentAllocation.fulfillment_id, FulfillmentAllocation.allocation_id)
            .where(FulfillmentAllocation.fulfillment_id.in_(fulfillment_ids))
            .order_by(FulfillmentAllocation.allocation_id)
        ).all()
        links: dict[UUID, list[UUID]] = defaultdict(list)
        for fulfillment_id, allocation_id in rows:
            links[fulfillment_id].append(allocation_id)
        return links


def _stale(order_id: UUID, bad_ids: list[UUID], reason: str) -> None:
    if bad_ids:
        raise StaleAllocationError(str(order_id), [str(i) for i in bad_ids], reason)


def _delta(lot: InventoryLot, quantity: int) -> InventoryDelta:
    return InventoryDelta(
        lot_id=lot.id,
        lot_number=lot.lot_number,
        warehouse_id=lot.warehouse_id,
        quantity_shipped=quantity,
        total_quantity=lot.total_quantity,
        reserved_quantity=lot.reserved_quantity,
        status=lot.status,
    )
