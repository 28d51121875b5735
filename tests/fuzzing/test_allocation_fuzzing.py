"""
Hypothesis-based fuzzing of the allocate -> confirm -> dispatch path.

Random lot layouts and order quantities are pushed through the services.
After every example:
- no lot is reserved beyond its total
- allocated quantity is min(requested, eligible stock)
- FEFO only touches a later-expiring lot once every earlier one is empty
- every lot's ledger verifies and replays to the lot row
- dispatch removes exactly the allocated units from stock

Each example uses fresh SKU and warehouse ids, so the shared session needs
no cleanup between examples.
"""

from datetime import date, timedelta
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from fulfillment_kernel.domain.dtos import FulfillmentTargets, ItemRef
from fulfillment_kernel.domain.statuses import OrderItemStatus, OrderStatus
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.order import Order, OrderItem
from fulfillment_kernel.services.ledger_service import LedgerService
from fulfillment_kernel.services.lot_store import LotStore

FIRST_EXPIRY = date(2024, 6, 1)

CARRIER = FulfillmentTargets.parse(order="shipped", shipment="dispatched", fulfillment="shipped")
PICKING = FulfillmentTargets.parse(shipment="picking", fulfillment="picking")
PACKED = FulfillmentTargets.parse(shipment="packed", fulfillment="packed")

lot_layouts = st.lists(
    st.tuples(st.integers(min_value=1, max_value=30), st.integers(min_value=0, max_value=365)),
    min_size=1,
    max_size=5,
    unique_by=lambda lot: lot[1],
)

fuzz_settings = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture, HealthCheck.too_slow],
)


def _receive(session, clock, actor_id, layout):
    item = ItemRef.sku(uuid4())
    warehouse_id = uuid4()
    store = LotStore(session, clock)
    lots = [
        store.receive_lot(
            warehouse_id=warehouse_id,
            lot_number=f"FZ-{n}",
            item=item,
            quantity=quantity,
            actor_id=actor_id,
            expiry_date=FIRST_EXPIRY + timedelta(days=offset),
        )
        for n, (quantity, offset) in enumerate(layout)
    ]
    session.commit()
    return item, lots


def _order(session, actor_id, item, quantity):
    order = Order(
        id=uuid4(),
        order_number=f"SO-FZ-{uuid4().hex[:8].upper()}",
        status=OrderStatus.PENDING.value,
        created_by_id=actor_id,
    )
    session.add(order)
    session.add(
        OrderItem(
            id=uuid4(),
            order_id=order.id,
            line_number=1,
            sku_id=item.sku_id,
            requested_quantity=quantity,
            allocated_quantity=0,
            fulfilled_quantity=0,
            status=OrderItemStatus.PENDING.value,
            created_by_id=actor_id,
        )
    )
    session.commit()
    return order


class TestAllocationFuzzing:

    @fuzz_settings
    @given(layout=lot_layouts, requested=st.integers(min_value=1, max_value=120))
    def test_partial_fefo_invariants(
        self, session, allocation_service, deterministic_clock, test_actor_id, layout, requested
    ):
        item, lots = _receive(session, deterministic_clock, test_actor_id, layout)
        order = _order(session, test_actor_id, item, requested)
        stock = sum(quantity for quantity, _ in layout)

        outcome = allocation_service.allocate(order.id, test_actor_id, allow_partial=True)

        assert outcome.allocated_quantity == min(requested, stock)
        assert outcome.is_complete == (requested <= stock)

        session.expire_all()
        by_expiry = sorted(
            (session.get(InventoryLot, lot.id) for lot in lots), key=lambda lot: lot.expiry_date
        )
        seen_partial = False
        for lot in by_expiry:
            assert 0 <= lot.reserved_quantity <= lot.total_quantity
            if seen_partial:
                assert lot.reserved_quantity == 0
            if lot.reserved_quantity < lot.total_quantity:
                seen_partial = True

        ledger = LedgerService(session)
        for lot in lots:
            ledger.verify_lot(lot.id)

    @fuzz_settings
    @given(layout=lot_layouts, requested=st.integers(min_value=1, max_value=60))
    def test_dispatch_consumes_exactly_allocated(
        self, session, allocation_service, review_service, orchestrator,
        deterministic_clock, test_actor_id, layout, requested,
    ):
        stock = sum(quantity for quantity, _ in layout)
        requested = min(requested, stock)
        item, lots = _receive(session, deterministic_clock, test_actor_id, layout)
        order = _order(session, test_actor_id, item, requested)

        outcome = allocation_service.allocate(order.id, test_actor_id)
        review_service.confirm_allocations(order.id, test_actor_id)
        initiated = orchestrator.initiate_fulfillment(
            order.id, [a.allocation_id for a in outcome.allocations], test_actor_id
        )
        orchestrator.advance_shipment(initiated.shipment_id, PICKING, test_actor_id)
        orchestrator.advance_shipment(initiated.shipment_id, PACKED, test_actor_id)
        result = orchestrator.confirm_fulfillment(order.id, CARRIER, test_actor_id)

        assert result.order.status == OrderStatus.SHIPPED.value
        assert sum(d.quantity_shipped for d in result.inventory_deltas) == requested

        session.expire_all()
        remaining = sum(session.get(InventoryLot, lot.id).total_quantity for lot in lots)
        assert remaining == stock - requested
        assert all(session.get(InventoryLot, lot.id).reserved_quantity == 0 for lot in lots)

        ledger = LedgerService(session)
        for lot in lots:
            replay = ledger.verify_lot(lot.id)
            assert replay.closing_reserved == 0
