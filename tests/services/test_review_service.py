"""
Tests for ReviewService: review, confirmation, cancellation and expiry of
proposed allocations.
"""

from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from fulfillment_kernel.domain.dtos import ItemRef
from fulfillment_kernel.domain.statuses import AllocationStatus, OrderItemStatus, OrderStatus
from fulfillment_kernel.exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    StaleAllocationError,
)
from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.models.inventory_lot import InventoryLot
from fulfillment_kernel.models.ledger import LedgerEntry
from fulfillment_kernel.models.order import Order
from fulfillment_services.review_service import EXPIRED_REASON, ReviewService


def _ledger_count(session, action: str) -> int:
    return session.execute(
        select(func.count()).select_from(LedgerEntry).where(LedgerEntry.action_type == action)
    ).scalar_one()


@pytest.fixture
def allocated_order(create_order, fefo_lots, sku_id, allocation_service, test_actor_id):
    """15 units allocated FEFO over L1 and L2, not yet confirmed."""
    order = create_order([(ItemRef.sku(sku_id), 15)], order_number="SO-REVIEW")
    outcome = allocation_service.allocate(order.id, test_actor_id)
    return order, outcome


class TestReview:

    def test_review_lists_all_live_allocations(self, allocated_order, review_service, sku_id):
        order, outcome = allocated_order

        review = review_service.review_allocations(order.id)

        assert review.header.order_number == "SO-REVIEW"
        assert review.header.status == OrderStatus.ALLOCATED.value
        assert review.header.item_count == 1
        assert [(i.lot_number, i.quantity) for i in review.items] == [("L1", 10), ("L2", 5)]
        first = review.items[0]
        assert first.sku_id == sku_id
        assert first.requested_quantity == 15
        assert first.expiry_date == date(2025, 1, 1)
        assert first.lot_total_quantity == 10
        assert first.lot_available_quantity == 0
        assert first.status == AllocationStatus.PROPOSED.value

    def test_review_specific_ids(self, allocated_order, review_service):
        order, outcome = allocated_order
        wanted = outcome.allocations[1].allocation_id

        review = review_service.review_allocations(order.id, allocation_ids=[wanted])

        assert [i.allocation_id for i in review.items] == [wanted]

    def test_review_writes_nothing(self, allocated_order, review_service, session):
        order, _ = allocated_order
        before = session.execute(select(func.count()).select_from(LedgerEntry)).scalar_one()

        review_service.review_allocations(order.id)

        assert session.execute(select(func.count()).select_from(LedgerEntry)).scalar_one() == before

    def test_unknown_allocation_is_stale(self, allocated_order, review_service, captured_logs):
        order, _ = allocated_order
        missing = uuid4()

        with pytest.raises(StaleAllocationError) as exc_info:
            review_service.review_allocations(order.id, allocation_ids=[missing])

        assert exc_info.value.allocation_ids == [str(missing)]
        assert exc_info.value.reason == "unknown allocation"
        assert any(r["message"] == "allocation_reference_stale" for r in captured_logs())

    def test_foreign_allocation_is_stale(
        self, allocated_order, create_order, sku_id, review_service
    ):
        _, outcome = allocated_order
        other = create_order([(ItemRef.sku(sku_id), 1)])

        with pytest.raises(StaleAllocationError) as exc_info:
            review_service.review_allocations(
                other.id, allocation_ids=[outcome.allocations[0].allocation_id]
            )
        assert exc_info.value.reason == "allocation belongs to another order"

    def test_warehouse_scope(self, allocated_order, review_service, warehouse_id):
        order, outcome = allocated_order

        assert len(review_service.review_allocations(order.id, warehouse_ids=[warehouse_id]).items) == 2
        assert review_service.review_allocations(order.id, warehouse_ids=[uuid4()]).items == ()

        with pytest.raises(StaleAllocationError):
            review_service.review_allocations(
                order.id,
                allocation_ids=[outcome.allocations[0].allocation_id],
                warehouse_ids=[uuid4()],
            )

    def test_unknown_order(self, session, review_service):
        with pytest.raises(OrderNotFoundError):
            review_service.review_allocations(uuid4())


class TestConfirmation:

    def test_confirm_moves_order_and_writes_snapshots(
        self, allocated_order, review_service, session, test_actor_id, deterministic_clock
    ):
        order, outcome = allocated_order

        summary = review_service.confirm_allocations(order.id, test_actor_id)

        assert not summary.already_confirmed
        assert set(summary.confirmed_allocation_ids) == {a.allocation_id for a in outcome.allocations}
        assert summary.order.status == OrderStatus.CONFIRMED.value
        assert summary.items[0].status == OrderItemStatus.FULLY_ALLOCATED.value
        assert _ledger_count(session, "confirm") == 2

        session.expire_all()
        for line in outcome.allocations:
            allocation = session.get(Allocation, line.allocation_id)
            assert allocation.status == AllocationStatus.CONFIRMED.value
            assert allocation.confirmed_at is not None

    def test_confirm_keeps_reservations(self, allocated_order, review_service, session, fefo_lots, test_actor_id):
        order, _ = allocated_order
        l1, l2 = fefo_lots

        review_service.confirm_allocations(order.id, test_actor_id)

        session.expire_all()
        assert session.get(InventoryLot, l1.id).reserved_quantity == 10
        assert session.get(InventoryLot, l2.id).reserved_quantity == 5

    def test_second_confirm_is_idempotent(
        self, allocated_order, review_service, session, test_actor_id
    ):
        order, _ = allocated_order
        review_service.confirm_allocations(order.id, test_actor_id)

        again = review_service.confirm_allocations(order.id, test_actor_id)

        assert again.already_confirmed
        assert again.confirmed_allocation_ids == ()
        assert again.order.status == OrderStatus.CONFIRMED.value
        assert _ledger_count(session, "confirm") == 2

    def test_order_without_allocations_rejected(
        self, create_order, sku_id, review_service, session, test_actor_id
    ):
        order = create_order([(ItemRef.sku(sku_id), 5)])

        with pytest.raises(InvalidTransitionError) as exc_info:
            review_service.confirm_allocations(order.id, test_actor_id)

        assert exc_info.value.reason == "order has no allocations to confirm"
        assert session.get(Order, order.id).status == OrderStatus.PENDING.value

    def test_all_cancelled_is_not_already_confirmed(
        self, allocated_order, review_service, test_actor_id
    ):
        order, _ = allocated_order
        review_service.cancel_allocations(order.id, test_actor_id)

        with pytest.raises(InvalidTransitionError):
            review_service.confirm_allocations(order.id, test_actor_id)

    def test_partially_allocated_order_stays_partial(
        self, session, create_order, fefo_lots, sku_id, allocation_service, review_service, test_actor_id
    ):
        order = create_order([(ItemRef.sku(sku_id), 40)])
        allocation_service.allocate(order.id, test_actor_id, allow_partial=True)

        summary = review_service.confirm_allocations(order.id, test_actor_id)

        assert len(summary.confirmed_allocation_ids) == 2
        assert summary.order.status == OrderStatus.PARTIALLY_ALLOCATED.value

    def test_confirm_is_logged(self, allocated_order, review_service, test_actor_id, captured_logs):
        order, _ = allocated_order
        review_service.confirm_allocations(order.id, test_actor_id)

        confirmed = [r for r in captured_logs() if r["message"] == "allocations_confirmed"]
        assert confirmed[0]["confirmed_count"] == 2
        assert confirmed[0]["order_id"] == str(order.id)


class TestCancellation:

    def test_cancel_all_releases_stock(
        self, allocated_order, review_service, session, fefo_lots, test_actor_id
    ):
        order, _ = allocated_order
        l1, l2 = fefo_lots

        result = review_service.cancel_allocations(order.id, test_actor_id, reason="customer changed mind")

        assert result.released_quantity == 15
        assert len(result.cancelled_allocation_ids) == 2
        assert result.order_status == OrderStatus.PENDING.value

        session.expire_all()
        assert session.get(InventoryLot, l1.id).reserved_quantity == 0
        assert session.get(InventoryLot, l1.id).status == "available"
        assert session.get(InventoryLot, l2.id).reserved_quantity == 0
        allocation = session.get(Allocation, result.cancelled_allocation_ids[0])
        assert allocation.status == AllocationStatus.CANCELLED.value
        assert allocation.cancel_reason == "customer changed mind"
        assert _ledger_count(session, "release") == 2

    def test_cancel_one_of_two_after_confirmation(
        self, allocated_order, review_service, session, test_actor_id
    ):
        order, outcome = allocated_order
        review_service.confirm_allocations(order.id, test_actor_id)
        l2_allocation = outcome.allocations[1].allocation_id

        result = review_service.cancel_allocations(
            order.id, test_actor_id, allocation_ids=[l2_allocation]
        )

        assert result.released_quantity == 5
        assert result.order_status == OrderStatus.PARTIALLY_ALLOCATED.value

    def test_already_cancelled_is_stale(self, allocated_order, review_service, test_actor_id):
        order, outcome = allocated_order
        target = outcome.allocations[0].allocation_id
        review_service.cancel_allocations(order.id, test_actor_id, allocation_ids=[target])

        with pytest.raises(StaleAllocationError) as exc_info:
            review_service.cancel_allocations(order.id, test_actor_id, allocation_ids=[target])
        assert exc_info.value.reason == "allocation already cancelled"

    def test_cancel_after_fulfillment_started_rejected(
        self, confirmed_order, review_service, orchestrator, session, test_actor_id
    ):
        allocation_ids = session.execute(
            select(Allocation.id).where(Allocation.order_id == confirmed_order.id)
        ).scalars().all()
        orchestrator.initiate_fulfillment(confirmed_order.id, allocation_ids, test_actor_id)

        with pytest.raises(InvalidTransitionError):
            review_service.cancel_allocations(confirmed_order.id, test_actor_id)


class TestExpiry:

    def test_old_proposals_expire(
        self, allocated_order, session, engine_settings, deterministic_clock, test_actor_id, fefo_lots
    ):
        order, outcome = allocated_order
        deterministic_clock.advance(seconds=2 * 24 * 3600)
        service = ReviewService(session, engine_settings, deterministic_clock)

        expired = service.expire_proposed_allocations(test_actor_id)

        assert set(expired) == {a.allocation_id for a in outcome.allocations}
        session.expire_all()
        assert session.get(Allocation, expired[0]).cancel_reason == EXPIRED_REASON
        assert session.get(Order, order.id).status == OrderStatus.PENDING.value
        assert session.get(InventoryLot, fefo_lots[0].id).reserved_quantity == 0

    def test_fresh_proposals_kept(self, allocated_order, review_service, test_actor_id):
        assert review_service.expire_proposed_allocations(test_actor_id) == []

    def test_explicit_ttl(self, allocated_order, session, engine_settings, deterministic_clock, test_actor_id):
        deterministic_clock.advance(seconds=120)
        service = ReviewService(session, engine_settings, deterministic_clock)

        assert service.expire_proposed_allocations(test_actor_id, older_than=timedelta(minutes=5)) == []
        assert len(service.expire_proposed_allocations(test_actor_id, older_than=timedelta(minutes=1))) == 2

    def test_confirmed_allocations_never_expire(
        self, confirmed_order, session, engine_settings, deterministic_clock, test_actor_id
    ):
        deterministic_clock.advance(seconds=7 * 24 * 3600)
        service = ReviewService(session, engine_settings, deterministic_clock)

        assert service.expire_proposed_allocations(test_actor_id) == []
