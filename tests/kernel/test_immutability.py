"""
ORM immutability guards for ledger entries and allocations.

Ledger rows are append-only.  Allocation quantities are frozen from
creation; a cancelled allocation is frozen entirely.
"""

import pytest

from fulfillment_kernel.domain.dtos import ItemRef
from fulfillment_kernel.exceptions import ImmutabilityViolationError
from fulfillment_kernel.models.allocation import Allocation
from fulfillment_kernel.services.ledger_service import LedgerSubject


@pytest.fixture
def proposed_allocation(session, create_order, create_lot, sku_id, allocation_service, test_actor_id):
    item = ItemRef.sku(sku_id)
    create_lot(item, 10)
    order = create_order([(item, 4)])
    outcome = allocation_service.allocate(order.id, test_actor_id)
    return session.get(Allocation, outcome.allocations[0].allocation_id)


class TestLedgerImmutability:

    def test_update_blocked(self, session, create_lot, sku_id, ledger_service):
        lot = create_lot(ItemRef.sku(sku_id), 5)
        entry = ledger_service.entries_for(LedgerSubject.warehouse_lot(lot.id))[0]

        entry.quantity_delta = 500
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "LedgerEntry"
        assert exc_info.value.code == "IMMUTABILITY_VIOLATION"

    def test_delete_blocked(self, session, create_lot, sku_id, ledger_service):
        lot = create_lot(ItemRef.sku(sku_id), 5)
        entry = ledger_service.entries_for(LedgerSubject.warehouse_lot(lot.id))[0]

        session.delete(entry)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_violation_is_logged(self, session, create_lot, sku_id, ledger_service, captured_logs):
        lot = create_lot(ItemRef.sku(sku_id), 5)
        entry = ledger_service.entries_for(LedgerSubject.warehouse_lot(lot.id))[0]

        entry.checksum = "0" * 64
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

        blocked = [r for r in captured_logs() if r["message"] == "immutability_violation_blocked"]
        assert blocked[0]["operation"] == "UPDATE"
        assert blocked[0]["entity_type"] == "LedgerEntry"


class TestAllocationImmutability:

    @pytest.mark.parametrize(
        "field,value",
        [("quantity", 99), ("strategy", "fifo")],
    )
    def test_frozen_fields(self, session, proposed_allocation, field, value):
        setattr(proposed_allocation, field, value)

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert field in exc_info.value.reason

    def test_status_change_allowed(self, session, proposed_allocation, deterministic_clock):
        proposed_allocation.status = "confirmed"
        proposed_allocation.confirmed_at = deterministic_clock.now()
        session.flush()

    def test_cancelling_allowed_then_frozen(self, session, proposed_allocation, deterministic_clock):
        proposed_allocation.status = "cancelled"
        proposed_allocation.cancelled_at = deterministic_clock.now()
        proposed_allocation.cancel_reason = "test"
        session.commit()
        assert proposed_allocation.status == "cancelled"

        proposed_allocation.cancel_reason = "rewritten"
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert "cancelled" in exc_info.value.reason

    def test_delete_blocked(self, session, proposed_allocation):
        session.delete(proposed_allocation)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
