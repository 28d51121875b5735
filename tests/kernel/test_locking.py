"""
Tests for lock helpers: failure classification, translation into typed
conflicts, and deterministic lock ordering.
"""

from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from fulfillment_kernel.db.locking import (
    apply_lock_timeout,
    is_lock_failure,
    is_transaction_conflict,
    lock_rows_in_order,
    translate_lock_errors,
)
from fulfillment_kernel.domain.dtos import ItemRef
from fulfillment_kernel.exceptions import (
    AllocationInFlightError,
    ConflictError,
    LockTimeoutError,
)
from fulfillment_kernel.models.inventory_lot import InventoryLot


class _DriverError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


def _dbapi_error(message: str, pgcode: str | None = None) -> DBAPIError:
    return OperationalError("SELECT 1 FOR UPDATE", {}, _DriverError(message, pgcode))


class TestClassification:

    def test_lock_not_available_sqlstate(self):
        assert is_lock_failure(_dbapi_error("whatever", pgcode="55P03"))

    def test_lock_timeout_message(self):
        assert is_lock_failure(_dbapi_error("canceling statement due to lock timeout"))

    def test_sqlite_busy(self):
        assert is_lock_failure(_dbapi_error("database is locked"))

    @pytest.mark.parametrize("pgcode", ["40P01", "40001"])
    def test_deadlock_and_serialization(self, pgcode):
        error = _dbapi_error("conflict", pgcode=pgcode)
        assert is_transaction_conflict(error)
        assert not is_lock_failure(error)

    def test_unrelated_error(self):
        error = _dbapi_error("relation does not exist", pgcode="42P01")
        assert not is_lock_failure(error)
        assert not is_transaction_conflict(error)


class TestTranslateLockErrors:

    def test_lock_failure_becomes_lock_timeout(self, captured_logs):
        lot_id = uuid4()
        with pytest.raises(LockTimeoutError) as exc_info:
            with translate_lock_errors("inventory_lots", [lot_id]):
                raise _dbapi_error("lock timeout", pgcode="55P03")

        assert exc_info.value.resource == "inventory_lots"
        assert exc_info.value.resource_ids == [str(lot_id)]
        assert any(r["message"] == "lock_acquisition_failed" for r in captured_logs())

    def test_custom_conflict_factory(self):
        with pytest.raises(AllocationInFlightError):
            with translate_lock_errors(
                "orders", ["o-1"], on_lock_failure=lambda: AllocationInFlightError("o-1")
            ):
                raise _dbapi_error("could not obtain lock on row", pgcode="55P03")

    def test_deadlock_becomes_conflict(self):
        with pytest.raises(ConflictError) as exc_info:
            with translate_lock_errors("allocations"):
                raise _dbapi_error("deadlock detected", pgcode="40P01")
        assert not isinstance(exc_info.value, LockTimeoutError)

    def test_other_errors_pass_through(self):
        with pytest.raises(DBAPIError):
            with translate_lock_errors("orders"):
                raise _dbapi_error("syntax error", pgcode="42601")


class TestLockOrdering:

    def test_rows_returned_sorted_by_id(self, session, create_lot, sku_id):
        item = ItemRef.sku(sku_id)
        ids = [create_lot(item, 1).id for _ in range(5)]

        locked = lock_rows_in_order(session, InventoryLot, reversed(ids))

        assert [str(lot.id) for lot in locked] == sorted(str(i) for i in ids)

    def test_missing_ids_absent(self, session, create_lot, sku_id):
        lot = create_lot(ItemRef.sku(sku_id), 1)

        locked = lock_rows_in_order(session, InventoryLot, [lot.id, uuid4()])

        assert [row.id for row in locked] == [lot.id]

    def test_empty_id_list(self, session):
        assert lock_rows_in_order(session, InventoryLot, []) == []

    def test_lock_timeout_is_noop_off_postgres(self, session, db_engine):
        if db_engine.dialect.name == "postgresql":
            pytest.skip("SET LOCAL applies on PostgreSQL")
        apply_lock_timeout(session, 100)
