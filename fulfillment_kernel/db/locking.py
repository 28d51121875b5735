"""
Module: fulfillment_kernel.db.locking
Responsibility: Row-level lock acquisition in a deterministic order, the
    per-transaction lock wait timeout, and translation of database lock
    failures into typed ConflictError subclasses.
Architecture position: Kernel > DB.  Used by kernel services (LotStore) and
    by fulfillment_services for order / item / allocation locks.

Invariants enforced:
    - Deterministic lock order: whenever more than one row of a table is
      locked in one transaction, rows are locked sorted by primary key.
      Combined with the table order below, two transactions can never hold
      locks in crossing order.

          orders -> order_items -> shipments -> fulfillments
                 -> allocations -> inventory_lots -> sequence_counters

    - Bounded waits: every mutating transaction sets ``lock_timeout`` before
      its first lock (PostgreSQL).  A wait past the timeout fails the
      statement; the caller's transaction is then rolled back wholesale.
    - Locks are scoped to the affected rows only; no table locks.

Failure modes:
    - LockTimeoutError: lock_not_available (SQLSTATE 55P03) from
      ``lock_timeout`` or ``NOWAIT``.
    - ConflictError: deadlock_detected (40P01) or serialization_failure
      (40001).  Retry is the caller's decision.
"""

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy import Select, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from fulfillment_kernel.exceptions import ConflictError, LockTimeoutError
from fulfillment_kernel.logging_config import get_logger

logger = get_logger("db.locking")

T = TypeVar("T")

LOCK_NOT_AVAILABLE = "55P03"
DEADLOCK_DETECTED = "40P01"
SERIALIZATION_FAILURE = "40001"

_LOCK_FAILURE_MARKERS = (
    "lock timeout",
    "could not obtain lock",
    "lock_not_available",
    "database is locked",
)


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_lock_failure(exc: DBAPIError) -> bool:
    """True if the error means a row lock could not be acquired in time."""
    if _sqlstate(exc) == LOCK_NOT_AVAILABLE:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _LOCK_FAILURE_MARKERS)


def is_transaction_conflict(exc: DBAPIError) -> bool:
    """True for deadlock / serialization failures."""
    if _sqlstate(exc) in (DEADLOCK_DETECTED, SERIALIZATION_FAILURE):
        return True
    return "deadlock" in str(exc).lower()


def apply_lock_timeout(session: Session, timeout_ms: int) -> None:
    """
    Bound lock waits for the rest of the current transaction.

    PostgreSQL only; ``SET LOCAL`` expires with the transaction.  Other
    dialects have no row locks to wait on.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))


def for_update(stmt: Select, nowait: bool = False) -> Select:
    """Attach FOR UPDATE and force a re-read of already-loaded instances."""
    return stmt.with_for_update(nowait=nowait).execution_options(
        populate_existing=True
    )


def lock_rows_in_order(
    session: Session,
    model: type[T],
    ids: Iterable[Any],
    nowait: bool = False,
) -> list[T]:
    """
    Lock rows of ``model`` by primary key, in ascending key order.

    Returns the locked instances sorted by id.  Missing ids are simply
    absent from the result; callers decide whether that is an error.
    """
    wanted = sorted(set(ids), key=str)
    if not wanted:
        return []
    stmt = select(model).where(model.id.in_(wanted)).order_by(model.id)
    return list(session.execute(for_update(stmt, nowait=nowait)).scalars().all())


@contextmanager
def translate_lock_errors(
    resource: str,
    resource_ids: Iterable[Any] = (),
    on_lock_failure: Callable[[], Exception] | None = None,
) -> Iterator[None]:
    """
    Convert driver-level lock failures raised inside the block into typed
    conflicts.

    Args:
        resource: Table / entity name reported in the error.
        resource_ids: Identifiers being locked, for the error payload.
        on_lock_failure: Optional factory for a more specific ConflictError
            (e.g. AllocationInFlightError for the order lock).
    """
    try:
        yield
    except DBAPIError as exc:
        ids = [str(i) for i in resource_ids]
        if is_lock_failure(exc):
            logger.warning(
                "lock_acquisition_failed",
                extra={"resource": resource, "resource_ids": ids},
            )
            if on_lock_failure is not None:
                raise on_lock_failure() from exc
            raise LockTimeoutError(resource, ids) from exc
        if is_transaction_conflict(exc):
            logger.warning(
                "transaction_conflict",
                extra={"resource": resource, "resource_ids": ids},
            )
            raise ConflictError(
                f"Concurrent transaction conflict on {resource}; retry the operation"
            ) from exc
        raise
