"""
ORM-Level Immutability Enforcement.

===============================================================================
WHAT IS PROTECTED
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
Listeners registered here intercept those events and raise
ImmutabilityViolationError, aborting the flush:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() ---------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Entity          | When Immutable                   | Fields
----------------|----------------------------------|-------------------------------
LedgerEntry     | ALWAYS (from creation)           | every column; no deletes
Allocation      | ALWAYS (from creation)           | order_item_id, lot_id, quantity,
                |                                  | strategy; no deletes
Allocation      | After status = cancelled         | every column except audit fields

Raw SQL bypasses these listeners; test cleanup relies on that.

===============================================================================
USAGE
===============================================================================

    from fulfillment_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

TESTS ONLY:

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from fulfillment_kernel.exceptions import ImmutabilityViolationError
from fulfillment_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

ALLOCATION_FROZEN_FIELDS = frozenset({"order_id", "order_item_id", "lot_id", "quantity", "strategy"})


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "field": field,
        },
    )
    return ImmutabilityViolationError(entity_type=entity_type, entity_id=entity_id, reason=reason)


def _check_ledger_entry_immutability(mapper, connection, target):
    """Prevent any update to LedgerEntry records."""
    raise _blocked(
        "LedgerEntry",
        str(target.id),
        "UPDATE",
        "Ledger entries are append-only and cannot be modified",
    )


def _check_ledger_entry_delete(mapper, connection, target):
    """Prevent deletion of LedgerEntry records."""
    raise _blocked(
        "LedgerEntry",
        str(target.id),
        "DELETE",
        "Ledger entries cannot be deleted",
    )


def _check_allocation_immutability(mapper, connection, target):
    """
    Block quantity edits on allocations, and any edit once cancelled.

    Status history tells whether the row was already cancelled before this
    flush: cancelling (confirmed -> cancelled) is allowed, editing a
    cancelled row is not.
    """
    insp = inspect(target)
    for attr in insp.attrs:
        if attr.key in ALLOCATION_FROZEN_FIELDS and attr.history.has_changes():
            raise _blocked(
                "Allocation",
                str(target.id),
                "UPDATE",
                f"Cannot modify field '{attr.key}' on an allocation; cancel and re-create",
                field=attr.key,
            )

    status_history = get_history(target, "status")
    if status_history.deleted:
        was_cancelled = status_history.deleted[0] == "cancelled"
    else:
        was_cancelled = target.status == "cancelled"

    if was_cancelled:
        for attr in insp.attrs:
            if attr.key in _AUDIT_FIELDS:
                continue
            if attr.history.has_changes():
                raise _blocked(
                    "Allocation",
                    str(target.id),
                    "UPDATE",
                    f"Cannot modify field '{attr.key}' on a cancelled allocation",
                    field=attr.key,
                )


def _check_allocation_delete(mapper, connection, target):
    """Allocations are cancelled, never deleted."""
    raise _blocked(
        "Allocation",
        str(target.id),
        "DELETE",
        "Allocations cannot be deleted; cancel them instead",
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are left as they are.
    """
    from fulfillment_kernel.models.allocation import Allocation
    from fulfillment_kernel.models.ledger import LedgerEntry

    for target, name, fn in _listeners(LedgerEntry, Allocation):
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that need to tamper with rows to verify
    detection.
    """
    from fulfillment_kernel.models.allocation import Allocation
    from fulfillment_kernel.models.ledger import LedgerEntry

    for target, name, fn in _listeners(LedgerEntry, Allocation):
        if event.contains(target, name, fn):
            event.remove(target, name, fn)


def _listeners(ledger_entry_cls, allocation_cls):
    return (
        (ledger_entry_cls, "before_update", _check_ledger_entry_immutability),
        (ledger_entry_cls, "before_delete", _check_ledger_entry_delete),
        (allocation_cls, "before_update", _check_allocation_immutability),
        (allocation_cls, "before_delete", _check_allocation_delete),
    )
