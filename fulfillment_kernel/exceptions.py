"""
Typed Exception Hierarchy for the Fulfillment Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the allocation engine must decide, per failure, whether to retry,
to surface a business error, or to page someone. Parsing message strings for
that decision is fragile, so every failure mode has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (order / item / lot / allocation identifiers)

Example:
    try:
        allocation_service.allocate(order_id, actor_id=actor_id)
    except InsufficientInventoryError as e:
        return {"error": e.code, "unmet": [u.shortfall for u in e.unmet_items]}
    except ConflictError as e:
        schedule_retry(order_id)  # lock timeout / allocation in flight

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FulfillmentKernelError (base)
    |
    +-- ValidationError                 rejected before any lock is taken
    |   +-- UnknownStatusError
    |   +-- UnknownStrategyError
    |   +-- InvalidQuantityError
    |   +-- MixedWarehouseError
    |
    +-- NotFoundError
    |   +-- OrderNotFoundError
    |   +-- ShipmentNotFoundError
    |   +-- LotNotFoundError
    |
    +-- ConflictError                   rolled back, caller may retry
    |   +-- LockTimeoutError
    |   +-- AllocationInFlightError
    |   +-- StaleAllocationError
    |
    +-- InsufficientInventoryError      business error, never retried
    +-- InvalidTransitionError          rejected before mutation
    +-- LedgerIntegrityError            fatal, manual investigation
    +-- ImmutabilityViolationError
    +-- PermissionDeniedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | UNKNOWN_STATUS              | Status code not in the enumerated set
                | UNKNOWN_STRATEGY            | Strategy name is not FEFO/FIFO
                | INVALID_QUANTITY            | Non-positive or out-of-range quantity
                | MIXED_WAREHOUSE_SHIPMENT    | Allocations span more than one warehouse
----------------|-----------------------------|-----------------------------------------
Not found       | ORDER_NOT_FOUND             | Order id doesn't exist
                | SHIPMENT_NOT_FOUND          | Shipment id doesn't exist
                | LOT_NOT_FOUND               | Lot id doesn't exist
----------------|-----------------------------|-----------------------------------------
Conflict        | LOCK_TIMEOUT                | Row lock not acquired within timeout
                | ALLOCATION_IN_FLIGHT        | Another allocation holds the order lock
                | STALE_ALLOCATION            | Allocation reference no longer valid
----------------|-----------------------------|-----------------------------------------
Inventory       | INSUFFICIENT_INVENTORY      | Eligible lots cannot cover demand
----------------|-----------------------------|-----------------------------------------
Transition      | INVALID_TRANSITION          | Target is not a legal successor
----------------|-----------------------------|-----------------------------------------
Ledger          | LEDGER_INTEGRITY_VIOLATION  | Checksum / arithmetic / replay mismatch
                | IMMUTABILITY_VIOLATION      | Update or delete of an immutable row
----------------|-----------------------------|-----------------------------------------
Access          | PERMISSION_DENIED           | Actor lacks the operation permission

===============================================================================
NOTES
===============================================================================

1. ConflictError and the business errors are siblings, never parent/child:
   ``except ConflictError`` never catches an insufficient-stock failure.

2. The ledger integrity failure is LedgerIntegrityError, distinct from
   ``sqlalchemy.exc.IntegrityError``.

===============================================================================
"""

from typing import Any


class FulfillmentKernelError(Exception):
    """
    Base exception for all fulfillment kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "FULFILLMENT_KERNEL_ERROR"


# Validation exceptions


class ValidationError(FulfillmentKernelError):
    """Malformed input. Raised before any row lock is taken."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UnknownStatusError(ValidationError):
    """Status code is not a member of the enumerated status set."""

    code: str = "UNKNOWN_STATUS"

    def __init__(self, status_kind: str, value: Any):
        self.status_kind = status_kind
        self.value = value
        super().__init__(
            f"Unknown {status_kind} status: {value!r}",
            field=status_kind,
        )


class UnknownStrategyError(ValidationError):
    """Allocation strategy name is not supported."""

    code: str = "UNKNOWN_STRATEGY"

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Unknown allocation strategy: {value!r}", field="strategy")


class InvalidQuantityError(ValidationError):
    """Quantity is non-positive or would break a quantity invariant."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: int, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value}: {reason}", field=field)


class MixedWarehouseError(ValidationError):
    """Allocations grouped into one shipment come from different warehouses."""

    code: str = "MIXED_WAREHOUSE_SHIPMENT"

    def __init__(self, order_id: str, warehouse_ids: list[str]):
        self.order_id = order_id
        self.warehouse_ids = warehouse_ids
        super().__init__(
            f"Shipment for order {order_id} must come from a single warehouse, "
            f"got {len(warehouse_ids)}: {', '.join(warehouse_ids)}",
            field="allocation_ids",
        )


# Not-found exceptions


class NotFoundError(FulfillmentKernelError):
    """Base exception for missing referenced entities."""

    code: str = "NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    """Order with given ID was not found."""

    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ShipmentNotFoundError(NotFoundError):
    """Shipment with given ID was not found."""

    code: str = "SHIPMENT_NOT_FOUND"

    def __init__(self, shipment_id: str):
        self.shipment_id = shipment_id
        super().__init__(f"Shipment not found: {shipment_id}")


class LotNotFoundError(NotFoundError):
    """Inventory lot with given ID was not found."""

    code: str = "LOT_NOT_FOUND"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Inventory lot not found: {lot_id}")


# Conflict exceptions


class ConflictError(FulfillmentKernelError):
    """
    Base exception for concurrency conflicts.

    The transaction has been rolled back; the caller may retry.
    """

    code: str = "CONFLICT"


class LockTimeoutError(ConflictError):
    """A row lock was not acquired within the configured timeout."""

    code: str = "LOCK_TIMEOUT"

    def __init__(self, resource: str, resource_ids: list[str] | None = None):
        self.resource = resource
        self.resource_ids = resource_ids or []
        super().__init__(
            f"Timed out waiting for lock on {resource}"
            + (f" ({', '.join(self.resource_ids)})" if self.resource_ids else "")
        )


class AllocationInFlightError(ConflictError):
    """Another allocation pass currently holds the order lock."""

    code: str = "ALLOCATION_IN_FLIGHT"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Allocation already in flight for order {order_id}")


class StaleAllocationError(ConflictError):
    """Allocation reference is unknown, foreign, or in the wrong state."""

    code: str = "STALE_ALLOCATION"

    def __init__(self, order_id: str, allocation_ids: list[str], reason: str):
        self.order_id = order_id
        self.allocation_ids = allocation_ids
        self.reason = reason
        super().__init__(
            f"Stale allocation reference for order {order_id}: {reason} "
            f"({', '.join(allocation_ids)})"
        )


# Business exceptions


class InsufficientInventoryError(FulfillmentKernelError):
    """
    Eligible lots cannot cover the requested quantity.

    Carries the per-item shortfalls (``UnmetItem`` values) so the caller can
    report exactly which lines could not be covered.
    """

    code: str = "INSUFFICIENT_INVENTORY"

    def __init__(self, order_id: str, unmet_items: tuple):
        self.order_id = order_id
        self.unmet_items = tuple(unmet_items)
        total = sum(item.shortfall for item in self.unmet_items)
        super().__init__(
            f"Insufficient inventory for order {order_id}: "
            f"{len(self.unmet_items)} item(s) short by {total} unit(s)"
        )


class InvalidTransitionError(FulfillmentKernelError):
    """Requested target status is not a legal successor of the current one."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_status: str,
        target_status: str,
        reason: str | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        message = (
            f"Invalid {entity_type} transition for {entity_id}: "
            f"{current_status} -> {target_status}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


# Ledger / immutability exceptions


class LedgerIntegrityError(FulfillmentKernelError):
    """
    Ledger verification failed.

    Fatal for the affected subject. Surfaced for manual investigation and
    never auto-corrected.
    """

    code: str = "LEDGER_INTEGRITY_VIOLATION"

    def __init__(
        self,
        subject_id: str,
        reason: str,
        entry_id: str | None = None,
        expected: Any = None,
        actual: Any = None,
    ):
        self.subject_id = subject_id
        self.entry_id = entry_id
        self.reason = reason
        self.expected = expected
        self.actual = actual
        location = f"entry {entry_id}" if entry_id else f"subject {subject_id}"
        super().__init__(f"Ledger integrity violation at {location}: {reason}")


class ImmutabilityViolationError(FulfillmentKernelError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


# Access exceptions


class PermissionDeniedError(FulfillmentKernelError):
    """Actor lacks the permission required for an operation."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, actor_id: str, operation: str, reason: str):
        self.actor_id = actor_id
        self.operation = operation
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {operation}: {reason}")
