"""
fulfillment_services -- Package init and public API.

Responsibility:
    Stateful orchestration services that compose the pure lot selector
    (fulfillment_engines/) with database sessions and the kernel's lot store
    and ledger.  This is the **only** layer that owns transaction
    boundaries.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        fulfillment_services/ -> fulfillment_engines/  (allowed)
        fulfillment_services/ -> fulfillment_kernel/   (allowed)
        fulfillment_engines/  -> fulfillment_services/ (FORBIDDEN)
        fulfillment_kernel/   -> fulfillment_services/ (FORBIDDEN)

Invariants enforced:
    - Layer isolation: fulfillment_kernel and fulfillment_engines never
      import from this package.
    - Every public service method commits on success and rolls back on any
      error; settings and clock are injected, never read globally.

Failure modes:
    - ImportError at startup if a service's dependency graph is broken.

Audit relevance:
    - This package is the canonical import surface for the request layer.
"""

from fulfillment_kernel.logging_config import get_logger

logger = get_logger("services")

from fulfillment_services.access import (
    OPERATION_PERMISSIONS,
    AccessGuard,
    TTLCache,
    get_permission_for_operation,
)
from fulfillment_services.allocation_service import AllocationOutcome, AllocationService
from fulfillment_services.fulfillment_orchestrator import (
    CARRIER_DISPATCH,
    MANUAL_DISPATCH,
    DispatchProfile,
    DispatchResult,
    FulfillmentOrchestrator,
    InitiationResult,
    InventoryDelta,
    OrderCancellation,
)
from fulfillment_services.review_service import (
    AllocationReview,
    CancellationResult,
    ConfirmationSummary,
    ReviewHeader,
    ReviewItem,
    ReviewService,
)

__all__ = [
    "OPERATION_PERMISSIONS",
    "AccessGuard",
    "AllocationOutcome",
    "AllocationReview",
    "AllocationService",
    "CARRIER_DISPATCH",
    "CancellationResult",
    "ConfirmationSummary",
    "DispatchProfile",
    "DispatchResult",
    "FulfillmentOrchestrator",
    "InitiationResult",
    "InventoryDelta",
    "MANUAL_DISPATCH",
    "OrderCancellation",
    "ReviewHeader",
    "ReviewItem",
    "ReviewService",
    "TTLCache",
    "get_permission_for_operation",
]
