"""
fulfillment_services.access -- Caller-side permission check for engine operations.

Responsibility:
    Decide whether an actor may invoke an allocation / fulfillment
    operation, given the actor's resolved permission set.  Permission sets
    come from an injected resolver and are memoised in an explicit TTL
    cache owned by the caller.

Architecture position:
    Services layer, caller side.  The request layer calls ``AccessGuard``
    before invoking a service; the allocation and fulfillment services never
    import this module and hold no permission state.

Invariants:
    - No module-level mutable cache: every cache is an instance the caller
      creates and injects.
    - Unknown operations are denied.
    - The resolver is consulted at most once per actor per TTL window.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable
from typing import Any
from uuid import UUID

from fulfillment_kernel.domain.clock import Clock, SystemClock
from fulfillment_kernel.exceptions import PermissionDeniedError
from fulfillment_kernel.logging_config import get_logger

logger = get_logger("services.access")

# Grants every operation.
ROOT_PERMISSION = "root_access"

# operation -> permission string
OPERATION_PERMISSIONS: dict[str, str] = {
    "allocate": "allocate_inventory",
    "review_allocations": "review_inventory_allocation",
    "confirm_allocations": "confirm_inventory_allocation",
    "cancel_allocations": "confirm_inventory_allocation",
    "expire_proposed_allocations": "manage_inventory_allocation",
    "initiate_fulfillment": "initiate_outbound_fulfillment",
    "confirm_fulfillment": "confirm_outbound_fulfillment",
    "complete_manual_fulfillment": "complete_manual_fulfillment",
    "advance_shipment": "update_outbound_fulfillment",
    "cancel_shipment": "update_outbound_fulfillment",
    "cancel_order": "cancel_orders",
    "receive_lot": "manage_inventory",
    "adjust_lot": "manage_inventory",
    "change_lot_status": "manage_inventory",
    "verify_ledger": "view_inventory_logs",
}

PermissionResolver = Callable[[UUID], frozenset[str]]


def get_permission_for_operation(operation: str) -> str | None:
    """Return the permission required for ``operation``, or None if unknown."""
    return OPERATION_PERMISSIONS.get(operation)


class TTLCache:
    """
    Key -> value cache whose entries expire ``ttl_seconds`` after insertion.

    Time comes from the injected clock, so expiry is deterministic in tests.
    Not thread-safe; give each worker its own instance.
    """

    def __init__(self, ttl_seconds: float, clock: Clock | None = None):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self._ttl = ttl_seconds
        self._clock = clock or SystemClock()
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def _now(self) -> float:
        return self._clock.now().timestamp()

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._now() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._now() + self._ttl, value)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class AccessGuard:
    """
    Permission gate for engine operations.

    Contract:
        ``check`` never raises for a denial; it returns ``(allowed, reason)``
        with an empty reason when allowed.  ``require`` raises
        PermissionDeniedError instead.
    """

    def __init__(self, resolver: PermissionResolver, cache: TTLCache | None = None):
        self._resolver = resolver
        self._cache = cache

    def permissions_for(self, actor_id: UUID) -> frozenset[str]:
        if self._cache is not None:
            cached = self._cache.get(actor_id)
            if cached is not None:
                return cached
        permissions = frozenset(self._resolver(actor_id))
        if self._cache is not None:
            self._cache.set(actor_id, permissions)
        return permissions

    def check(self, actor_id: UUID, operation: str) -> tuple[bool, str]:
        """Check whether the actor may perform ``operation``.

        Returns:
            (allowed, reason). reason is empty when allowed, or a short
            message when denied.
        """
        required = get_permission_for_operation(operation)
        if required is None:
            return (False, f"unknown operation '{operation}'")

        permissions = self.permissions_for(actor_id)
        if ROOT_PERMISSION in permissions:
            return (True, "")
        if required not in permissions:
            return (False, f"permission '{required}' not granted to actor")
        return (True, "")

    def require(self, actor_id: UUID, operation: str) -> None:
        allowed, reason = self.check(actor_id, operation)
        if not allowed:
            logger.warning(
                "permission_denied",
                extra={
                    "actor_id": str(actor_id),
                    "operation": operation,
                    "reason": reason,
                },
            )
            raise PermissionDeniedError(str(actor_id), operation, reason)
