"""
Fulfillment Workflows.

Fixed state machines for orders, fulfillments, shipments, and lots.
A transition is legal only if a direct edge exists; there is no skipping.
Reversal edges exist only for the allocation-release path and are never
accepted for caller-requested targets.
"""

from dataclasses import dataclass
from enum import Enum

from fulfillment_kernel.exceptions import InvalidTransitionError
from fulfillment_kernel.logging_config import get_logger
from fulfillment_kernel.domain.statuses import (
    FulfillmentStatus,
    LotStatus,
    OrderStatus,
    ShipmentStatus,
)

logger = get_logger("domain.workflows")


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: str
    to_state: str
    action: str
    moves_inventory: bool = False
    reverses: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def find(self, from_state: str, to_state: str) -> Transition | None:
        for transition in self.transitions:
            if transition.from_state == from_state and transition.to_state == to_state:
                return transition
        return None

    def successors(self, from_state: str, include_reversals: bool = False) -> tuple[str, ...]:
        return tuple(
            t.to_state
            for t in self.transitions
            if t.from_state == from_state and (include_reversals or not t.reverses)
        )

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def can_transition(
        self,
        from_state: str,
        to_state: str,
        allow_reversal: bool = False,
    ) -> bool:
        transition = self.find(from_state, to_state)
        if transition is None:
            return False
        return allow_reversal or not transition.reverses


def _value(state: str | Enum) -> str:
    return state.value if isinstance(state, Enum) else str(state)


def validate_transition(
    workflow: Workflow,
    entity_id: object,
    current: str | Enum,
    target: str | Enum,
    allow_reversal: bool = False,
) -> Transition:
    """
    Return the transition ``current -> target`` or raise InvalidTransitionError.

    Callers validate every requested target before the first mutation.
    """
    current_value, target_value = _value(current), _value(target)
    transition = workflow.find(current_value, target_value)
    if transition is None or (transition.reverses and not allow_reversal):
        if workflow.is_terminal(current_value):
            reason = f"{current_value} is terminal"
        else:
            legal = ", ".join(workflow.successors(current_value)) or "none"
            reason = f"legal successors: {legal}"
        raise InvalidTransitionError(
            entity_type=workflow.name,
            entity_id=str(entity_id),
            current_status=current_value,
            target_status=target_value,
            reason=reason,
        )
    return transition


def _cancellations(workflow_states: tuple[str, ...], cancelled: str) -> tuple[Transition, ...]:
    return tuple(
        Transition(state, cancelled, action="cancel") for state in workflow_states
    )


# -----------------------------------------------------------------------------
# Order Workflow
# -----------------------------------------------------------------------------

_O = OrderStatus

ORDER_WORKFLOW = Workflow(
    name="order",
    description="Order lifecycle from allocation through delivery",
    initial_state=_O.PENDING.value,
    states=tuple(s.value for s in _O),
    transitions=(
        Transition(_O.PENDING.value, _O.PARTIALLY_ALLOCATED.value, action="allocate"),
        Transition(_O.PENDING.value, _O.ALLOCATED.value, action="allocate"),
        Transition(_O.PARTIALLY_ALLOCATED.value, _O.ALLOCATED.value, action="allocate"),
        Transition(_O.ALLOCATED.value, _O.CONFIRMED.value, action="confirm_allocations"),
        Transition(
            _O.CONFIRMED.value, _O.FULFILLMENT_IN_PROGRESS.value, action="initiate_fulfillment"
        ),
        Transition(
            _O.FULFILLMENT_IN_PROGRESS.value, _O.SHIPPED.value,
            action="dispatch", moves_inventory=True,
        ),
        Transition(
            _O.FULFILLMENT_IN_PROGRESS.value, _O.COMPLETED.value,
            action="complete_manual", moves_inventory=True,
        ),
        Transition(_O.SHIPPED.value, _O.DELIVERED.value, action="deliver"),
        Transition(_O.DELIVERED.value, _O.COMPLETED.value, action="complete"),
        # Allocation release path
        Transition(_O.PARTIALLY_ALLOCATED.value, _O.PENDING.value, action="release", reverses=True),
        Transition(_O.ALLOCATED.value, _O.PENDING.value, action="release", reverses=True),
        Transition(
            _O.ALLOCATED.value, _O.PARTIALLY_ALLOCATED.value, action="release", reverses=True
        ),
        Transition(_O.CONFIRMED.value, _O.PENDING.value, action="release", reverses=True),
        Transition(
            _O.CONFIRMED.value, _O.PARTIALLY_ALLOCATED.value, action="release", reverses=True
        ),
    ) + _cancellations(
        (
            _O.PENDING.value,
            _O.PARTIALLY_ALLOCATED.value,
            _O.ALLOCATED.value,
            _O.CONFIRMED.value,
            _O.FULFILLMENT_IN_PROGRESS.value,
            _O.SHIPPED.value,
            _O.DELIVERED.value,
        ),
        _O.CANCELLED.value,
    ),
    terminal_states=(_O.COMPLETED.value, _O.CANCELLED.value),
)


# -----------------------------------------------------------------------------
# Fulfillment Workflow
# -----------------------------------------------------------------------------

_F = FulfillmentStatus

FULFILLMENT_WORKFLOW = Workflow(
    name="fulfillment",
    description="Per-item progress from reservation to hand-over",
    initial_state=_F.PENDING.value,
    states=tuple(s.value for s in _F),
    transitions=(
        Transition(_F.PENDING.value, _F.PICKING.value, action="start_picking"),
        Transition(_F.PICKING.value, _F.PACKED.value, action="pack"),
        Transition(_F.PACKED.value, _F.SHIPPED.value, action="dispatch", moves_inventory=True),
        Transition(
            _F.PACKED.value, _F.COMPLETED.value, action="complete_manual", moves_inventory=True
        ),
        Transition(_F.SHIPPED.value, _F.DELIVERED.value, action="deliver"),
        Transition(_F.COMPLETED.value, _F.DELIVERED.value, action="deliver"),
    ) + _cancellations(
        (_F.PENDING.value, _F.PICKING.value, _F.PACKED.value),
        _F.CANCELLED.value,
    ),
    terminal_states=(_F.DELIVERED.value, _F.CANCELLED.value),
)


# -----------------------------------------------------------------------------
# Shipment Workflow
# -----------------------------------------------------------------------------

_S = ShipmentStatus

SHIPMENT_WORKFLOW = Workflow(
    name="shipment",
    description="Shipment-scoped progress, independent of item fulfillments",
    initial_state=_S.PENDING.value,
    states=tuple(s.value for s in _S),
    transitions=(
        Transition(_S.PENDING.value, _S.PICKING.value, action="start_picking"),
        Transition(_S.PICKING.value, _S.PACKED.value, action="pack"),
        Transition(_S.PACKED.value, _S.DISPATCHED.value, action="dispatch", moves_inventory=True),
        Transition(
            _S.PACKED.value, _S.COMPLETED.value, action="complete_manual", moves_inventory=True
        ),
        Transition(_S.DISPATCHED.value, _S.DELIVERED.value, action="deliver"),
        Transition(_S.COMPLETED.value, _S.DELIVERED.value, action="deliver"),
    ) + _cancellations(
        (_S.PENDING.value, _S.PICKING.value, _S.PACKED.value),
        _S.CANCELLED.value,
    ),
    terminal_states=(_S.DELIVERED.value, _S.CANCELLED.value),
)


# -----------------------------------------------------------------------------
# Lot Workflow (manual status changes only; quantity-driven statuses are
# derived by the lot store)
# -----------------------------------------------------------------------------

_L = LotStatus

LOT_WORKFLOW = Workflow(
    name="inventory_lot",
    description="Manual lot status changes (quarantine, expiry, disposal)",
    initial_state=_L.AVAILABLE.value,
    states=tuple(s.value for s in _L),
    transitions=(
        Transition(_L.AVAILABLE.value, _L.QUARANTINED.value, action="quarantine"),
        Transition(_L.RESERVED.value, _L.QUARANTINED.value, action="quarantine"),
        Transition(_L.QUARANTINED.value, _L.AVAILABLE.value, action="release_quarantine"),
        Transition(_L.AVAILABLE.value, _L.EXPIRED.value, action="expire"),
        Transition(_L.QUARANTINED.value, _L.EXPIRED.value, action="expire"),
        Transition(_L.AVAILABLE.value, _L.DISPOSED.value, action="dispose"),
        Transition(_L.QUARANTINED.value, _L.DISPOSED.value, action="dispose"),
        Transition(_L.EXPIRED.value, _L.DISPOSED.value, action="dispose"),
    ),
    terminal_states=(_L.CONSUMED.value, _L.DISPOSED.value),
)


for _workflow in (ORDER_WORKFLOW, FULFILLMENT_WORKFLOW, SHIPMENT_WORKFLOW, LOT_WORKFLOW):
    logger.debug(
        "workflow_registered",
        extra={
            "workflow_name": _workflow.name,
            "state_count": len(_workflow.states),
            "transition_count": len(_workflow.transitions),
            "initial_state": _workflow.initial_state,
        },
    )
