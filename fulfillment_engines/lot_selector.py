"""
Module: fulfillment_engines.lot_selector
Responsibility:
    Choose which inventory lots satisfy a requested quantity, expiry-aware
    (FEFO) by default or by receipt date (FIFO), with greedy consumption
    and an explicit unmet remainder.

Architecture position:
    Engines -- pure selection layer, zero I/O.
    May only import fulfillment_kernel.domain and the kernel logger.

Invariants enforced:
    - Only eligible lots are picked: status ``available``, available
      quantity > 0, matching warehouse (when constrained), and not expired
      as of ``exclude_expired_as_of`` (when supplied).
    - Sum of picks <= required_quantity; each pick <= the lot's available
      quantity.
    - Ordering is total: every sort key ends with the lot id, so identical
      inputs always produce identical picks.
    - Purity: no clock access; "today" is passed in by the caller.

Failure modes:
    - InvalidQuantityError when required_quantity <= 0.
    - UnknownStrategyError for a strategy name outside FEFO / FIFO.

Usage:
    from fulfillment_engines.lot_selector import AllocationStrategy, select_lots

    result = select_lots(
        required_quantity=15,
        candidates=candidates,
        strategy=AllocationStrategy.FEFO,
    )
    for pick in result.picks:
        ...
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from fulfillment_engines.tracer import traced_engine
from fulfillment_kernel.domain.statuses import LotStatus
from fulfillment_kernel.exceptions import InvalidQuantityError, UnknownStrategyError
from fulfillment_kernel.logging_config import get_logger

logger = get_logger("engines.lot_selector")


@dataclass(frozen=True)
class LotCandidate:
    """
    Read-only view of one lot as the selector sees it.

    Built by the allocation service from locked lot rows; the engine never
    touches the ORM.
    """

    lot_id: UUID
    warehouse_id: UUID
    status: str
    total_quantity: int
    reserved_quantity: int
    expiry_date: date | None = None
    inbound_date: date | None = None
    received_at: datetime | None = None
    lot_number: str | None = None

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity

    def with_available(self, available: int) -> LotCandidate:
        """Same lot with its available quantity overridden (working map)."""
        return replace(self, reserved_quantity=self.total_quantity - available)


@dataclass(frozen=True)
class LotPick:
    """Quantity taken from one lot."""

    lot: LotCandidate
    quantity: int

    @property
    def lot_id(self) -> UUID:
        return self.lot.lot_id


@dataclass(frozen=True)
class SelectionResult:
    """
    Outcome of one selection run.

    Guarantees:
        - allocated_quantity + unmet_quantity == requested_quantity.
        - ``picks`` are in strategy order.
    """

    strategy: AllocationStrategy
    requested_quantity: int
    picks: tuple[LotPick, ...]
    allocated_quantity: int
    unmet_quantity: int

    @property
    def is_fulfilled(self) -> bool:
        return self.unmet_quantity == 0


# -----------------------------------------------------------------------------
# Sort keys
# -----------------------------------------------------------------------------


def _missing_last(value: Any) -> tuple[bool, Any]:
    return (value is None, value)


def _utc_naive(value: datetime | None) -> datetime | None:
    # SQLite hands back naive timestamps, PostgreSQL aware ones
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _fefo_key(lot: LotCandidate) -> tuple:
    return (
        _missing_last(lot.expiry_date),
        _missing_last(lot.inbound_date),
        _missing_last(_utc_naive(lot.received_at)),
        str(lot.lot_id),
    )


def _fifo_key(lot: LotCandidate) -> tuple:
    return (
        _missing_last(lot.inbound_date),
        _missing_last(_utc_naive(lot.received_at)),
        _missing_last(lot.expiry_date),
        str(lot.lot_id),
    )


class AllocationStrategy(str, Enum):
    """Lot ordering strategy."""

    FEFO = "fefo"  # First-Expired-First-Out
    FIFO = "fifo"  # First-In-First-Out, by receipt date

    @property
    def sort_key(self) -> Callable[[LotCandidate], tuple]:
        return _SORT_KEYS[self]


_SORT_KEYS: dict[AllocationStrategy, Callable[[LotCandidate], tuple]] = {
    AllocationStrategy.FEFO: _fefo_key,
    AllocationStrategy.FIFO: _fifo_key,
}


def parse_strategy(value: str | AllocationStrategy) -> AllocationStrategy:
    """Return the strategy for ``value`` or raise UnknownStrategyError."""
    if isinstance(value, AllocationStrategy):
        return value
    try:
        return AllocationStrategy(str(value).strip().lower())
    except ValueError:
        raise UnknownStrategyError(value) from None


# -----------------------------------------------------------------------------
# Selection
# -----------------------------------------------------------------------------


def is_eligible(
    lot: LotCandidate,
    warehouse_id: UUID | None = None,
    exclude_expired_as_of: date | None = None,
) -> bool:
    if lot.status != LotStatus.AVAILABLE.value:
        return False
    if lot.available_quantity <= 0:
        return False
    if warehouse_id is not None and lot.warehouse_id != warehouse_id:
        return False
    if (
        exclude_expired_as_of is not None
        and lot.expiry_date is not None
        and lot.expiry_date < exclude_expired_as_of
    ):
        return False
    return True


def _summarize(result: SelectionResult) -> dict[str, Any]:
    return {
        "allocated_quantity": result.allocated_quantity,
        "unmet_quantity": result.unmet_quantity,
        "pick_count": len(result.picks),
    }


@traced_engine(
    "lot_selector",
    "1.0",
    fingerprint_fields=("required_quantity", "strategy", "warehouse_id", "exclude_expired_as_of"),
    summarize=_summarize,
)
def select_lots(
    required_quantity: int,
    candidates: Sequence[LotCandidate],
    strategy: AllocationStrategy | str = AllocationStrategy.FEFO,
    warehouse_id: UUID | None = None,
    exclude_expired_as_of: date | None = None,
) -> SelectionResult:
    """
    Greedily pick lots in strategy order until the quantity is covered.

    Takes ``min(remaining, lot.available_quantity)`` from each eligible lot.
    When the lots run out first, the partial picks are returned together
    with the unmet quantity; accepting or rejecting a partial result is the
    caller's decision.
    """
    if required_quantity <= 0:
        raise InvalidQuantityError("required_quantity", required_quantity, "must be positive")

    resolved = parse_strategy(strategy)
    sort_key = resolved.sort_key

    eligible = sorted(
        (c for c in candidates if is_eligible(c, warehouse_id, exclude_expired_as_of)),
        key=sort_key,
    )

    picks: list[LotPick] = []
    remaining = required_quantity
    for lot in eligible:
        if remaining == 0:
            break
        take = min(remaining, lot.available_quantity)
        picks.append(LotPick(lot=lot, quantity=take))
        remaining -= take

    allocated = required_quantity - remaining
    if remaining:
        logger.info(
            "lot_selection_short",
            extra={
                "strategy": resolved.value,
                "requested_quantity": required_quantity,
                "allocated_quantity": allocated,
                "unmet_quantity": remaining,
                "eligible_lot_count": len(eligible),
            },
        )

    return SelectionResult(
        strategy=resolved,
        requested_quantity=required_quantity,
        picks=tuple(picks),
        allocated_quantity=allocated,
        unmet_quantity=remaining,
    )
