"""
Module: fulfillment_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    selection engines.  This is the canonical import surface for
    fulfillment_services.

Architecture position:
    Engines -- pure selection layer, zero I/O.
    May only import fulfillment_kernel.domain (and sibling engine modules).
    MUST NOT import fulfillment_services.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Dates are passed in as explicit parameters by the services.
    - Integer quantities only.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via the ``@traced_engine`` decorator
    (see ``fulfillment_engines.tracer``), emitting FULFILLMENT_ENGINE_TRACE
    log records with engine name, version, input fingerprint and duration.
"""

from fulfillment_engines.lot_selector import (
    AllocationStrategy,
    LotCandidate,
    LotPick,
    SelectionResult,
    is_eligible,
    parse_strategy,
    select_lots,
)
from fulfillment_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "AllocationStrategy",
    "LotCandidate",
    "LotPick",
    "SelectionResult",
    "compute_input_fingerprint",
    "is_eligible",
    "parse_strategy",
    "select_lots",
    "traced_engine",
]
