"""Kernel services for the fulfillment kernel (write side)."""

from fulfillment_kernel.services.ledger_service import (
    LedgerService,
    LedgerSubject,
    LotReplay,
    SubjectKind,
)
from fulfillment_kernel.services.lot_store import LotStore, derive_lot_status
from fulfillment_kernel.services.sequence_service import SequenceCounter, SequenceService

__all__ = [
    "LedgerService",
    "LedgerSubject",
    "LotReplay",
    "LotStore",
    "SequenceCounter",
    "SequenceService",
    "SubjectKind",
    "derive_lot_status",
]
