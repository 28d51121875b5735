"""
Fulfillment Kernel

Persistence, domain vocabulary, and kernel services for the inventory
allocation and outbound fulfillment engine:
- Lot store with reserved/available split
- Append-only, checksummed inventory activity ledger
- Fixed status machines for orders, fulfillments, shipments, and lots
- Row-level locking helpers with deterministic lock order
"""

__version__ = "0.1.0"
