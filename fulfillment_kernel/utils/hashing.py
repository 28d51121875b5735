"""
Deterministic hashing utilities.

All hashing in the fulfillment kernel must be deterministic and reproducible
across database backends.  This module provides the canonical JSON form and
the ledger entry checksum.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, datetime):
        return normalize_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def normalize_timestamp(value: datetime) -> str:
    """
    Render a timestamp as naive UTC ISO-8601 with microseconds.

    Aware values are converted to UTC; naive values are taken as UTC (SQLite
    returns stored timestamps without tzinfo).  The result is identical
    before and after a database round trip.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys sorted, no whitespace, stable rendering of UUID / datetime values.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """Compute the hex SHA-256 of a payload's canonical JSON."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_ledger_entry(
    subject_id: UUID | str,
    action_type: str | Enum,
    previous_quantity: int,
    quantity_delta: int,
    new_quantity: int,
    occurred_at: datetime,
    previous_reserved: int,
    reserved_delta: int,
    new_reserved: int,
) -> str:
    """
    Compute the checksum of an inventory activity ledger entry.

    Covers the subject, action, both quantity triples, and the timestamp.
    Any edit to those columns after insertion changes the checksum.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    return hash_payload({
        "subject_id": str(subject_id),
        "action_type": action_type.value if isinstance(action_type, Enum) else str(action_type),
        "previous_quantity": int(previous_quantity),
        "quantity_delta": int(quantity_delta),
        "new_quantity": int(new_quantity),
        "occurred_at": normalize_timestamp(occurred_at),
        "previous_reserved": int(previous_reserved),
        "reserved_delta": int(reserved_delta),
        "new_reserved": int(new_reserved),
    })
