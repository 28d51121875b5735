"""Tests for canonical JSON and the ledger entry checksum."""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from fulfillment_kernel.domain.statuses import LedgerAction
from fulfillment_kernel.utils.hashing import (
    canonicalize_json,
    hash_ledger_entry,
    normalize_timestamp,
)

SUBJECT = UUID("00000000-0000-0000-0000-000000000001")
WHEN = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _entry(**overrides):
    values = dict(
        subject_id=SUBJECT,
        action_type=LedgerAction.RESERVE,
        previous_quantity=10,
        quantity_delta=0,
        new_quantity=10,
        occurred_at=WHEN,
        previous_reserved=0,
        reserved_delta=4,
        new_reserved=4,
    )
    values.update(overrides)
    return hash_ledger_entry(**values)


class TestCanonicalJson:

    def test_keys_sorted_without_whitespace(self):
        assert canonicalize_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_uuid_and_datetime_rendering(self):
        rendered = canonicalize_json({"id": SUBJECT, "at": WHEN})
        assert rendered == (
            '{"at":"2024-01-01T12:00:00.000000",'
            '"id":"00000000-0000-0000-0000-000000000001"}'
        )

    def test_unsupported_type_rejected(self):
        with pytest.raises(TypeError):
            canonicalize_json({"value": object()})


class TestNormalizeTimestamp:

    def test_aware_and_naive_utc_agree(self):
        naive = WHEN.replace(tzinfo=None)
        assert normalize_timestamp(WHEN) == normalize_timestamp(naive)

    def test_other_offsets_converted_to_utc(self):
        plus_two = WHEN.astimezone(timezone(timedelta(hours=2)))
        assert normalize_timestamp(plus_two) == "2024-01-01T12:00:00.000000"


class TestLedgerChecksum:

    def test_deterministic(self):
        assert _entry() == _entry()
        assert len(_entry()) == 64

    def test_enum_and_string_action_agree(self):
        assert _entry(action_type=LedgerAction.RESERVE) == _entry(action_type="reserve")

    def test_database_round_trip_timestamp_agrees(self):
        assert _entry(occurred_at=WHEN.replace(tzinfo=None)) == _entry()

    @pytest.mark.parametrize(
        "field,value",
        [
            ("subject_id", UUID(int=2)),
            ("action_type", "release"),
            ("previous_quantity", 11),
            ("quantity_delta", 1),
            ("new_quantity", 11),
            ("previous_reserved", 1),
            ("reserved_delta", 5),
            ("new_reserved", 5),
            ("occurred_at", WHEN + timedelta(microseconds=1)),
        ],
    )
    def test_every_field_changes_checksum(self, field, value):
        assert _entry(**{field: value}) != _entry()
