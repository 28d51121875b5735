"""Tests for the locked-counter sequence service."""

from fulfillment_kernel.services.sequence_service import SequenceService


class TestSequenceService:

    def test_first_value_is_one(self, session):
        service = SequenceService(session)
        assert service.current_value("test_seq") is None
        assert service.next_value("test_seq") == 1
        assert service.current_value("test_seq") == 1

    def test_strictly_monotonic(self, session):
        service = SequenceService(session)
        values = [service.next_value("test_seq") for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    def test_named_sequences_are_independent(self, session):
        service = SequenceService(session)
        service.next_value(SequenceService.LEDGER)
        service.next_value(SequenceService.LEDGER)

        assert service.next_value(SequenceService.SHIPMENT) == 1

    def test_rollback_returns_value(self, session):
        service = SequenceService(session)
        service.next_value("test_seq")
        session.commit()

        service.next_value("test_seq")
        session.rollback()

        assert service.next_value("test_seq") == 2

    def test_document_numbers_are_zero_padded(self, session):
        service = SequenceService(session)

        assert service.next_number(SequenceService.SHIPMENT, "SHP") == "SHP-00000001"
        assert service.next_number(SequenceService.SHIPMENT, "OUT", width=4) == "OUT-0002"
