"""Tests for the structured logging system (fulfillment_kernel/logging_config.py)."""

import json
import logging
from io import StringIO
from uuid import uuid4

import pytest

from fulfillment_kernel.exceptions import StaleAllocationError
from fulfillment_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state around each test, then restore the suite default."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


class TestStructuredFormatter:
    """JSON line output."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "fulfillment_kernel.test"
        assert "ts" in record

    def test_extra_fields_and_uuid_values(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        lot_id = uuid4()
        get_logger("test").info("lot_reserved", extra={"lot_id": lot_id, "quantity": 3})

        record = _parse_all_logs(stream)[0]
        assert record["lot_id"] == str(lot_id)
        assert record["quantity"] == 3

    def test_exception_fields_flattened(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise StaleAllocationError("order-1", ["a-1"], "allocation not found")
        except StaleAllocationError:
            get_logger("test").exception("failed")

        record = _parse_all_logs(stream)[0]
        assert record["exc_type"] == "StaleAllocationError"
        assert record["exc_code"] == "STALE_ALLOCATION"
        assert record["exc_order_id"] == "order-1"
        assert record["exc_reason"] == "allocation not found"
        assert "traceback" in record


class TestLogContext:

    def test_bound_fields_appear_and_are_restored(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        order_id = uuid4()

        with LogContext.bind(order_id=order_id, actor_id="user-1"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _parse_all_logs(stream)
        assert inside["order_id"] == str(order_id)
        assert inside["actor_id"] == "user-1"
        assert "order_id" not in outside

    def test_nested_bind_restores_outer_value(self):
        with LogContext.bind(shipment_id="outer"):
            with LogContext.bind(shipment_id="inner"):
                assert LogContext.get_all()["shipment_id"] == "inner"
            assert LogContext.get_all()["shipment_id"] == "outer"

    def test_none_values_ignored(self):
        with LogContext.bind(order_id=None, actor_id="a-1"):
            assert LogContext.get_all() == {"actor_id": "a-1"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="trace_id"):
            with LogContext.bind(order_id="o-1", trace_id="t-1"):
                pass
        assert LogContext.get_all() == {}

    def test_context_restored_after_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(order_id="o-1"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}


class TestConfiguration:

    def test_configure_is_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)

        assert len(logging.getLogger("fulfillment_kernel").handlers) == 1

    def test_level_filters_records(self):
        handler, stream = _make_handler()
        configure_logging(level=logging.WARNING, handler=handler)
        logger = get_logger("test")

        logger.info("dropped")
        logger.warning("kept")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["kept"]
