"""Tests for the structured logging system (payment_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from payment_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    mask_value,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "payment_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("ledger_entry_written", extra={"sequence": 42, "status": "completed"})

        record = _parse_log(stream)
        assert record["sequence"] == 42
        assert record["status"] == "completed"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", idempotency_key="ch_3N1")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["idempotency_key"] == "ch_3N1"

    def test_decimal_and_uuid_serialized_as_strings(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("amounts", extra={"entry_id": uid, "amount": Decimal("12.50")})

        record = _parse_log(stream)
        assert record["entry_id"] == str(uid)
        assert record["amount"] == "12.50"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_code_and_fields_extracted(self):
        """Payment kernel exceptions carry .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        from payment_kernel.exceptions import RefundExceedsPaidError

        try:
            raise RefundExceedsPaidError("order-1", Decimal("150.00"), Decimal("100.00"))
        except RefundExceedsPaidError:
            get_logger("test").error("refund_rejected", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "REFUND_EXCEEDS_PAID"
        assert record["exc_type"] == "RefundExceedsPaidError"
        assert record["exc_order_id"] == "order-1"
        assert record["exc_requested"] == "150.00"
        assert record["exc_paid"] == "100.00"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "order_id" not in record

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # Default level is INFO; the debug line is dropped.
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= record.keys()


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", order_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "order_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        with LogContext.bind(session_id="temp"):
            assert LogContext.get_all()["session_id"] == "temp"
        assert "session_id" not in LogContext.get_all()

    def test_bind_ignores_none_values(self):
        with LogContext.bind(correlation_id=None):
            assert "correlation_id" not in LogContext.get_all()

    def test_unknown_field_rejected(self):
        with pytest.raises(KeyError):
            LogContext.set(trace_id="t")

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            actor_id="a",
            order_id="o",
            idempotency_key="k",
            session_id="s",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 5
        assert ctx["idempotency_key"] == "k"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        reset_logging()
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op

        # pytest may attach its own capture handlers; only ours are counted
        ours = [
            h for h in logging.getLogger("payment_kernel").handlers
            if isinstance(h.formatter, StructuredFormatter)
        ]
        assert ours == [h1]

    def test_get_logger_returns_child(self):
        assert get_logger("services.ledger").name == "payment_kernel.services.ledger"

    def test_logger_hierarchy(self):
        """Child loggers inherit the payment_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "payment_kernel.deep.nested.module"


# ---------------------------------------------------------------------------
# Masking tests
# ---------------------------------------------------------------------------


class TestMasking:
    """Contact details and tokens never reach the stream in clear."""

    def test_email_keeps_domain(self):
        assert mask_value("asha@example.com") == "a***@example.com"

    def test_token_keeps_ends(self):
        assert mask_value("gs-7d2a9f") == "gs*****9f"
        assert mask_value("abc") == "****"

    def test_masked_fields_in_extra(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info(
            "guest_session_created",
            extra={"guest_email": "asha@example.com", "session_token": "gs-7d2a9f", "order_ref": "Q-1"},
        )

        record = _parse_log(stream)
        assert record["guest_email"] == "a***@example.com"
        assert record["session_token"] == "gs*****9f"
        assert record["order_ref"] == "Q-1"

    def test_nested_gateway_payload_masked(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info(
            "webhook_payload_rejected",
            extra={"raw": {"customer_email": "buyer@example.com", "amount": "10.00"}},
        )

        record = _parse_log(stream)
        assert record["raw"] == {"customer_email": "b***@example.com", "amount": "10.00"}

    def test_missing_value_not_masked(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("placed_order_created", extra={"customer_email": None})

        assert _parse_log(stream)["customer_email"] is None
