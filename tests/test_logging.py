"""Tests for the structured logging system (quote_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from quote_kernel.exceptions import OptimisticLockError
from quote_kernel.logging_config import (
    REDACTED,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
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
        assert record["logger"] == "quote_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("payment_recorded", extra={"version": 3, "method": "check"})

        record = _parse_log(stream)
        assert record["version"] == 3
        assert record["method"] == "check"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", client_ip="203.0.113.7")
        get_logger("test").info("portal_access_granted")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["client_ip"] == "203.0.113.7"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "company_id" not in record

    def test_money_and_ids_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        invoice_id = uuid4()
        get_logger("test").info("refund_recorded", extra={"invoice_id": invoice_id, "amount": Decimal("19.50")})

        record = _parse_log(stream)
        assert record["invoice_id"] == str(invoice_id)
        assert record["amount"] == "19.50"

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

    def test_kernel_exception_fields_extracted(self):
        """Kernel exceptions carry a .code and their structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise OptimisticLockError("invoice", "inv-1", 2, 3)
        except OptimisticLockError:
            get_logger("test").error("payment_conflict", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "OPTIMISTIC_LOCK_CONFLICT"
        assert record["exc_type"] == "OptimisticLockError"
        assert record["exc_expected_version"] == 2
        assert record["exc_current_version"] == 3

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO
        assert len(logs) == 2
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= set(record)


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(correlation_id="x", company_id="c-1")
        assert LogContext.get_all() == {"correlation_id": "x", "company_id": "c-1"}

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
        assert "entity_id" not in LogContext.get_all()
        with LogContext.bind(entity_id=uuid4()):
            assert "entity_id" in LogContext.get_all()
        assert "entity_id" not in LogContext.get_all()

    def test_unknown_bind_field_ignored(self):
        with LogContext.bind(producer="p"):
            assert LogContext.get_all() == {}

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            company_id="t",
            actor_id="a",
            entity_id="e",
            client_ip="198.51.100.1",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 5
        assert ctx["client_ip"] == "198.51.100.1"


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        assert logging.getLogger("quote_kernel").handlers == [h1]

    def test_get_logger_returns_child(self):
        assert get_logger("services.portal").name == "quote_kernel.services.portal"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("domain.rate_limit").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["logger"] == "quote_kernel.domain.rate_limit"


# ---------------------------------------------------------------------------
# Secret masking
# ---------------------------------------------------------------------------


class TestSecretMasking:
    def test_raw_token_never_written(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("link_sent", extra={"raw_token": "abc123secret", "token_hash_prefix": "9f86d081"})

        record = _parse_log(stream)
        assert record["raw_token"] == REDACTED
        assert record["token_hash_prefix"] == "9f86d081"
        assert "abc123secret" not in stream.getvalue()

    def test_signature_in_exception_masked(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)

        class SigningFailed(Exception):
            def __init__(self, signature_data):
                self.signature_data = signature_data
                super().__init__("signing failed")

        try:
            raise SigningFailed("data:image/png;base64,AAAA")
        except SigningFailed:
            get_logger("test").error("sign_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_signature_data"] == REDACTED
