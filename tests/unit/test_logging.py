"""
Unit tests for structured logging.

Tests:
- JSONFormatter: base fields, extra fields, correlation ids, exceptions
- PerformanceLogger: completion and failure lines
- redact_pii: nested credential redaction
- configure_logging: idempotent handler installation
"""

import json
import logging

import pytest

from shared.logging import (
    CorrelationContext,
    JSONFormatter,
    PerformanceLogger,
    StructuredLogger,
    configure_logging,
    get_correlation_id,
    redact_pii,
)


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []
        self.setFormatter(JSONFormatter("order_plane", "test"))

    def emit(self, record):
        self.records.append(json.loads(self.format(record)))


@pytest.fixture
def captured():
    handler = _Capture()
    logger = logging.getLogger("order_plane.test_logging")
    logger.addHandler(handler)
    previous = logger.level
    logger.setLevel(logging.DEBUG)
    yield StructuredLogger("order_plane.test_logging"), handler.records
    logger.removeHandler(handler)
    logger.setLevel(previous)


@pytest.mark.unit
class TestJSONFormatter:
    def test_base_fields(self, captured):
        log, records = captured
        log.info("order_accepted", order_id="OP1", quantity=100)
        record = records[0]
        assert record["message"] == "order_accepted"
        assert record["level"] == "INFO"
        assert record["service"] == "order_plane"
        assert record["environment"] == "test"
        assert record["logger"] == "order_plane.test_logging"
        assert record["order_id"] == "OP1"
        assert record["quantity"] == 100
        assert "correlation_id" not in record

    def test_correlation_context(self, captured):
        log, records = captured
        with CorrelationContext("corr-9", span_id="span-1"):
            assert get_correlation_id() == "corr-9"
            log.info("inside")
        log.info("outside")
        assert records[0]["correlation_id"] == "corr-9"
        assert records[0]["span_id"] == "span-1"
        assert "correlation_id" not in records[1]
        assert get_correlation_id() is None

    def test_generated_correlation_id(self):
        with CorrelationContext() as ctx:
            assert get_correlation_id() == ctx.correlation_id
        assert len(ctx.correlation_id) == 36

    def test_exception_payload(self, captured):
        log, records = captured
        try:
            raise RuntimeError("broker went away")
        except RuntimeError:
            log.error("broker_call_failed", exc_info=True)
        exception = records[0]["exception"]
        assert exception["type"] == "RuntimeError"
        assert exception["message"] == "broker went away"
        assert exception["traceback"]


@pytest.mark.unit
class TestPerformanceLogger:
    def test_completed(self, captured):
        log, records = captured
        with PerformanceLogger(log, "submit", broker_id="paper-a") as perf:
            pass
        assert perf.duration_s >= 0
        assert records[0]["message"] == "submit_completed"
        assert records[0]["broker_id"] == "paper-a"
        assert "duration_ms" in records[0]

    def test_failed(self, captured):
        log, records = captured
        with pytest.raises(TimeoutError):
            with PerformanceLogger(log, "cancel"):
                raise TimeoutError("slow")
        assert records[0]["message"] == "cancel_failed"
        assert records[0]["level"] == "WARNING"
        assert records[0]["error_type"] == "TimeoutError"
        assert records[0]["error_message"] == "slow"


@pytest.mark.unit
class TestRedaction:
    def test_nested_credentials_redacted(self):
        data = {
            "broker_id": "alpaca",
            "Authorization": "Bearer abc",
            "auth": {"api_key": "k", "api_secret": "s", "user": "u"},
        }
        redacted = redact_pii(data)
        assert redacted["broker_id"] == "alpaca"
        assert redacted["Authorization"] == "***REDACTED***"
        assert redacted["auth"] == {"api_key": "***REDACTED***", "api_secret": "***REDACTED***", "user": "u"}
        assert data["auth"]["api_key"] == "k"

    def test_custom_fields(self):
        assert redact_pii({"email": "a@b", "x": 1}, ("email",)) == {"email": "***REDACTED***", "x": 1}


@pytest.mark.unit
class TestConfigureLogging:
    def test_repeated_calls_replace_handler(self):
        names = ("order_plane_configure_test",)
        logger = logging.getLogger(names[0])
        try:
            configure_logging(level=logging.DEBUG, logger_names=names)
            configure_logging(level=logging.WARNING, json_output=False, logger_names=names)
            assert len(logger.handlers) == 1
            assert logger.level == logging.WARNING
            assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
