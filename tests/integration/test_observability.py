"""
Integration tests for ordersync/observability.py

Tests structured logging, run correlation IDs and timing.
"""
import json
import logging
import time as time_module

from ordersync.observability import (
    HumanReadableFormatter,
    StructuredFormatter,
    Timer,
    add_log_context,
    clear_log_context,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
)


def _record(msg: str = "Test message", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationId:

    def test_generate_correlation_id_not_empty(self):
        cid = generate_correlation_id()
        assert cid
        assert cid != generate_correlation_id()

    def test_context_sets_and_restores(self):
        assert get_correlation_id() is None
        with correlation_context("run-123") as cid:
            assert cid == "run-123"
            assert get_correlation_id() == "run-123"
        assert get_correlation_id() is None

    def test_context_generates_id(self):
        with correlation_context() as cid:
            assert get_correlation_id() == cid


class TestTimer:

    def test_measures_elapsed_time(self):
        with Timer("test_operation") as timer:
            time_module.sleep(0.05)

        assert timer.elapsed_ms >= 45
        assert timer.elapsed_seconds >= 0.045

    def test_logs_duration(self, caplog):
        logger = get_logger("test.timer")
        with caplog.at_level(logging.DEBUG, logger="test.timer"):
            with Timer("fetch_batch_1", logger):
                pass

        assert caplog.records[-1].getMessage() == "fetch_batch_1 completed"
        assert hasattr(caplog.records[-1], "duration_ms")


class TestStructuredFormatter:

    def teardown_method(self):
        clear_log_context()

    def test_formats_as_json(self):
        parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["message"] == "Test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "T" in parsed["timestamp"]

    def test_includes_correlation_id_and_extras(self):
        add_log_context(stream="recent_orders")
        with correlation_context("run-456"):
            output = StructuredFormatter().format(_record(batch_number=3))
        parsed = json.loads(output)

        assert parsed["correlation_id"] == "run-456"
        assert parsed["stream"] == "recent_orders"
        assert parsed["batch_number"] == 3

    def test_serializes_non_json_values(self):
        from datetime import datetime

        parsed = json.loads(StructuredFormatter().format(_record(window_end=datetime(2026, 3, 15))))
        assert parsed["window_end"].startswith("2026-03-15")


class TestHumanReadableFormatter:

    def test_appends_extras(self):
        with correlation_context("run-789"):
            output = HumanReadableFormatter().format(_record("Batch imported", batch_number=4))

        assert "[run-789]" in output
        assert "Batch imported" in output
        assert "'batch_number': 4" in output


class TestGetLogger:

    def test_returns_named_logger(self):
        logger = get_logger("ordersync.test")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "ordersync.test"
