"""
Tests for structured logging
"""

import io
import json
import logging

import pytest

from aml_returns.logging_config import (
    JSONFormatter, correlation_context, get_correlation_id, log_action, setup_logging
)


@pytest.fixture
def stream_logger():
    """Logger writing JSON records into a buffer"""
    buffer = io.StringIO()
    logger = logging.getLogger("aml_returns.tests.logging")
    logger.handlers = []
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    yield logger, buffer
    logger.handlers = []


def records(buffer):
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


class TestLogAction:
    """Test structured action records"""

    def test_fields(self, stream_logger):
        logger, buffer = stream_logger
        log_action(logger, "info", "Submission approved", user_id="admin-1",
                   action="approve_submission", resource="sub-1", extra={"comments": None})

        record = records(buffer)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "Submission approved"
        assert record["user_id"] == "admin-1"
        assert record["action"] == "approve_submission"
        assert record["resource"] == "sub-1"
        assert record["extra"] == {"comments": None}
        assert "correlation_id" not in record

    def test_level_filtering(self, stream_logger):
        logger, buffer = stream_logger
        logger.setLevel(logging.WARNING)
        log_action(logger, "info", "ignored")
        log_action(logger, "warning", "kept")
        assert [r["message"] for r in records(buffer)] == ["kept"]


class TestCorrelation:
    """Test request correlation IDs"""

    def test_context_tags_plain_records(self, stream_logger):
        logger, buffer = stream_logger
        with correlation_context("req-42"):
            assert get_correlation_id() == "req-42"
            logger.info("inside")
        logger.info("outside")

        inside, outside = records(buffer)
        assert inside["correlation_id"] == "req-42"
        assert "correlation_id" not in outside
        assert get_correlation_id() is None

    def test_explicit_id_wins(self, stream_logger):
        logger, buffer = stream_logger
        with correlation_context("req-42"):
            log_action(logger, "info", "explicit", correlation_id="batch-7")
        assert records(buffer)[0]["correlation_id"] == "batch-7"

    def test_exception_is_included(self, stream_logger):
        logger, buffer = stream_logger
        try:
            raise RuntimeError("storage unavailable")
        except RuntimeError:
            logger.exception("Unexpected error")
        assert "storage unavailable" in records(buffer)[0]["exception"]


def test_setup_logging_replaces_handlers(tmp_path):
    log_file = tmp_path / "returns.log"
    setup_logging("debug", logger_name="aml_returns.tests.setup", log_file=str(log_file))
    logger = setup_logging("info", logger_name="aml_returns.tests.setup", log_file=str(log_file))

    assert len(logger.handlers) == 1
    assert logger.level == logging.INFO

    logger.info("written")
    logger.handlers[0].flush()
    assert json.loads(log_file.read_text().strip())["message"] == "written"
    logger.handlers[0].close()
