"""Tests for almanac.core.logging."""

from __future__ import annotations

import json
import logging

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext

from almanac.core.logging import (
    APP_LOG_FILENAME,
    HTTP_LOG_FILENAME,
    account_context,
    add_account_field,
    add_trace_ids,
    configure_logging,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_level = root.level
    yield
    for logger in (root, logging.getLogger("httpx"), logging.getLogger("httpcore")):
        for handler in list(logger.handlers):
            if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
                logger.removeHandler(handler)
                handler.close()
    root.setLevel(saved_level)
    structlog.reset_defaults()


def _records(path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestProcessors:
    def test_account_field_only_inside_context(self):
        assert add_account_field(None, "info", {}) == {}

        with account_context("me@example.com"):
            assert add_account_field(None, "info", {}) == {"account": "me@example.com"}

        assert add_account_field(None, "info", {}) == {}

    def test_trace_ids_from_current_span(self):
        span = NonRecordingSpan(SpanContext(trace_id=0xABC, span_id=0x12, is_remote=False))

        with trace.use_span(span):
            event = add_trace_ids(None, "info", {})

        assert event["trace_id"] == f"{0xABC:032x}"
        assert event["span_id"] == f"{0x12:016x}"

    def test_no_trace_ids_without_span(self):
        assert add_trace_ids(None, "info", {}) == {}


class TestConfigureLogging:
    def test_files_under_log_root(self, tmp_path, restore_logging):
        configure_logging(level="INFO", fmt="json", log_root=tmp_path)

        with account_context("me@example.com"):
            logging.getLogger("almanac.sync").info("Synced %s", "me@example.com")
        logging.getLogger("httpx").info("HTTP Request: POST https://oauth2.test/token")
        logging.getLogger("almanac.sync").debug("hidden below INFO")

        (app_record,) = _records(tmp_path / APP_LOG_FILENAME)
        assert app_record["event"] == "Synced me@example.com"
        assert app_record["account"] == "me@example.com"
        assert app_record["level"] == "info"

        (http_record,) = _records(tmp_path / HTTP_LOG_FILENAME)
        assert http_record["logger"] == "httpx"

    def test_reconfiguring_replaces_handlers(self, restore_logging):
        configure_logging()
        configure_logging(level="debug")

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
