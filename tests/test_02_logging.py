"""Tests for the numeric logging levels, formatters and request-id context."""
from __future__ import annotations

import json
import logging
from unittest.mock import patch

import pytest

from booktainer.core import logging as blog
from booktainer.core.logging import (
    ColoredConsoleFormatter,
    JsonlFormatter,
    LogLevel,
    coerce_level,
    colors,
    get_logger,
    get_request_id,
    info,
    set_request_id,
    verbose,
)


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=1)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    logger = get_logger("booktainer.test.capture")
    handler = _ListHandler()
    logger.addHandler(handler)
    yield logger, handler.records
    logger.removeHandler(handler)


@pytest.fixture
def restore_level():
    level = blog.get_level()
    yield
    blog.set_level(level)


class TestLogLevelEnum:
    """Test LogLevel enum values."""

    def test_level_enum_values(self):
        assert LogLevel.MINIMAL == 1
        assert LogLevel.NORMAL == 2
        assert LogLevel.VERBOSE == 3
        assert LogLevel.DEBUG == 4

    def test_level_enum_ordering(self):
        assert LogLevel.MINIMAL < LogLevel.NORMAL < LogLevel.VERBOSE < LogLevel.DEBUG


class TestLevelCoercion:
    """Test level coercion from various input types."""

    def test_level_from_int(self):
        assert coerce_level(1) == LogLevel.MINIMAL
        assert coerce_level(4) == LogLevel.DEBUG

    def test_level_from_names(self):
        assert coerce_level("verbose") == LogLevel.VERBOSE
        assert coerce_level("INFO") == LogLevel.NORMAL
        assert coerce_level("WARNING") == LogLevel.MINIMAL
        assert coerce_level("3") == LogLevel.VERBOSE

    def test_level_from_python_levels(self):
        assert coerce_level(logging.WARNING) == LogLevel.MINIMAL
        assert coerce_level(logging.INFO) == LogLevel.NORMAL
        assert coerce_level(logging.DEBUG) == LogLevel.DEBUG

    def test_unknown_falls_back_to_normal(self):
        assert coerce_level("chatty") == LogLevel.NORMAL
        assert coerce_level(None) == LogLevel.NORMAL


class TestLevelFiltering:
    """Helpers emit only at or below the configured numeric level."""

    def test_verbose_suppressed_at_normal(self, captured, restore_level):
        logger, records = captured
        blog.set_level(LogLevel.NORMAL)

        info(logger, "shown")
        verbose(logger, "hidden")

        assert [r.getMessage() for r in records] == ["shown"]

    def test_verbose_emitted_at_verbose(self, captured, restore_level):
        logger, records = captured
        blog.set_level(LogLevel.VERBOSE)

        verbose(logger, "detail", stage="convert")

        assert records[0].getMessage() == "detail"
        assert records[0].extra_data == {"stage": "convert"}
        assert records[0].numeric_level == 3

    def test_fields_and_request_id_attached(self, captured, restore_level):
        logger, records = captured
        blog.set_level(LogLevel.NORMAL)
        set_request_id("rid-123")
        try:
            info(logger, "book_ready", book_id="b1", seconds=0.25)
        finally:
            set_request_id("-")

        record = records[0]
        assert record.request_id == "rid-123"
        assert record.seconds == 0.25
        assert record.extra_data == {"book_id": "b1"}
        assert record.tag == "INFO"


class TestRequestId:
    def test_default_request_id(self):
        assert get_request_id() == "-"


class TestFormatters:
    """Tests for JSONL and console formatting."""

    def _record(self, **extra):
        record = logging.LogRecord("booktainer", logging.INFO, __file__, 1, "cache_stored", None, None)
        for k, v in extra.items():
            setattr(record, k, v)
        return record

    def test_jsonl_formatter(self):
        record = self._record(tag="SUCCESS", request_id="abc", numeric_level=2, seconds=1.5,
                              extra_data={"bytes": 10})

        payload = json.loads(JsonlFormatter().format(record))

        assert payload["message"] == "cache_stored"
        assert payload["tag"] == "SUCCESS"
        assert payload["request_id"] == "abc"
        assert payload["seconds"] == 1.5
        assert payload["extra"] == {"bytes": 10}

    def test_jsonl_formatter_non_json_values(self):
        from pathlib import Path
        record = self._record(extra_data={"path": Path("/tmp/x")})

        payload = json.loads(JsonlFormatter().format(record))
        assert payload["extra"]["path"] == str(Path("/tmp/x"))

    def test_console_without_colors(self):
        record = self._record(tag="INFO", request_id="abc", extra_data={"cache": "hit"})
        with patch.object(colors, "USE_COLORS", False):
            line = ColoredConsoleFormatter().format(record)

        assert "\033[" not in line
        assert "(abc)" in line
        assert "cache=hit" in line

    def test_console_with_colors(self):
        record = self._record(tag="FAIL", extra_data={"status": "error"})
        with patch.object(colors, "USE_COLORS", True):
            line = ColoredConsoleFormatter().format(record)

        assert colors.Colors.RED + "status=error" in line


class TestColorSupport:
    def test_no_color_env(self, monkeypatch):
        monkeypatch.setenv("BOOKTAINER_NO_COLOR", "1")
        assert colors.supports_color() is False


class TestJsonlFile:
    def test_file_handler_writes_jsonl(self, tmp_path, monkeypatch, restore_level):
        monkeypatch.setenv("BOOKTAINER_LOG_DIR", str(tmp_path))
        monkeypatch.setenv("BOOKTAINER_JSONL_FILE", "test.jsonl")
        blog.configure_logging(level=2, force=True)
        try:
            logger = get_logger("booktainer.test.file")
            info(logger, "written", n=1)
            for handler in logging.getLogger().handlers:
                handler.flush()

            lines = (tmp_path / "test.jsonl").read_text(encoding="utf-8").splitlines()
            assert json.loads(lines[-1])["message"] == "written"
        finally:
            monkeypatch.delenv("BOOKTAINER_LOG_DIR")
            blog.configure_logging(force=True)
