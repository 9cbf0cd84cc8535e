"""
Unit tests for logging utilities.
"""

import io
import json
import logging
import sys

import pytest

from vectordb.core.logging import (
    HumanReadableFormatter,
    SearchContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    log_with_context,
)


def _record(message="hello", **extra):
    record = logging.LogRecord("vectordb.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def clean_package_logger():
    package_logger = logging.getLogger("vectordb")
    saved_handlers = list(package_logger.handlers)
    saved_level = package_logger.level
    package_logger.handlers.clear()
    yield package_logger
    package_logger.handlers[:] = saved_handlers
    package_logger.setLevel(saved_level)


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_json_fields(self):
        """Test standard fields and correlation fields are emitted."""
        line = StructuredFormatter().format(_record(search_id="abc", stage="hamming"))
        entry = json.loads(line)

        assert entry["level"] == "INFO"
        assert entry["logger"] == "vectordb.test"
        assert entry["message"] == "hello"
        assert entry["search_id"] == "abc"
        assert entry["stage"] == "hamming"
        assert "timestamp" in entry
        assert "document_id" not in entry

    def test_without_timestamp(self):
        """Test the timestamp can be omitted."""
        entry = json.loads(StructuredFormatter(include_timestamp=False).format(_record()))

        assert "timestamp" not in entry

    def test_exception(self):
        """Test exception text is included."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(StructuredFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]


class TestHumanReadableFormatter:
    """Tests for HumanReadableFormatter."""

    def test_context_suffix(self):
        """Test correlation ids are appended in brackets."""
        line = HumanReadableFormatter(include_timestamp=False).format(
            _record(search_id="abc", document_id=7)
        )

        assert line == "vectordb.test - INFO - hello [search_id=abc document_id=7]"

    def test_no_context(self):
        """Test lines without context have no suffix."""
        line = HumanReadableFormatter(include_timestamp=False).format(_record())

        assert line == "vectordb.test - INFO - hello"


class TestSearchContext:
    """Tests for SearchContext and log_with_context."""

    def test_nesting(self):
        """Test inner contexts add fields and restore on exit."""
        assert SearchContext.get_current() == {}

        with SearchContext(search_id="abc"):
            with SearchContext(document_id=7, stage="rerank"):
                assert SearchContext.get_current() == {
                    "search_id": "abc", "document_id": 7, "stage": "rerank",
                }
            assert SearchContext.get_current() == {"search_id": "abc"}

        assert SearchContext.get_current() == {}

    def test_log_with_context(self, caplog):
        """Test context fields land on the record."""
        logger = get_logger("vectordb.test.context")

        with caplog.at_level(logging.INFO, logger="vectordb.test.context"):
            with SearchContext(search_id="abc"):
                log_with_context(logger, logging.INFO, "stage done", stage="hamming")

        record = caplog.records[-1]
        assert record.search_id == "abc"
        assert record.stage == "hamming"


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_single_handler(self, clean_package_logger):
        """Test repeated calls do not add duplicate handlers."""
        configure_logging(stream=io.StringIO())
        configure_logging(stream=io.StringIO())

        assert len(clean_package_logger.handlers) == 1

    def test_structured_output(self, clean_package_logger):
        """Test structured mode writes JSON lines to the given stream."""
        stream = io.StringIO()
        configure_logging(level=logging.DEBUG, structured=True, stream=stream)

        logging.getLogger("vectordb.test.output").debug("written")

        assert json.loads(stream.getvalue())["message"] == "written"

    def test_plain_calls_pick_up_search_context(self, clean_package_logger):
        """Test the handler stamps the active context onto ordinary log calls."""
        stream = io.StringIO()
        configure_logging(structured=True, include_timestamp=False, stream=stream)

        with SearchContext(search_id="abc", backend="sqlite"):
            logging.getLogger("vectordb.test.filter").info("scanning")

        entry = json.loads(stream.getvalue())
        assert entry["search_id"] == "abc"
        assert entry["backend"] == "sqlite"

    def test_get_logger_level(self):
        """Test get_logger applies a level override."""
        assert get_logger("vectordb.test.level", logging.WARNING).level == logging.WARNING
