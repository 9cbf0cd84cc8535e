"""
Logging for vectordb.

Module loggers come from ``logging.getLogger(__name__)`` as usual. This
module adds what a search service needs on top:

- correlation fields (``search_id``, ``document_id``, ``stage``, ``backend``)
  scoped with ``SearchContext`` and stamped on records by
  ``SearchContextFilter``;
- a JSON formatter for log shipping and a plain-text formatter for the CLI.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, TextIO, Tuple


PACKAGE_LOGGER = "vectordb"

CONTEXT_FIELDS: Tuple[str, ...] = ("search_id", "document_id", "stage", "backend")

# Shown after the message by HumanReadableFormatter, in this order
_SUFFIX_FIELDS: Tuple[str, ...] = ("search_id", "document_id", "stage")

_search_context: ContextVar[Dict[str, Any]] = ContextVar("vectordb_search_context", default={})


def _present_fields(record: logging.LogRecord, names: Tuple[str, ...]) -> Iterator[Tuple[str, Any]]:
    for name in names:
        value = getattr(record, name, None)
        if value is not None:
            yield name, value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    Keys: ``level``, ``logger``, ``message``, optionally ``timestamp``
    (UTC, ISO-8601), any correlation field set on the record, and
    ``exception`` when the record carries exc_info.
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {}
        if self.include_timestamp:
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            payload["timestamp"] = created.isoformat()
        payload.update(
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        payload.update(_present_fields(record, CONTEXT_FIELDS))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    ``[TIMESTAMP - ]LOGGER - LEVEL - MESSAGE [search_id=.. document_id=.. stage=..]``
    """

    def __init__(self, include_timestamp: bool = True):
        prefix = "%(asctime)s - " if include_timestamp else ""
        super().__init__(prefix + "%(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        suffix = " ".join(f"{k}={v}" for k, v in _present_fields(record, _SUFFIX_FIELDS))
        return f"{line} [{suffix}]" if suffix else line


class SearchContext:
    """
    Scope correlation fields to a block of code.

    Contexts nest: inner fields are merged over outer ones and the outer
    set is restored on exit. The state lives in a ContextVar, so
    concurrent searches on different threads never see each other's ids.

    Example:
        >>> with SearchContext(search_id="3f2a"):
        ...     log_with_context(logger, logging.DEBUG, "scan done", stage="hamming")
    """

    def __init__(
        self,
        search_id: Optional[str] = None,
        document_id: Optional[int] = None,
        **extra: Any,
    ):
        fields = dict(extra, search_id=search_id, document_id=document_id)
        self.context = {k: v for k, v in fields.items() if v is not None}
        self._token = None

    def __enter__(self) -> "SearchContext":
        self._token = _search_context.set({**_search_context.get(), **self.context})
        return self

    def __exit__(self, *args) -> None:
        _search_context.reset(self._token)

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Copy of the fields active in the current context."""
        return dict(_search_context.get())


class SearchContextFilter(logging.Filter):
    """Copy the active SearchContext onto each record that lacks the field."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in _search_context.get().items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Return ``logging.getLogger(name)``, optionally setting its level.
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def _build_formatter(
    structured: bool,
    format_string: Optional[str],
    include_timestamp: bool,
) -> logging.Formatter:
    if structured:
        return StructuredFormatter(include_timestamp=include_timestamp)
    if format_string:
        return logging.Formatter(format_string)
    return HumanReadableFormatter(include_timestamp=include_timestamp)


def configure_logging(
    level: int = logging.INFO,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
    structured: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Attach a stream handler to the ``vectordb`` package logger.

    Only the first call installs a handler; later calls just adjust the
    level.

    Args:
        level: Logging level (default: INFO)
        format_string: Custom %-style format (ignored if structured=True)
        include_timestamp: Whether lines carry a timestamp
        structured: Emit JSON lines instead of plain text
        stream: Output stream (default: stdout)
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    if package_logger.handlers:
        return

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.addFilter(SearchContextFilter())
    handler.setFormatter(_build_formatter(structured, format_string, include_timestamp))
    package_logger.addHandler(handler)


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """Log ``message`` with the active SearchContext plus ``extra`` fields."""
    fields = SearchContext.get_current()
    fields.update(extra)
    logger.log(level, message, extra=fields)
