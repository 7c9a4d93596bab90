"""Structured logging helpers with correlation IDs.

This module provides a :class:`LoggerAdapter` that injects the structured
fields every gramforge log line carries (``correlation_id``, ``operation``,
``status``) plus a JSON formatter for the command line boundary. Library
modules obtain loggers through :func:`get_logger`, which attaches a
``NullHandler`` so importing gramforge never configures handlers.

Examples
--------
>>> from gramforge.logging import get_logger
>>> logger = get_logger(__name__)
>>> logger.info("Scan started", extra={"operation": "scan", "status": "started"})
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Self

if TYPE_CHECKING:
    from collections.abc import Mapping, MutableMapping
    from types import TracebackType

__all__ = [
    "CorrelationContext",
    "JsonFormatter",
    "LoggerAdapter",
    "get_correlation_id",
    "get_logger",
    "setup_logging",
    "with_fields",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "gramforge_correlation_id", default=None
)

_STRUCTURED_FIELDS = ("correlation_id", "operation", "status", "duration_ms")

_RESERVED_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "ts",
    }
)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Formats records as one JSON object per line with timestamp, level, logger
    name, message, the structured fields and any JSON-friendly ``extra``
    values. The correlation ID falls back to the context variable when the
    record does not carry one.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format ``record`` as JSON.

        Parameters
        ----------
        record : logging.LogRecord
            Log record to format.

        Returns
        -------
        str
            JSON-encoded log entry.
        """
        data: dict[str, object] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value
        if "correlation_id" not in data:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                data["correlation_id"] = ctx_correlation_id

        for key, value in record.__dict__.items():
            if (
                key not in _RESERVED_ATTRIBUTES
                and key not in data
                and not key.startswith("_")
                and value is not None
                and isinstance(value, (str, int, float, bool, list, dict))
            ):
                data[key] = value
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class LoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter that injects structured context fields.

    Fields bound at construction time are merged into every call's ``extra``
    without overriding keys the call passes explicitly. ``operation`` and
    ``status`` always end up present; the latter is inferred from the level
    when missing.

    Parameters
    ----------
    logger : logging.Logger
        Base logger instance to wrap.
    extra : Mapping[str, object] | None, optional
        Structured fields to inject into log entries.
    """

    logger: logging.Logger

    def process(
        self, msg: object, kwargs: MutableMapping[str, Any]
    ) -> tuple[object, MutableMapping[str, Any]]:
        """Merge bound fields and context into the record's ``extra``.

        Parameters
        ----------
        msg : object
            Log message.
        kwargs : MutableMapping[str, Any]
            Keyword arguments from the logging call.

        Returns
        -------
        tuple[object, MutableMapping[str, Any]]
            Message and kwargs with the structured fields injected.
        """
        extra = dict(kwargs.get("extra") or {})
        if self.extra:
            for key, value in self.extra.items():
                extra.setdefault(key, value)
        if "correlation_id" not in extra:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                extra["correlation_id"] = ctx_correlation_id
        extra.setdefault("operation", "unknown")
        kwargs["extra"] = extra
        return msg, kwargs

    def log(self, level: int, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log ``msg`` at ``level`` inferring ``status`` from the level."""
        if self.isEnabledFor(level):
            extra = dict(kwargs.get("extra") or {})
            if "status" not in extra:
                if level >= logging.ERROR:
                    extra["status"] = "error"
                elif level >= logging.WARNING:
                    extra["status"] = "warning"
                else:
                    extra["status"] = "success"
            kwargs["extra"] = extra
            msg, kwargs = self.process(msg, kwargs)
            self.logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log a debug message with structured fields."""
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log an info message with structured fields."""
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log a warning message with structured fields."""
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log an error message with structured fields."""
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: object, *args: object, exc_info: bool = True, **kwargs: Any) -> None:  # noqa: ANN401
        """Log an error message with exception information."""
        self.log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: object, *args: object, **kwargs: Any) -> None:  # noqa: ANN401
        """Log a critical message with structured fields."""
        self.log(logging.CRITICAL, msg, *args, **kwargs)


def get_logger(name: str) -> LoggerAdapter:
    """Get a logger adapter with structured logging support.

    Parameters
    ----------
    name : str
        Logger name (typically ``__name__``).

    Returns
    -------
    LoggerAdapter
        Logger adapter with structured context injection.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return LoggerAdapter(logger, {})


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with :class:`JsonFormatter` on stdout.

    Parameters
    ----------
    level : int | str, optional
        Logging level threshold. Defaults to ``logging.INFO``.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)


def get_correlation_id() -> str | None:
    """Return the current correlation ID, if any.

    Returns
    -------
    str | None
        Correlation ID from the context variable.
    """
    return _correlation_id.get()


class CorrelationContext:
    """Context manager that scopes a correlation ID.

    Parameters
    ----------
    correlation_id : str | None
        Correlation ID to set while the context is active.
    """

    def __init__(self, correlation_id: str | None) -> None:
        self.correlation_id = correlation_id
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> Self:
        """Set the correlation ID.

        Returns
        -------
        Self
            This context.
        """
        self._token = _correlation_id.set(self.correlation_id)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Restore the previous correlation ID."""
        if self._token is not None:
            _correlation_id.reset(self._token)
        del exc_type, exc_val, exc_tb


class _WithFieldsContext(AbstractContextManager[LoggerAdapter]):
    """Context manager implementation for :func:`with_fields`."""

    def __init__(
        self, logger: logging.Logger | LoggerAdapter, fields: Mapping[str, object]
    ) -> None:
        self._logger = logger
        self._fields = dict(fields)
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> LoggerAdapter:
        base_logger = (
            self._logger.logger if isinstance(self._logger, LoggerAdapter) else self._logger
        )
        bound: dict[str, object] = {}
        if isinstance(self._logger, LoggerAdapter) and self._logger.extra:
            bound.update(self._logger.extra)
        bound.update(self._fields)
        correlation_id = self._fields.get("correlation_id")
        if isinstance(correlation_id, str):
            self._token = _correlation_id.set(correlation_id)
        return LoggerAdapter(base_logger, bound)

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _correlation_id.reset(self._token)
        del exc_type, exc_value, exc_tb


def with_fields(
    logger: logging.Logger | LoggerAdapter,
    **fields: object,
) -> AbstractContextManager[LoggerAdapter]:
    """Context manager for attaching structured fields to log entries.

    Parameters
    ----------
    logger : logging.Logger | LoggerAdapter
        Base logger to wrap (may already be an adapter, whose bound fields are kept).
    **fields : object
        Structured fields injected into every log entry within the context.

    Returns
    -------
    AbstractContextManager[LoggerAdapter]
        Context manager yielding the bound adapter. A ``correlation_id`` field
        is pushed into the context variable and restored on exit.

    Examples
    --------
    >>> from gramforge.logging import get_logger, with_fields
    >>> logger = get_logger(__name__)
    >>> with with_fields(logger, correlation_id="run-1", operation="scan") as log:
    ...     log.info("Scanning")
    """
    return _WithFieldsContext(logger, fields)
