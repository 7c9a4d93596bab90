"""Tests for structured logging helpers."""

from __future__ import annotations

import json
import logging
from io import StringIO

from gramforge.logging import (
    CorrelationContext,
    JsonFormatter,
    get_correlation_id,
    get_logger,
    with_fields,
)


def _capture(name: str) -> tuple[logging.Logger, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream


def _records(stream: StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_adapter_infers_status_and_operation() -> None:
    """Every entry carries an operation and a level-derived status."""
    _, stream = _capture("gramforge.tests.status")
    logger = get_logger("gramforge.tests.status")

    logger.info("Scanned")
    logger.warning("Slow", extra={"operation": "scan"})
    logger.error("Failed", extra={"operation": "stage", "stage": "javacc"})

    records = _records(stream)
    assert [record["status"] for record in records] == ["success", "warning", "error"]
    assert [record["operation"] for record in records] == ["unknown", "scan", "stage"]
    assert records[2]["stage"] == "javacc"


def test_with_fields_binds_correlation_id() -> None:
    """Bound fields and the correlation ID reach every entry in the block."""
    _, stream = _capture("gramforge.tests.fields")
    base = get_logger("gramforge.tests.fields")

    with with_fields(base, correlation_id="run-1", goal="javacc") as logger:
        logger.info("Processing", extra={"operation": "run"})
        assert get_correlation_id() == "run-1"
    base.info("After", extra={"operation": "run"})

    first, second = _records(stream)
    assert first["correlation_id"] == "run-1"
    assert first["goal"] == "javacc"
    assert "correlation_id" not in second
    assert get_correlation_id() is None


def test_correlation_context_restores_previous_value() -> None:
    """Nested contexts restore the outer correlation ID."""
    with CorrelationContext("outer"):
        with CorrelationContext("inner"):
            assert get_correlation_id() == "inner"
        assert get_correlation_id() == "outer"
    assert get_correlation_id() is None


def test_formatter_includes_exception_text() -> None:
    """Exception information is rendered into the entry."""
    logger, stream = _capture("gramforge.tests.exc")

    try:
        message = "boom"
        raise ValueError(message)
    except ValueError:
        logger.exception("Stage crashed")

    (record,) = _records(stream)
    assert record["level"] == "ERROR"
    assert "ValueError: boom" in str(record["exc_info"])
