"""Tests for the end-of-run failure summary."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gramforge.errors import MetadataError, ProcessorError
from gramforge.failure_summary import FailureSummaryRenderer
from gramforge.logging import get_logger
from gramforge.orchestrator import RunResult, RunStatus

if TYPE_CHECKING:
    import pytest

LOGGER_NAME = "gramforge.tests.summary"


def test_no_failures_renders_nothing(caplog: pytest.LogCaptureFixture) -> None:
    """A clean run produces no summary."""
    caplog.set_level("ERROR", logger=LOGGER_NAME)

    FailureSummaryRenderer(get_logger(LOGGER_NAME)).render(None, [])

    assert caplog.records == []


def test_summary_lists_counts_and_errors(caplog: pytest.LogCaptureFixture) -> None:
    """The summary names the goal, the counts and each failing grammar."""
    caplog.set_level("ERROR", logger=LOGGER_NAME)
    failures = [
        ProcessorError("Processor 'javacc' reported exit code '1'", stage="javacc", path="B.jj"),
        MetadataError("No unit name found", path="C.jj"),
    ]
    result = RunResult("javacc", RunStatus.FAILED, processed=2, failed=1, failures=tuple(failures))

    FailureSummaryRenderer(get_logger(LOGGER_NAME)).render(result, failures)

    lines = [record.getMessage() for record in caplog.records]
    assert lines[0] == "[SUMMARY] Grammar processing reported errors."
    assert "  Goal: javacc" in lines
    assert "  Failed: 1" in lines
    assert "    - processor: B.jj [javacc]: Processor 'javacc' reported exit code '1'" in lines
    assert "    - metadata: C.jj: No unit name found" in lines


def test_long_failure_lists_are_truncated(caplog: pytest.LogCaptureFixture) -> None:
    """Only the first failures are listed individually."""
    caplog.set_level("ERROR", logger=LOGGER_NAME)
    failures = [MetadataError("No unit name found", path=f"G{index}.jj") for index in range(12)]

    FailureSummaryRenderer(get_logger(LOGGER_NAME)).render(None, failures)

    lines = [record.getMessage() for record in caplog.records]
    assert "  Errors (12):" in lines
    assert lines[-1] == "    ... 2 more"
    assert sum(1 for line in lines if line.startswith("    - metadata:")) == 10
