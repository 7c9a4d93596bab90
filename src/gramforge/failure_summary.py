"""Failure summary rendering for orchestration runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gramforge.errors import GramforgeError
    from gramforge.logging import LoggerAdapter
    from gramforge.orchestrator import RunResult

__all__ = ["FailureSummaryRenderer"]

TOP_FAILURES: Final = 10


@dataclass(slots=True)
class FailureSummaryRenderer:
    """Emit a condensed failure summary after a run."""

    logger: LoggerAdapter

    def render(self, result: RunResult | None, failures: Sequence[GramforgeError]) -> None:
        """Render a summary block when ``failures`` is not empty."""
        if not failures:
            return

        lines = ["[SUMMARY] Grammar processing reported errors."]
        if result is not None:
            lines.append(f"  Goal: {result.goal}")
            lines.append(f"  Status: {result.status.value}")
            lines.append(f"  Stale grammars: {result.stale}")
            lines.append(f"  Processed: {result.processed}")
            lines.append(f"  Failed: {result.failed}")
        lines.append(f"  Errors ({len(failures)}):")
        for failure in failures[:TOP_FAILURES]:
            error_class = failure.error_class.value if failure.error_class else "run"
            path = failure.context.get("path", "-")
            stage = failure.context.get("stage")
            where = f"{path} [{stage}]" if stage else str(path)
            lines.append(f"    - {error_class}: {where}: {failure.message}")
        if len(failures) > TOP_FAILURES:
            lines.append(f"    ... {len(failures) - TOP_FAILURES} more")
        for line in lines:
            self.logger.error(line, extra={"operation": "run"})
