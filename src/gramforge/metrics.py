"""Prometheus metrics for generator stage runs and reconciliation.

Metrics register once at import time on the default registry. Callers record
stage invocations through :func:`observe_stage_run`, which also emits one
structured log line per finished invocation.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

from gramforge.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

__all__ = [
    "RECONCILED_FILES_TOTAL",
    "STAGE_DURATION_SECONDS",
    "STAGE_RUNS_TOTAL",
    "UNITS_TOTAL",
    "StageRunObservation",
    "observe_stage_run",
]

LOGGER = get_logger(__name__)

STAGE_RUNS_TOTAL = Counter(
    "gramforge_stage_runs_total",
    "Total generator stage invocations",
    labelnames=["stage", "status"],
)

STAGE_DURATION_SECONDS = Histogram(
    "gramforge_stage_duration_seconds",
    "Generator stage duration in seconds",
    labelnames=["stage", "status"],
)

UNITS_TOTAL = Counter(
    "gramforge_units_total",
    "Grammar units evaluated, by staleness verdict",
    labelnames=["decision"],
)

RECONCILED_FILES_TOTAL = Counter(
    "gramforge_reconciled_files_total",
    "Generated files merged into output locations, by action",
    labelnames=["action"],
)


@dataclass(slots=True)
class StageRunObservation:
    """Runtime details captured for one stage invocation."""

    stage: str
    command: Sequence[str]
    status: str = field(default="success", init=False)
    failure_reason: str | None = field(default=None, init=False)
    returncode: int | None = field(default=None, init=False)
    start_time: float = field(default_factory=time.monotonic, init=False)

    def success(self, returncode: int = 0) -> None:
        """Record successful completion."""
        self.status = "success"
        self.returncode = returncode
        self.failure_reason = None

    def failure(self, reason: str, *, returncode: int | None = None) -> None:
        """Record failed completion."""
        self.status = "error"
        self.failure_reason = reason
        self.returncode = returncode

    def duration_seconds(self) -> float:
        """Return the elapsed time since the observation started."""
        return time.monotonic() - self.start_time


@contextmanager
def observe_stage_run(stage: str, command: Sequence[str]) -> Iterator[StageRunObservation]:
    """Record metrics and a log line for a stage invocation.

    Parameters
    ----------
    stage : str
        Stage name used as the metric label.
    command : Sequence[str]
        Command or argument list of the invocation.

    Yields
    ------
    StageRunObservation
        Observation the caller marks as success or failure.
    """
    observation = StageRunObservation(stage=stage, command=command)
    try:
        yield observation
    except BaseException:
        if observation.status == "success":
            observation.failure("exception")
        _record(observation)
        raise
    else:
        _record(observation)


def _record(observation: StageRunObservation) -> None:
    duration = observation.duration_seconds()
    STAGE_RUNS_TOTAL.labels(stage=observation.stage, status=observation.status).inc()
    STAGE_DURATION_SECONDS.labels(stage=observation.stage, status=observation.status).observe(
        duration
    )
    LOGGER.debug(
        "Stage '%s' finished with status %s",
        observation.stage,
        observation.status,
        extra={
            "operation": "stage",
            "status": observation.status,
            "stage": observation.stage,
            "returncode": observation.returncode,
            "failure_reason": observation.failure_reason,
            "duration_ms": round(duration * 1000, 3),
        },
    )
