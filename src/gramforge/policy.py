"""Error escalation policy across batches of grammar units.

Each error class has its own mode:

``first``
    Abort immediately on the first failure.
``last``
    Record the failure, keep going, and fail once the batch has completed.
``ignore``
    Record the failure, keep going, and report success at the end.

Configuration errors use the boolean reduction of the same idea: abort the
run, or log and skip the current execution.

A tracker moves ``CLEAN -> DEGRADED`` on its first recorded failure and never
back; at the end of the batch the accumulated state, not the last unit's
outcome, decides between success and failure.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Self

from gramforge.errors import BatchFailedError, ErrorClass
from gramforge.logging import get_logger

if TYPE_CHECKING:
    from gramforge.errors import ConfigurationError, GramforgeError
    from gramforge.logging import LoggerAdapter

__all__ = [
    "BatchState",
    "EscalationMode",
    "EscalationSettings",
    "EscalationTracker",
    "handle_configuration_error",
]

LOGGER = get_logger(__name__)

_LABELS: dict[ErrorClass, str] = {
    ErrorClass.CONFIGURATION: "configuration",
    ErrorClass.METADATA: "grammar reading",
    ErrorClass.PROCESSOR: "processor",
}


class EscalationMode(StrEnum):
    """How per-unit failures of one error class affect the run."""

    FIRST = "first"
    LAST = "last"
    IGNORE = "ignore"

    @classmethod
    def parse(cls, value: str | Self | None, *, parameter: str) -> EscalationMode:
        """Parse ``value`` case-insensitively, falling back to ``first``.

        Parameters
        ----------
        value : str | EscalationMode | None
            Raw option value.
        parameter : str
            Option name used in the warning.

        Returns
        -------
        EscalationMode
            Parsed mode; ``FIRST`` when ``value`` is missing or invalid.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.FIRST
        normalised = str(value).strip().lower()
        try:
            mode = cls(normalised)
        except ValueError:
            LOGGER.warning(
                "invalid value '%s' for %s parameter; must be 'first', 'last' or 'ignore';"
                " kept to default 'first'",
                value,
                parameter,
                extra={"operation": "configure", "parameter": parameter},
            )
            return cls.FIRST
        LOGGER.debug(
            "%s is '%s'", parameter, mode.value, extra={"operation": "configure"}
        )
        return mode


class BatchState(StrEnum):
    """Lifecycle of one error class over a batch."""

    CLEAN = "clean"
    DEGRADED = "degraded"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class EscalationSettings:
    """Escalation modes for the three error classes."""

    metadata: EscalationMode = EscalationMode.FIRST
    processor: EscalationMode = EscalationMode.FIRST
    abort_on_configuration_error: bool = True


@dataclass(slots=True)
class EscalationTracker:
    """Accumulate failures of one error class over a batch.

    The tracker is safe to share between worker threads: recording and the
    end-of-batch decision are serialised by a lock.

    Parameters
    ----------
    error_class : ErrorClass
        Error class the tracker governs.
    mode : EscalationMode
        Escalation mode for that class.
    """

    error_class: ErrorClass
    mode: EscalationMode
    logger: LoggerAdapter = field(default_factory=lambda: LOGGER)
    _failures: list[GramforgeError] = field(default_factory=list, init=False)
    _state: BatchState = field(default=BatchState.CLEAN, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> BatchState:
        """Current batch state."""
        with self._lock:
            return self._state

    @property
    def failures(self) -> tuple[GramforgeError, ...]:
        """Failures recorded so far, in recording order."""
        with self._lock:
            return tuple(self._failures)

    @property
    def aborted(self) -> bool:
        """Return ``True`` once a ``first``-mode failure has been recorded."""
        return self.state is BatchState.ABORTED

    def record(self, error: GramforgeError) -> None:
        """Record a per-unit failure and escalate according to the mode.

        Parameters
        ----------
        error : GramforgeError
            Failure to record.

        Raises
        ------
        GramforgeError
            ``error`` itself, re-raised when the mode is ``first``.
        """
        with self._lock:
            self._failures.append(error)
            if self.mode is EscalationMode.FIRST:
                self._state = BatchState.ABORTED
            elif self._state is BatchState.CLEAN:
                self._state = BatchState.DEGRADED
            mode = self.mode

        extra = {
            "operation": str(self.error_class),
            "error_code": error.code.value,
            **error.context,
        }
        if mode is EscalationMode.FIRST:
            self.logger.error(error.message, extra=extra)
            raise error
        if mode is EscalationMode.LAST:
            self.logger.error(error.message, extra=extra)
            self.logger.info(
                "Continuing current execution as the %s policy is set to 'last'",
                self.error_class,
                extra={"operation": str(self.error_class)},
            )
        else:
            self.logger.warning(error.message, extra=extra)
            self.logger.info(
                "Continuing current execution as the %s policy is set to 'ignore'",
                self.error_class,
                extra={"operation": str(self.error_class)},
            )

    def finalize(self) -> None:
        """Apply the end-of-batch decision.

        Raises
        ------
        BatchFailedError
            Under ``last`` when at least one failure was recorded.
        """
        with self._lock:
            failures = tuple(self._failures)
            degraded = self._state is BatchState.DEGRADED
        if not failures or not degraded:
            return
        if self.mode is EscalationMode.LAST:
            message = (
                f"{len(failures)} {_LABELS[self.error_class]} error(s) encountered (see above), "
                "batch finished and leaving execution"
            )
            raise BatchFailedError(message, error_class=self.error_class, failures=failures)
        self.logger.info(
            "Encountered %d %s error(s), but ignored and continuing execution",
            len(failures),
            _LABELS[self.error_class],
            extra={"operation": str(self.error_class), "failure_count": len(failures)},
        )


def handle_configuration_error(
    error: ConfigurationError,
    *,
    abort: bool,
    logger: LoggerAdapter = LOGGER,
) -> None:
    """Apply the abort/continue policy to a run-wide configuration error.

    Parameters
    ----------
    error : ConfigurationError
        The configuration failure.
    abort : bool
        Whether configuration errors abort the run.
    logger : LoggerAdapter, optional
        Logger receiving the messages.

    Raises
    ------
    ConfigurationError
        ``error`` itself when ``abort`` is set.
    """
    logger.error(error.message, extra={"operation": "configure", **error.context})
    if abort:
        raise error
    logger.info(
        "Continuing to next execution as configuration errors are set to continue",
        extra={"operation": "configure"},
    )
