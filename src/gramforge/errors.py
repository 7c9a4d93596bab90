"""Exception hierarchy for grammar build orchestration.

Every failure raised by :mod:`gramforge` derives from :class:`GramforgeError`
and carries a stable :class:`ErrorCode`, a preferred log level and a context
mapping that structured log lines can include verbatim. The three error
classes that the escalation policy distinguishes map onto
:class:`ConfigurationError`, :class:`MetadataError` and :class:`ProcessorError`.

Examples
--------
>>> from gramforge.errors import MetadataError
>>> error = MetadataError("No unit name found", path="src/Calc.jj")
>>> str(error)
'MetadataError[metadata-error]: No unit name found'
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from gramforge.orchestrator import RunResult

__all__ = [
    "BatchFailedError",
    "ConfigurationError",
    "ErrorClass",
    "ErrorCode",
    "GramforgeError",
    "MetadataError",
    "ProcessorError",
]


class ErrorCode(StrEnum):
    """Stable error codes for gramforge exceptions.

    Attributes
    ----------
    CONFIGURATION_ERROR
        Invalid option value or unusable directory.
    METADATA_ERROR
        A grammar file could not be read or lacks its unit-name marker.
    PROCESSOR_ERROR
        A generator stage failed or its output could not be reconciled.
    BATCH_FAILED
        A batch completed under ``last`` with at least one failure.
    """

    CONFIGURATION_ERROR = "configuration-error"
    METADATA_ERROR = "metadata-error"
    PROCESSOR_ERROR = "processor-error"
    BATCH_FAILED = "batch-failed"


class ErrorClass(StrEnum):
    """Error classes governed independently by the escalation policy."""

    CONFIGURATION = "configuration"
    METADATA = "metadata"
    PROCESSOR = "processor"


class GramforgeError(Exception):
    """Base exception for all gramforge errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode, optional
        Stable error code. Defaults to ``ErrorCode.PROCESSOR_ERROR``.
    log_level : int, optional
        Level used when the error is logged. Defaults to ``logging.ERROR``.
    cause : BaseException | None, optional
        Underlying exception, chained as ``__cause__``.
    context : Mapping[str, object] | None, optional
        Extra structured fields describing the failure.

    Attributes
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode
        Error code enum value.
    log_level : int
        Logging level for error logging.
    context : dict[str, object]
        Additional context for log lines and summaries.
    """

    error_class: ErrorClass | None = None

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.PROCESSOR_ERROR,
        log_level: int = logging.ERROR,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.log_level = log_level
        self.context: dict[str, object] = dict(context) if context else {}
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        """Return ``Class[code]: message`` with the cause type when chained.

        Returns
        -------
        str
            Formatted error string.
        """
        base = f"{self.__class__.__name__}[{self.code.value}]: {self.message}"
        if self.__cause__:
            base += f" (caused by: {type(self.__cause__).__name__})"
        return base


class ConfigurationError(GramforgeError):
    """Invalid parameters or unusable paths; scoped to the whole execution.

    Parameters
    ----------
    message : str
        Human-readable error message.
    cause : BaseException | None, optional
        Underlying exception. Defaults to None.
    context : Mapping[str, object] | None, optional
        Additional context. Defaults to None.

    Examples
    --------
    >>> error = ConfigurationError("sourceDirectory 'src/main/javacc' does not exist")
    >>> error.code.value
    'configuration-error'
    """

    error_class = ErrorClass.CONFIGURATION

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.CONFIGURATION_ERROR,
            log_level=logging.CRITICAL,
            cause=cause,
            context=context,
        )

    @classmethod
    def with_details(
        cls,
        *,
        field: str,
        issue: str,
        hint: str | None = None,
    ) -> ConfigurationError:
        """Create a ConfigurationError with structured validation details.

        Parameters
        ----------
        field : str
            Name of the option that failed validation.
        issue : str
            Description of the problem.
        hint : str | None, optional
            Optional remediation hint.

        Returns
        -------
        ConfigurationError
            New instance with the details captured in ``context``.
        """
        details: dict[str, object] = {"field": field, "issue": issue}
        if hint is not None:
            details["hint"] = hint
        message = f"Configuration validation failed for field '{field}': {issue}"
        return cls(message, context=details)


class MetadataError(GramforgeError):
    """A unit's source text could not be read or lacks a required marker."""

    error_class = ErrorClass.METADATA

    def __init__(
        self,
        message: str,
        *,
        path: Path | str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.METADATA_ERROR,
            cause=cause,
            context={"path": str(path)},
        )
        self.path = str(path)


class ProcessorError(GramforgeError):
    """A generator stage failed, or its output could not be copied.

    Parameters
    ----------
    message : str
        Human-readable error message.
    stage : str
        Name of the stage that failed (``"reconcile"`` for copy failures).
    path : Path | str
        Source path of the unit being processed.
    cause : BaseException | None, optional
        Underlying exception. Defaults to None.
    returncode : int | None, optional
        Exit status reported by the stage, when it ran to completion.
    """

    error_class = ErrorClass.PROCESSOR

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        path: Path | str,
        cause: BaseException | None = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.PROCESSOR_ERROR,
            cause=cause,
            context={"stage": stage, "path": str(path), "returncode": returncode},
        )
        self.stage = stage
        self.path = str(path)
        self.returncode = returncode


class BatchFailedError(GramforgeError):
    """Raised once a ``last``-mode batch has finished with recorded failures."""

    def __init__(
        self,
        message: str,
        *,
        error_class: ErrorClass,
        failures: Sequence[GramforgeError],
        result: RunResult | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.BATCH_FAILED,
            context={"error_class": str(error_class), "failure_count": len(failures)},
        )
        self.error_class = error_class
        self.failures: tuple[GramforgeError, ...] = tuple(failures)
        self.result = result
