"""Subprocess execution for external generator tools.

Stage invokers run generators through :class:`ProcessRunner` instead of
calling :mod:`subprocess` directly, so executable resolution, environment
construction, timeouts and metrics are handled in one place.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

from gramforge.logging import get_logger
from gramforge.metrics import observe_stage_run

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from gramforge.logging import LoggerAdapter

__all__ = [
    "EnvironmentPolicy",
    "ProcessRunner",
    "SanitisedEnvironment",
    "ToolExecutionError",
    "ToolRunResult",
    "get_process_runner",
    "set_process_runner",
]

Command: TypeAlias = "Sequence[str]"

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class ToolRunResult:
    """Structured result from invoking a subprocess."""

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool


class ToolExecutionError(RuntimeError):
    """Raised when a subprocess cannot be run to completion.

    Parameters
    ----------
    message : str
        Human-readable error message.
    command : Sequence[str]
        Command that failed.
    returncode : int | None, optional
        Process exit code if available.
    streams : tuple[str, str] | None, optional
        ``(stdout, stderr)`` tuple if available.
    timed_out : bool, optional
        Whether the process was killed after exceeding its timeout.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str],
        returncode: int | None = None,
        streams: tuple[str, str] | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.command: tuple[str, ...] = tuple(command)
        self.returncode = returncode
        self.stdout, self.stderr = streams if streams is not None else ("", "")
        self.timed_out = timed_out


@runtime_checkable
class EnvironmentPolicy(Protocol):
    """Protocol describing how subprocess environments are constructed."""

    def build(self, overrides: Mapping[str, str] | None) -> dict[str, str]: ...


@dataclass(slots=True, frozen=True)
class SanitisedEnvironment(EnvironmentPolicy):
    """Environment policy that keeps baseline variables and applies overrides."""

    allowed_keys: frozenset[str] = frozenset(
        {
            "HOME",
            "PATH",
            "LANG",
            "LC_ALL",
            "LC_CTYPE",
            "LC_MESSAGES",
            "TZ",
            "TMPDIR",
            "JAVA_HOME",
            "CLASSPATH",
            "PYTHONPATH",
            "SYSTEMROOT",
        }
    )

    def build(self, overrides: Mapping[str, str] | None) -> dict[str, str]:
        baseline = {
            key: value
            for key, value in os.environ.items()
            if key in self.allowed_keys or key.startswith(("JAVA_", "GRAMFORGE_"))
        }
        if overrides:
            baseline.update(overrides)
        return {key: str(value) for key, value in baseline.items()}


@dataclass(slots=True)
class ProcessRunner:
    """Facade that executes generator subprocesses with shared policies."""

    environment: EnvironmentPolicy = field(default_factory=SanitisedEnvironment)
    logger: LoggerAdapter = field(default_factory=lambda: get_logger(__name__))

    def run(
        self,
        command: Command,
        *,
        stage: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = False,
    ) -> ToolRunResult:
        """Execute ``command``.

        Parameters
        ----------
        command : Command
            Executable followed by its arguments.
        stage : str | None, optional
            Stage name used to label metrics. Defaults to the executable name.
        cwd : Path | None, optional
            Working directory.
        env : Mapping[str, str] | None, optional
            Environment overrides applied on top of the sanitised baseline.
        timeout : float | None, optional
            Seconds after which the process is killed.
        check : bool, optional
            Raise :class:`ToolExecutionError` on a non-zero exit status.

        Returns
        -------
        ToolRunResult
            Exit status, captured streams and timing.

        Raises
        ------
        ToolExecutionError
            If the command is empty, the executable is missing, the process
            times out, or ``check`` is set and the exit status is non-zero.
        """
        if not command:
            message = "Command must contain at least one argument"
            raise ToolExecutionError(message, command=[])

        executable = self._resolve(command[0], command)
        final_command = (executable, *command[1:])
        label = stage or Path(command[0]).name

        with observe_stage_run(label, final_command) as observation:
            try:
                completed = subprocess.run(  # noqa: S603 - argument list, no shell
                    final_command,
                    cwd=str(cwd) if cwd else None,
                    env=self.environment.build(env),
                    text=True,
                    capture_output=True,
                    timeout=timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                observation.failure("timeout")
                message = f"Subprocess timed out after {timeout} second(s)"
                raise ToolExecutionError(
                    message,
                    command=final_command,
                    streams=(_decode_stream(exc.stdout), _decode_stream(exc.stderr)),
                    timed_out=True,
                ) from exc
            except OSError as exc:
                observation.failure("spawn_failed")
                message = f"Executable could not be started: {exc}"
                raise ToolExecutionError(message, command=final_command) from exc

            result = ToolRunResult(
                command=final_command,
                returncode=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
                duration_seconds=observation.duration_seconds(),
                timed_out=False,
            )
            if completed.returncode == 0:
                observation.success(completed.returncode)
            else:
                observation.failure("non_zero_exit", returncode=completed.returncode)

            if check and completed.returncode != 0:
                message = "Subprocess returned a non-zero exit status"
                raise ToolExecutionError(
                    message,
                    command=final_command,
                    returncode=completed.returncode,
                    streams=(completed.stdout, completed.stderr),
                )
            return result

    def _resolve(self, executable: str, command: Command) -> str:
        candidate = Path(executable)
        if candidate.is_absolute():
            return str(candidate)
        resolved = shutil.which(executable)
        if resolved is None:
            message = f"Executable '{executable}' could not be resolved to an absolute path"
            self.logger.warning(
                message,
                extra={"operation": "stage", "executable": executable, "command": list(command)},
            )
            raise ToolExecutionError(message, command=command)
        return resolved


def _decode_stream(stream: object) -> str:
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    if stream is None:
        return ""
    return str(stream)


_PROCESS_RUNNER: ProcessRunner = ProcessRunner()


def get_process_runner() -> ProcessRunner:
    """Return the process runner shared by external stage invokers."""
    return _PROCESS_RUNNER


def set_process_runner(runner: ProcessRunner) -> None:
    """Replace the shared process runner (primarily for tests)."""
    global _PROCESS_RUNNER  # noqa: PLW0603
    _PROCESS_RUNNER = runner
