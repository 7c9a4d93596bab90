"""Generator stage invocation.

A stage is an opaque external operation: it receives an absolute input path
and one private location per declared output, and reports success or
failure. :class:`StageInvoker` is the seam between the pipeline and whatever
runs the generator; :class:`ExternalToolInvoker` runs it as a subprocess.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from gramforge.config import option_pattern
from gramforge.errors import ProcessorError
from gramforge.goals import StageRole
from gramforge.logging import get_logger
from gramforge.process import ToolExecutionError, get_process_runner

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gramforge.config import StageConfig
    from gramforge.metadata import Unit
    from gramforge.process import ProcessRunner

__all__ = [
    "ExternalToolInvoker",
    "StageInvoker",
    "StageOutcome",
    "build_arguments",
    "declared_output",
]

LOGGER = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class StageOutcome:
    """Result of one successful stage invocation."""

    stage: str
    input_path: Path
    locations: tuple[Path, ...]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""


@runtime_checkable
class StageInvoker(Protocol):
    """Run one generator stage."""

    def invoke(
        self, stage: StageConfig, input_path: Path, intermediate_dirs: Sequence[Path]
    ) -> StageOutcome:
        """Run ``stage`` on ``input_path`` writing into ``intermediate_dirs``.

        Report stages receive their target file instead of a directory.

        Raises
        ------
        ProcessorError
            If the stage cannot be run or reports failure.
        """
        ...


def build_arguments(
    stage: StageConfig, input_path: Path, intermediate_dirs: Sequence[Path]
) -> list[str]:
    """Return the argument list for one invocation of ``stage``.

    Pass-through arguments that set one of the stage's output options are
    dropped; each output option is then set to its intermediate location, and
    the absolute input path comes last.

    Parameters
    ----------
    stage : StageConfig
        Stage being invoked.
    input_path : Path
        Grammar (or next-stage input) to process.
    intermediate_dirs : Sequence[Path]
        One location per declared output, in declaration order.

    Returns
    -------
    list[str]
        Arguments following the stage command.

    Raises
    ------
    ValueError
        If the number of locations differs from the number of outputs.

    Examples
    --------
    >>> from gramforge.config import StageConfig, StageOutput
    >>> from gramforge.goals import StageRole
    >>> stage = StageConfig(
    ...     "javacc", StageRole.GENERATOR, ("javacc",),
    ...     arguments=("-STATIC=false", "-OUTPUT_DIRECTORY=elsewhere"),
    ...     outputs=(StageOutput("-OUTPUT_DIRECTORY", Path("/out"), "javacc"),),
    ... )
    >>> build_arguments(stage, Path("/src/Calc.jj"), [Path("/tmp/javacc-1")])
    ['-STATIC=false', '-OUTPUT_DIRECTORY="/tmp/javacc-1"', '/src/Calc.jj']
    """
    patterns = [option_pattern(option) for option in stage.output_options]
    kept = [
        argument
        for argument in stage.arguments
        if not any(pattern.match(argument.strip()) for pattern in patterns)
    ]
    overrides = [
        f'{output.option}="{location}"'
        for output, location in zip(stage.outputs, intermediate_dirs, strict=True)
    ]
    return [*kept, *overrides, str(input_path.absolute())]


def declared_output(
    stage: StageConfig, unit: Unit, intermediate_dirs: Sequence[Path]
) -> Path | None:
    """Return the file ``stage`` is expected to produce for ``unit``.

    The name follows from the unit's metadata, not from scanning the output:
    a preprocessor writes ``<stem><generator suffix>``, a generator writes the
    unit's main artifact, both into the stage's primary location, and a report
    stage writes its target file.
    """
    if len(intermediate_dirs) != len(stage.outputs) or not stage.outputs:
        return None
    primary = intermediate_dirs[stage.primary_index]
    if stage.role is StageRole.PREPROCESSOR:
        stem = PurePosixPath(unit.relative_path).stem
        return primary / f"{stem}{unit.generator_suffix}"
    if stage.role is StageRole.REPORT:
        return primary
    if unit.language is None:
        return None
    return primary / f"{unit.unit_name}{unit.language.extension}"


@dataclass(slots=True)
class ExternalToolInvoker:
    """Run stages as subprocesses through the shared :class:`ProcessRunner`.

    Parameters
    ----------
    runner : ProcessRunner | None, optional
        Runner to use; the process-wide runner when omitted.
    cwd : Path | None, optional
        Working directory of the generator process.
    """

    runner: ProcessRunner | None = None
    cwd: Path | None = None

    def invoke(
        self, stage: StageConfig, input_path: Path, intermediate_dirs: Sequence[Path]
    ) -> StageOutcome:
        """Run ``stage`` and map every failure to :class:`ProcessorError`.

        Raises
        ------
        ProcessorError
            If the executable cannot be run, times out or exits non-zero.
        """
        locations = tuple(intermediate_dirs)
        for location, output in zip(locations, stage.outputs, strict=True):
            if stage.role is not StageRole.REPORT:
                location.mkdir(parents=True, exist_ok=True)
            else:
                location.parent.mkdir(parents=True, exist_ok=True)
            LOGGER.debug(
                "Stage '%s' writes %s into '%s'",
                stage.name,
                output.option,
                location,
                extra={"operation": "stage", "stage": stage.name},
            )
        command = (*stage.command, *build_arguments(stage, input_path, locations))
        runner = self.runner or get_process_runner()
        LOGGER.debug(
            "Running processor '%s' on '%s'",
            stage.name,
            input_path,
            extra={"operation": "stage", "stage": stage.name, "command": list(command)},
        )
        try:
            result = runner.run(
                command, stage=stage.name, cwd=self.cwd, timeout=stage.timeout_seconds
            )
        except ToolExecutionError as exc:
            message = f"Failed to execute processor '{stage.name}': {exc}"
            raise ProcessorError(
                message, stage=stage.name, path=input_path, cause=exc, returncode=exc.returncode
            ) from exc

        if result.stdout:
            LOGGER.debug(
                result.stdout.rstrip(),
                extra={"operation": "stage", "stage": stage.name, "stream": "stdout"},
            )
        if result.returncode != 0:
            if result.stderr:
                LOGGER.error(
                    result.stderr.rstrip(),
                    extra={"operation": "stage", "stage": stage.name, "stream": "stderr"},
                )
            message = f"Processor '{stage.name}' reported exit code '{result.returncode}'"
            raise ProcessorError(
                message, stage=stage.name, path=input_path, returncode=result.returncode
            )
        return StageOutcome(
            stage=stage.name,
            input_path=input_path,
            locations=locations,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
