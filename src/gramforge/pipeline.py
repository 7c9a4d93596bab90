"""Run one or two generator stages for a unit and merge their output.

Each stage writes into fresh intermediate directories created under the
build directory. Once a stage has run, its intermediate output is reconciled
into the stage's output directories and the intermediate directories are
removed (or kept and logged, on request), whether or not a later step fails.

In a two-stage pipeline the preprocessor's reconciled output directory becomes
the source root of the generator stage, and the generator-stage unit is read
again from the preprocessor's output.
"""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from gramforge.errors import MetadataError, ProcessorError
from gramforge.logging import get_logger, with_fields
from gramforge.stages import declared_output

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gramforge.config import RunConfig, StageConfig
    from gramforge.metadata import Unit, UnitReader
    from gramforge.reconcile import Reconciler
    from gramforge.stages import StageInvoker, StageOutcome

__all__ = ["PipelineResult", "PipelineRunner", "StageRun"]

LOGGER = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class StageRun:
    """One reconciled stage run."""

    outcome: StageOutcome
    unit: Unit
    copied: int
    skipped: int


@dataclass(slots=True, frozen=True)
class PipelineResult:
    """Stage runs completed for one unit, in order."""

    unit: Unit
    runs: tuple[StageRun, ...] = ()

    @property
    def copied(self) -> int:
        """Files copied across all stages."""
        return sum(run.copied for run in self.runs)


@dataclass(slots=True)
class PipelineRunner:
    """Drive a unit through the configured stages.

    Parameters
    ----------
    config : RunConfig
        Validated run configuration.
    invoker : StageInvoker
        Runs individual stages.
    reconciler : Reconciler
        Merges intermediate output into output directories.
    reader : UnitReader
        Reads generator-stage units from preprocessor output.
    """

    config: RunConfig
    invoker: StageInvoker
    reconciler: Reconciler
    reader: UnitReader

    def process(self, unit: Unit) -> PipelineResult:
        """Run every configured stage on ``unit``.

        Raises
        ------
        ProcessorError
            If a stage fails, its declared output is missing, or a generated
            file cannot be copied. The error names ``unit``'s grammar.
        """
        stages = self.config.stages
        with with_fields(LOGGER, unit=unit.relative_path) as logger:
            logger.info(
                "Processing grammar '%s'", unit.source_path, extra={"operation": "stage"}
            )
            first_run = self.run_stage(stages[0], unit, copy_gen_files=True)
            if len(stages) == 1:
                return PipelineResult(unit, (first_run,))

            second = stages[1]
            next_unit = self._next_stage_unit(stages[0], unit)
            try:
                second_run = self.run_stage(second, next_unit, copy_gen_files=False)
            except ProcessorError as exc:
                raise ProcessorError(
                    exc.message,
                    stage=exc.stage,
                    path=unit.source_path,
                    cause=exc,
                    returncode=exc.returncode,
                ) from exc
            return PipelineResult(unit, (first_run, second_run))

    def run_stage(self, stage: StageConfig, unit: Unit, *, copy_gen_files: bool) -> StageRun:
        """Run ``stage`` on ``unit``, reconcile its output and tear down.

        Parameters
        ----------
        stage : StageConfig
            Stage to run.
        unit : Unit
            Unit whose source file is the stage input.
        copy_gen_files : bool
            Also copy the annotated generator input, and run the pass that
            merges files lying beside a grammar outside the owned locations.

        Returns
        -------
        StageRun
            Outcome and file counts.

        Raises
        ------
        ProcessorError
            If the stage fails, does not produce its declared output, or a
            file cannot be copied.
        """
        intermediate_dirs = self._create_intermediate_dirs(stage)
        try:
            outcome = self.invoker.invoke(stage, unit.source_path, intermediate_dirs)
            expected = declared_output(stage, unit, intermediate_dirs)
            if expected is not None and not expected.exists():
                message = f"Processor '{stage.name}' did not produce '{expected}'"
                raise ProcessorError(message, stage=stage.name, path=unit.source_path)

            copied = skipped = 0
            output_directories = stage.output_directories
            for intermediate, directory in zip(intermediate_dirs, output_directories, strict=True):
                report = self.reconciler.copy_output(
                    intermediate,
                    directory,
                    unit.output_sub_path,
                    output_directories=output_directories,
                    copy_annotated=copy_gen_files and stage.copy_annotated,
                    unit_path=unit.source_path,
                )
                copied += len(report.copied)
                skipped += len(report.skipped)

            if copy_gen_files and unit.source_root not in self.reconciler.owned:
                report = self.reconciler.copy_output(
                    unit.source_path.parent,
                    output_directories[0],
                    unit.output_sub_path,
                    output_directories=output_directories,
                    copy_annotated=False,
                    unit_path=unit.source_path,
                )
                copied += len(report.copied)
                skipped += len(report.skipped)
        finally:
            self._teardown(intermediate_dirs)
        return StageRun(outcome=outcome, unit=unit, copied=copied, skipped=skipped)

    def _next_stage_unit(self, stage: StageConfig, unit: Unit) -> Unit:
        relative = unit.next_stage_path()
        root = self.reconciler.locate_root(relative, stage.output_directories)
        if root is None:
            message = (
                f"Processor '{stage.name}' output '{relative}' not found in output directories"
            )
            raise ProcessorError(message, stage=stage.name, path=unit.source_path)
        try:
            next_unit = self.reader.read(root, relative)
        except MetadataError as exc:
            message = f"Failed to read '{relative}' produced by processor '{stage.name}'"
            raise ProcessorError(
                message, stage=stage.name, path=unit.source_path, cause=exc
            ) from exc
        LOGGER.debug(
            "Next stage input is '%s'",
            next_unit.source_path,
            extra={"operation": "stage", "stage": stage.name, "unit": unit.relative_path},
        )
        return next_unit

    def _create_intermediate_dirs(self, stage: StageConfig) -> list[Path]:
        base = self.config.build_directory
        base.mkdir(parents=True, exist_ok=True)
        return [
            Path(tempfile.mkdtemp(prefix=f"{output.intermediate_prefix}-", dir=base))
            for output in stage.outputs
        ]

    def _teardown(self, directories: Sequence[Path]) -> None:
        if self.config.keep_intermediate_directory:
            LOGGER.info(
                "Intermediate directory(ies) '%s' not deleted as requested",
                ", ".join(str(directory) for directory in directories),
                extra={"operation": "cleanup"},
            )
            return
        for directory in directories:
            try:
                shutil.rmtree(directory)
            except OSError as exc:
                LOGGER.warning(
                    "Failed to delete intermediate directory '%s': %s",
                    directory,
                    exc,
                    extra={"operation": "cleanup", "path": str(directory)},
                )
