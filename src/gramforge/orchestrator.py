"""Run orchestration: scan, evaluate, process and summarise one execution.

:class:`Orchestrator` wires the components together for a single
:class:`~gramforge.config.RunConfig`:

1. honour the skip flag;
2. validate the configuration under the configuration error policy;
3. scan the source roots and evaluate each unit under the metadata policy;
4. process the stale units under the processor policy, sequentially or on a
   thread pool;
5. log the summary and apply the end-of-batch decisions.
"""

from __future__ import annotations

from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from gramforge.config import validate_run_config
from gramforge.errors import (
    BatchFailedError,
    ConfigurationError,
    ErrorClass,
    MetadataError,
    ProcessorError,
)
from gramforge.logging import get_logger
from gramforge.metadata import RegexMarkerExtractor, UnitReader
from gramforge.metrics import UNITS_TOTAL
from gramforge.pipeline import PipelineRunner
from gramforge.policy import EscalationTracker, handle_configuration_error
from gramforge.reconcile import OwnedLocations, Reconciler
from gramforge.report import ReportRunner, write_report_index
from gramforge.scanner import scan_source_roots
from gramforge.staleness import ArtifactProbe, DependencyTimestamps, StalenessEvaluator
from gramforge.stages import ExternalToolInvoker

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from gramforge.config import RunConfig
    from gramforge.errors import GramforgeError
    from gramforge.metadata import MarkerExtractor, Unit
    from gramforge.report import ReportLink
    from gramforge.staleness import BuildDecision
    from gramforge.stages import StageInvoker

__all__ = ["Orchestrator", "RunResult", "RunStatus", "run_goal"]

LOGGER = get_logger(__name__)


class RunStatus(StrEnum):
    """Overall outcome of one execution."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class RunResult:
    """Summary of one execution.

    Attributes
    ----------
    goal : str
        Goal that ran.
    status : RunStatus
        Overall outcome.
    processed : int
        Units processed successfully.
    failed : int
        Units whose processing failed.
    decisions : tuple[BuildDecision, ...]
        Staleness decisions, including current units.
    failures : tuple[GramforgeError, ...]
        Errors recorded during the run.
    """

    goal: str
    status: RunStatus
    processed: int = 0
    failed: int = 0
    decisions: tuple[BuildDecision, ...] = ()
    failures: tuple[GramforgeError, ...] = ()

    @property
    def stale(self) -> int:
        """Number of units found stale."""
        return sum(1 for decision in self.decisions if decision.stale)

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-friendly summary."""
        return {
            "goal": self.goal,
            "status": self.status.value,
            "processed": self.processed,
            "failed": self.failed,
            "stale": self.stale,
            "decisions": [decision.as_dict() for decision in self.decisions],
            "failures": [
                {"code": failure.code.value, "message": failure.message, **failure.context}
                for failure in self.failures
            ],
        }


@dataclass(slots=True)
class Orchestrator:
    """Drive one execution of a goal.

    Parameters
    ----------
    config : RunConfig
        Run configuration; validated at the start of :meth:`run`.
    invoker : StageInvoker, optional
        Stage runner; external subprocesses by default.
    extractor : MarkerExtractor, optional
        Marker extraction strategy for grammar text.
    """

    config: RunConfig
    invoker: StageInvoker = field(default_factory=ExternalToolInvoker)
    extractor: MarkerExtractor = field(default_factory=RegexMarkerExtractor)

    def run(self) -> RunResult:
        """Execute the goal.

        Returns
        -------
        RunResult
            Outcome of the execution. ``SKIPPED`` when the skip flag is set or
            a configuration error is tolerated.

        Raises
        ------
        ConfigurationError
            If the configuration is invalid and configuration errors abort.
        MetadataError, ProcessorError
            The first failure of a class whose mode is ``first``.
        BatchFailedError
            At the end of a batch under ``last`` with recorded failures; its
            ``result`` holds the partial :class:`RunResult`.
        """
        if self.config.skip:
            LOGGER.info("Skipping processing as requested", extra={"operation": "run"})
            return RunResult(self.config.goal, RunStatus.SKIPPED)

        try:
            config = validate_run_config(self.config)
        except ConfigurationError as exc:
            handle_configuration_error(
                exc, abort=self.config.escalation.abort_on_configuration_error, logger=LOGGER
            )
            return RunResult(self.config.goal, RunStatus.SKIPPED, failures=(exc,))

        decisions, metadata_failures = self.evaluate(config)
        if not decisions and not metadata_failures:
            LOGGER.info("No grammars to process", extra={"operation": "run"})
            return RunResult(config.goal, RunStatus.SUCCESS)

        work = [decision.unit for decision in decisions if decision.stale]
        if not work:
            LOGGER.info("Skipping - all grammars are up to date", extra={"operation": "run"})
            return RunResult(
                config.goal,
                RunStatus.SUCCESS,
                decisions=tuple(decisions),
                failures=metadata_failures,
            )

        return self.process(config, work, decisions, metadata_failures)

    def evaluate(
        self, config: RunConfig
    ) -> tuple[list[BuildDecision], tuple[GramforgeError, ...]]:
        """Scan the source roots and decide which units are stale.

        Metadata errors are governed by the metadata escalation mode: under
        ``last`` the run ends with :class:`BatchFailedError` once every
        candidate has been read.

        Returns
        -------
        tuple[list[BuildDecision], tuple[GramforgeError, ...]]
            Decisions for readable units and the metadata errors tolerated.
        """
        reader = self._reader(config)
        candidates = scan_source_roots(
            config.source_directories,
            includes=config.includes,
            excludes=config.excludes,
            optional=config.optional_sources,
        )
        evaluator = StalenessEvaluator(
            slack_ms=-1 if config.report else config.timestamp_delta_ms,
            dependency_ms=self._dependency_ms(config),
        )
        tracker = EscalationTracker(ErrorClass.METADATA, config.escalation.metadata, LOGGER)
        decisions: list[BuildDecision] = []
        for source_root, relative_path in candidates:
            try:
                unit = reader.read(source_root, relative_path)
            except MetadataError as exc:
                tracker.record(exc)
                continue
            decision = evaluator.evaluate(unit, self._probes(config, unit))
            UNITS_TOTAL.labels(decision=decision.verdict.value).inc()
            decisions.append(decision)
        try:
            tracker.finalize()
        except BatchFailedError as exc:
            exc.result = RunResult(
                config.goal,
                RunStatus.FAILED,
                decisions=tuple(decisions),
                failures=exc.failures,
            )
            raise
        return decisions, tracker.failures

    def process(
        self,
        config: RunConfig,
        work: Sequence[Unit],
        decisions: Sequence[BuildDecision],
        prior_failures: Sequence[GramforgeError] = (),
    ) -> RunResult:
        """Process the stale units under the processor escalation mode.

        Returns
        -------
        RunResult
            Counts and failures; ``SUCCESS`` unless a batch error is raised.
        """
        tracker = EscalationTracker(ErrorClass.PROCESSOR, config.escalation.processor, LOGGER)
        outcomes: list[bool] = []
        links: list[ReportLink] = []

        if config.report:
            runner = ReportRunner(config, self.invoker)

            def handle(unit: Unit) -> None:
                links.append(runner.generate(unit))

        else:
            pipeline = self._pipeline(config)

            def handle(unit: Unit) -> None:
                pipeline.process(unit)

        def attempt(unit: Unit) -> None:
            try:
                handle(unit)
            except ProcessorError as exc:
                outcomes.append(False)
                tracker.record(exc)
            else:
                outcomes.append(True)

        try:
            self._dispatch(config, work, attempt)
        finally:
            processed = outcomes.count(True)
            failed = outcomes.count(False)
            LOGGER.info(
                "Processed %d grammar(s) successfully and %d with errors",
                processed,
                failed,
                extra={"operation": "run", "processed": processed, "failed": failed},
            )

        if config.report:
            write_report_index(config.stages[0].primary_output.directory, links)

        failures = (*prior_failures, *tracker.failures)
        try:
            tracker.finalize()
        except BatchFailedError as exc:
            exc.result = RunResult(
                config.goal,
                RunStatus.FAILED,
                processed=processed,
                failed=failed,
                decisions=tuple(decisions),
                failures=failures,
            )
            raise
        return RunResult(
            config.goal,
            RunStatus.SUCCESS,
            processed=processed,
            failed=failed,
            decisions=tuple(decisions),
            failures=failures,
        )

    @staticmethod
    def _dispatch(config: RunConfig, work: Sequence[Unit], attempt: Callable[[Unit], None]) -> None:
        if config.max_workers <= 1 or len(work) <= 1:
            for unit in work:
                attempt(unit)
            return
        with ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="gramforge"
        ) as executor:
            futures = [executor.submit(attempt, unit) for unit in work]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            for future in done:
                exc = future.exception()
                if exc is not None:
                    executor.shutdown(wait=True, cancel_futures=True)
                    raise exc

    def _reader(self, config: RunConfig) -> UnitReader:
        return UnitReader(
            language=None if config.report else config.language,
            encoding=config.grammar_encoding,
            extractor=self.extractor,
            generator_suffix=config.generator_suffix,
        )

    def _pipeline(self, config: RunConfig) -> PipelineRunner:
        language = config.language
        reconciler = Reconciler(
            owned=OwnedLocations.from_config(config),
            extensions=language.extensions if language is not None else (),
            generator_suffix=config.generator_suffix,
        )
        return PipelineRunner(
            config=config,
            invoker=self.invoker,
            reconciler=reconciler,
            reader=self._reader(config),
        )

    @staticmethod
    def _dependency_ms(config: RunConfig) -> int:
        if config.report or config.timestamp_delta_ms < 0:
            return 0
        if not config.dependency_path:
            LOGGER.debug(
                "No dependency path configured; generator dependencies not checked",
                extra={"operation": "evaluate"},
            )
            return 0
        lookup = DependencyTimestamps(search_path=list(config.dependency_path))
        return lookup.latest(config.dependency_resources)

    @staticmethod
    def _probes(config: RunConfig, unit: Unit) -> list[ArtifactProbe]:
        first = config.stages[0]
        directory = first.primary_output.directory
        probes = [ArtifactProbe(directory, unit.main_artifact)]
        if len(config.stages) == 2:
            derived = unit.derive_next_stage(directory)
            second = config.stages[1]
            probes.append(ArtifactProbe(second.primary_output.directory, derived.main_artifact))
        return probes


def run_goal(
    config: RunConfig,
    *,
    invoker: StageInvoker | None = None,
    extractor: MarkerExtractor | None = None,
) -> RunResult:
    """Run ``config`` with the default collaborators unless overridden."""
    orchestrator = Orchestrator(
        config,
        invoker=invoker if invoker is not None else ExternalToolInvoker(cwd=config.project_root),
        extractor=extractor if extractor is not None else RegexMarkerExtractor(),
    )
    return orchestrator.run()
