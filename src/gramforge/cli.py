"""Command line entry point: one command per goal.

Each command loads the run configuration (project file, ``GRAMFORGE_*``
environment variables and the options given here, in increasing order of
precedence), runs the goal and prints a one-line JSON summary on stdout.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Final

import typer

from gramforge import __version__
from gramforge.config import load_run_config
from gramforge.errors import (
    BatchFailedError,
    ConfigurationError,
    GramforgeError,
    MetadataError,
    ProcessorError,
)
from gramforge.failure_summary import FailureSummaryRenderer
from gramforge.goals import GOALS
from gramforge.logging import get_logger, setup_logging, with_fields
from gramforge.orchestrator import RunResult, RunStatus, run_goal
from gramforge.policy import handle_configuration_error
from gramforge.settings import load_settings

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = ["ExitStatus", "app", "main"]

LOGGER = get_logger(__name__)

GOAL_HELP: Final[dict[str, str]] = {
    "javacc": "Generate parsers from .jj grammars.",
    "jjtree-javacc": "Preprocess .jjt grammars with jjtree, then generate parsers.",
    "jtb": "Preprocess .jtb grammars with jtb.",
    "jtb-javacc": "Preprocess .jtb grammars with jtb, then generate parsers.",
    "jjdoc": "Generate grammar documentation reports.",
}

app = typer.Typer(
    help=f"Incremental grammar code generation ({__version__}).",
    no_args_is_help=True,
    add_completion=False,
)


class ExitStatus(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    FAILURE = 1
    CONFIGURATION = 2


@dataclass(slots=True, frozen=True)
class CommandOptions:
    """Options shared by every goal command."""

    project_root: Path
    config: Path | None = None
    source_directories: tuple[Path, ...] = ()
    includes: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    arguments: tuple[str, ...] = ()
    timestamp_delta_ms: int | None = None
    keep_intermediate: bool = False
    skip: bool = False
    fail_on_grammar_error: str | None = None
    fail_on_processor_error: str | None = None
    continue_on_config_error: bool = False
    max_workers: int | None = None
    log_level: str | None = None

    def overrides(self) -> dict[str, object]:
        """Return the values that override the project file and environment."""
        values: dict[str, object] = {
            "timestamp_delta_ms": self.timestamp_delta_ms,
            "fail_on_grammar_error": self.fail_on_grammar_error,
            "fail_on_processor_error": self.fail_on_processor_error,
            "max_workers": self.max_workers,
            "log_level": self.log_level,
        }
        if self.source_directories:
            values["source_directories"] = [str(path) for path in self.source_directories]
        if self.includes:
            values["includes"] = list(self.includes)
        if self.excludes:
            values["excludes"] = list(self.excludes)
        if self.arguments:
            values["arguments"] = list(self.arguments)
        if self.keep_intermediate:
            values["keep_intermediate_directory"] = True
        if self.skip:
            values["skip"] = True
        if self.continue_on_config_error:
            values["fail_on_plugin_error"] = False
        return {key: value for key, value in values.items() if value is not None}


def _emit(result: RunResult | None, *, goal: str, status: ExitStatus) -> None:
    payload: dict[str, object] = (
        result.as_dict() if result is not None else {"goal": goal, "status": "failed"}
    )
    payload["exit_status"] = int(status)
    typer.echo(json.dumps(payload, default=str))


def execute(goal: str, options: CommandOptions) -> ExitStatus:
    """Run ``goal`` with ``options`` and return the exit status.

    Parameters
    ----------
    goal : str
        Goal name.
    options : CommandOptions
        Parsed command-line options.

    Returns
    -------
    ExitStatus
        ``SUCCESS`` for successful, ignored-failure and skipped executions,
        ``CONFIGURATION`` for configuration errors and ``FAILURE`` otherwise.
    """
    correlation_id = uuid.uuid4().hex
    with with_fields(LOGGER, correlation_id=correlation_id, goal=goal) as logger:
        renderer = FailureSummaryRenderer(logger)
        try:
            setup_logging(options.log_level or load_settings().log_level)
            try:
                config = load_run_config(
                    goal,
                    project_root=options.project_root,
                    config_path=options.config,
                    overrides=options.overrides(),
                )
            except ConfigurationError as exc:
                handle_configuration_error(
                    exc, abort=not options.continue_on_config_error, logger=logger
                )
                result = RunResult(goal, RunStatus.SKIPPED, failures=(exc,))
            else:
                result = run_goal(config)
        except ConfigurationError as exc:
            logger.critical(
                "Execution aborted on configuration error: %s",
                exc.message,
                extra={"operation": "configure", "error_code": exc.code.value},
            )
            _emit(None, goal=goal, status=ExitStatus.CONFIGURATION)
            return ExitStatus.CONFIGURATION
        except BatchFailedError as exc:
            logger.error(exc.message, extra={"operation": "run", "error_code": exc.code.value})
            renderer.render(exc.result, exc.failures)
            _emit(exc.result, goal=goal, status=ExitStatus.FAILURE)
            return ExitStatus.FAILURE
        except (MetadataError, ProcessorError) as exc:
            renderer.render(None, (exc,))
            _emit(None, goal=goal, status=ExitStatus.FAILURE)
            return ExitStatus.FAILURE
        except GramforgeError as exc:
            logger.error(exc.message, extra={"operation": "run", "error_code": exc.code.value})
            _emit(None, goal=goal, status=ExitStatus.FAILURE)
            return ExitStatus.FAILURE

        _emit(result, goal=goal, status=ExitStatus.SUCCESS)
        return ExitStatus.SUCCESS


def _goal_command(goal: str) -> Callable[..., None]:
    def command(
        project_root: Annotated[
            Path,
            typer.Option(
                "--project-root", "-C", help="Project base directory.", show_default=False
            ),
        ] = Path(),
        config: Annotated[
            Path | None,
            typer.Option("--config", help="Project file (gramforge.toml or pyproject.toml)."),
        ] = None,
        source_directory: Annotated[
            list[Path] | None,
            typer.Option("--source-directory", "-s", help="Grammar source root (repeatable)."),
        ] = None,
        include: Annotated[
            list[str] | None,
            typer.Option("--include", help="Include glob pattern (repeatable)."),
        ] = None,
        exclude: Annotated[
            list[str] | None,
            typer.Option("--exclude", help="Exclude glob pattern (repeatable)."),
        ] = None,
        arg: Annotated[
            list[str] | None,
            typer.Option("--arg", help="Argument passed through to the stages (repeatable)."),
        ] = None,
        timestamp_delta_ms: Annotated[
            int | None,
            typer.Option(
                "--timestamp-delta-ms",
                help="Staleness slack in milliseconds; negative always regenerates.",
            ),
        ] = None,
        keep_intermediate: Annotated[
            bool,
            typer.Option("--keep-intermediate", help="Keep intermediate directories."),
        ] = False,
        skip: Annotated[bool, typer.Option("--skip", help="Skip the execution.")] = False,
        fail_on_grammar_error: Annotated[
            str | None,
            typer.Option(
                "--fail-on-grammar-error", metavar="MODE", help="first, last or ignore."
            ),
        ] = None,
        fail_on_processor_error: Annotated[
            str | None,
            typer.Option(
                "--fail-on-processor-error", metavar="MODE", help="first, last or ignore."
            ),
        ] = None,
        continue_on_config_error: Annotated[
            bool,
            typer.Option(
                "--continue-on-config-error",
                help="Log configuration errors and skip the execution instead of failing.",
            ),
        ] = False,
        max_workers: Annotated[
            int | None,
            typer.Option("--max-workers", min=1, help="Grammars processed concurrently."),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", metavar="LEVEL", help="Logging threshold."),
        ] = None,
    ) -> None:
        options = CommandOptions(
            project_root=project_root,
            config=config,
            source_directories=tuple(source_directory or ()),
            includes=tuple(include or ()),
            excludes=tuple(exclude or ()),
            arguments=tuple(arg or ()),
            timestamp_delta_ms=timestamp_delta_ms,
            keep_intermediate=keep_intermediate,
            skip=skip,
            fail_on_grammar_error=fail_on_grammar_error,
            fail_on_processor_error=fail_on_processor_error,
            continue_on_config_error=continue_on_config_error,
            max_workers=max_workers,
            log_level=log_level,
        )
        status = execute(goal, options)
        if status is not ExitStatus.SUCCESS:
            raise typer.Exit(code=int(status))

    command.__name__ = goal.replace("-", "_")
    command.__doc__ = GOAL_HELP[goal]
    return command


for _goal in GOALS:
    app.command(name=_goal, help=GOAL_HELP[_goal])(_goal_command(_goal))


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover - manual execution entrypoint
    main()
