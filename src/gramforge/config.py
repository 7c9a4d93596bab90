"""Run configuration: immutable value objects and their loader.

A :class:`RunConfig` is built once per execution from the goal preset, the
project file (``[tool.gramforge]`` in ``pyproject.toml`` or a standalone
``gramforge.toml``), ``GRAMFORGE_*`` environment variables and command-line
overrides, in increasing order of precedence. Components receive the value
objects and never mutate them.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Final

from gramforge.errors import ConfigurationError
from gramforge.goals import GoalPreset, StageRole, get_goal
from gramforge.languages import DEFAULT_LANGUAGE, TargetLanguage, language_from_option
from gramforge.logging import get_logger
from gramforge.metadata import DEFAULT_GENERATOR_SUFFIX
from gramforge.policy import EscalationMode, EscalationSettings
from gramforge.settings import GramforgeSettings, load_settings

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

__all__ = [
    "CODE_GENERATOR_OPTION",
    "GRAMMAR_ENCODING_OPTION",
    "ConfigSelection",
    "RunConfig",
    "StageConfig",
    "StageOutput",
    "canonical_output_directory",
    "check_consistency",
    "find_option_value",
    "load_run_config",
    "select_config_path",
    "validate_run_config",
]

LOGGER = get_logger(__name__)

CODE_GENERATOR_OPTION: Final = "-CODE_GENERATOR"
GRAMMAR_ENCODING_OPTION: Final = "-GRAMMAR_ENCODING"
DEFAULT_CODE_GENERATOR: Final = DEFAULT_LANGUAGE.option_value
DEFAULT_BUILD_DIRECTORY: Final = "target"
CONFIG_ENV_VAR: Final = "GRAMFORGE_CONFIG"
DEFAULT_DEPENDENCY_RESOURCES: Final[tuple[str, ...]] = (
    "META-INF/maven/org.javacc/core",
    "META-INF/maven/org.javacc.generator/{sub_dir}",
    "templates/{sub_dir}",
)


def option_pattern(option: str) -> re.Pattern[str]:
    """Return the case-insensitive pattern matching ``OPTION=value`` or ``OPTION:value``."""
    return re.compile(rf"^{re.escape(option)}[=:]\"?(.*?)\"?$", re.IGNORECASE)


def find_option_value(arguments: Sequence[str], option: str) -> str | None:
    """Return the value ``arguments`` assign to ``option``, if any.

    Examples
    --------
    >>> find_option_value(['-STATIC=false', '-code_generator:"C++"'], "-CODE_GENERATOR")
    'C++'
    """
    pattern = option_pattern(option)
    for argument in arguments:
        match = pattern.match(argument.strip())
        if match:
            return match.group(1)
    return None


@dataclass(slots=True, frozen=True)
class StageOutput:
    """One output location of a stage.

    Attributes
    ----------
    option : str
        Stage option that receives the intermediate directory.
    directory : Path
        Final output directory generated files are merged into.
    intermediate_prefix : str
        Prefix of the run-private intermediate directory name.
    """

    option: str
    directory: Path
    intermediate_prefix: str


@dataclass(slots=True, frozen=True)
class StageConfig:
    """Immutable description of one generator stage invocation.

    Attributes
    ----------
    name : str
        Stage name used in logs, metrics and errors.
    role : StageRole
        Whether the stage preprocesses, generates or documents.
    command : tuple[str, ...]
        Executable followed by fixed leading arguments.
    arguments : tuple[str, ...]
        Pass-through options; output options are overridden at invocation.
    outputs : tuple[StageOutput, ...]
        Output locations, one intermediate directory each.
    copy_annotated : bool
        Also copy the annotated generator input (``*<generator suffix>``).
    timeout_seconds : float | None
        Timeout for the external invocation.
    """

    name: str
    role: StageRole
    command: tuple[str, ...]
    arguments: tuple[str, ...] = ()
    outputs: tuple[StageOutput, ...] = ()
    copy_annotated: bool = False
    timeout_seconds: float | None = None

    @property
    def output_options(self) -> tuple[str, ...]:
        """Options overridden with intermediate directories."""
        return tuple(output.option for output in self.outputs)

    @property
    def primary_index(self) -> int:
        """Index of the output receiving the stage's main artifact.

        A preprocessor writes the next-stage input through its last output
        option; other stages through their first.
        """
        return len(self.outputs) - 1 if self.role is StageRole.PREPROCESSOR else 0

    @property
    def primary_output(self) -> StageOutput:
        """Output receiving the stage's main artifact."""
        return self.outputs[self.primary_index]

    @property
    def output_directories(self) -> tuple[Path, ...]:
        """Final output directories, in option order."""
        return tuple(output.directory for output in self.outputs)

    @property
    def code_generator(self) -> str | None:
        """Explicit code-generator selection, if any."""
        return find_option_value(self.arguments, CODE_GENERATOR_OPTION)

    @property
    def grammar_encoding(self) -> str | None:
        """Explicit grammar encoding, if any."""
        return find_option_value(self.arguments, GRAMMAR_ENCODING_OPTION)


@dataclass(slots=True, frozen=True)
class RunConfig:
    """Everything one orchestration run needs, fixed for its duration.

    Attributes
    ----------
    goal : str
        Goal name.
    project_root : Path
        Base directory relative paths resolve against.
    build_directory : Path
        Build output tree; intermediate directories are created inside it.
    source_directories : tuple[Path, ...]
        Source roots to scan; the first is the primary source directory.
    includes, excludes : tuple[str, ...]
        Glob filters applied by the scanner.
    stages : tuple[StageConfig, ...]
        One or two stages run in order for each stale unit.
    language : TargetLanguage | None
        Target language; ``None`` when the generator selection is unknown.
    grammar_encoding : str | None
        Grammar text encoding; platform default when ``None``.
    generator_suffix : str
        Suffix of generator-stage inputs.
    timestamp_delta_ms : int
        Staleness slack in milliseconds; negative forces regeneration.
    keep_intermediate_directory : bool
        Keep intermediate directories instead of deleting them.
    skip : bool
        Skip the execution.
    escalation : EscalationSettings
        Error escalation modes.
    compile_source_roots : tuple[Path, ...]
        Declared source roots; those outside the build tree are owned by the user.
    dependency_path : tuple[Path, ...]
        Archives and directories searched for generator dependencies.
    dependency_resources : tuple[str, ...]
        Resource names whose newest timestamp invalidates generated output.
    max_workers : int
        Units processed concurrently.
    report : bool
        Report mode: optional roots, no staleness filtering.
    optional_sources : bool
        Missing source roots yield no candidates instead of an error.
    """

    goal: str
    project_root: Path
    build_directory: Path
    source_directories: tuple[Path, ...]
    includes: tuple[str, ...]
    stages: tuple[StageConfig, ...]
    excludes: tuple[str, ...] = ()
    language: TargetLanguage | None = DEFAULT_LANGUAGE
    grammar_encoding: str | None = None
    generator_suffix: str = DEFAULT_GENERATOR_SUFFIX
    timestamp_delta_ms: int = 0
    keep_intermediate_directory: bool = False
    skip: bool = False
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    compile_source_roots: tuple[Path, ...] = ()
    dependency_path: tuple[Path, ...] = ()
    dependency_resources: tuple[str, ...] = ()
    max_workers: int = 1
    report: bool = False
    optional_sources: bool = False

    @property
    def source_directory(self) -> Path:
        """Primary source directory."""
        return self.source_directories[0]

    @property
    def first_stage(self) -> StageConfig:
        """Stage the scanned units enter."""
        return self.stages[0]


@dataclass(slots=True, frozen=True)
class ConfigSelection:
    """Resolved project-file location and the source that selected it."""

    path: Path | None
    source: str


def select_config_path(
    project_root: Path,
    *,
    override: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> ConfigSelection:
    """Select the project file with precedence CLI > environment > default.

    Parameters
    ----------
    project_root : Path
        Project base directory.
    override : Path | None, optional
        Path given on the command line.
    env : Mapping[str, str] | None, optional
        Environment mapping; defaults to ``os.environ``.

    Returns
    -------
    ConfigSelection
        Chosen file (``None`` when nothing exists) and its origin.

    Raises
    ------
    ConfigurationError
        If an explicitly selected file does not exist.
    """
    environ = os.environ if env is None else env
    if override is not None:
        candidate = override if override.is_absolute() else project_root / override
        if not candidate.is_file():
            message = f"Configuration file '{candidate}' does not exist"
            raise ConfigurationError(message)
        return ConfigSelection(candidate, "cli")
    env_value = environ.get(CONFIG_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = project_root / candidate
        if not candidate.is_file():
            message = f"Configuration file '{candidate}' from {CONFIG_ENV_VAR} does not exist"
            raise ConfigurationError(message)
        return ConfigSelection(candidate, "env")
    for name in ("gramforge.toml", "pyproject.toml"):
        candidate = project_root / name
        if candidate.is_file():
            return ConfigSelection(candidate, "default")
    return ConfigSelection(None, "default")


def _load_table(selection: ConfigSelection) -> dict[str, object]:
    if selection.path is None:
        return {}
    try:
        with selection.path.open("rb") as handle:
            data = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        message = f"Failed to read configuration file '{selection.path}'"
        raise ConfigurationError(message, cause=exc) from exc
    if selection.path.name == "pyproject.toml":
        tool = data.get("tool", {})
        table = tool.get("gramforge", {}) if isinstance(tool, dict) else {}
    else:
        table = data.get("gramforge", data)
    if not isinstance(table, dict):
        message = f"[tool.gramforge] in '{selection.path}' must be a table"
        raise ConfigurationError(message)
    return table


def _as_strings(value: object, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ConfigurationError.with_details(field=key, issue="must be a string or list of strings")


def _resolve(base: Path, value: object, *, key: str) -> Path:
    if not isinstance(value, (str, os.PathLike)):
        raise ConfigurationError.with_details(field=key, issue="must be a path string")
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def _stage_value(values: Mapping[str, object], stage: str, key: str) -> object:
    specific = f"{stage}_{key}"
    if specific in values:
        return values[specific]
    return values.get(key)


def _build_stages(
    goal: GoalPreset,
    values: Mapping[str, object],
    *,
    build_directory: Path,
    project_root: Path,
    timeout: float | None,
) -> tuple[StageConfig, ...]:
    stages: list[StageConfig] = []
    for index, preset in enumerate(goal.stages):
        raw_command = _stage_value(values, preset.name, "executable") or preset.executable
        command = _as_strings(raw_command, key=f"{preset.name}_executable")
        arguments = _as_strings(
            _stage_value(values, preset.name, "arguments"), key=f"{preset.name}_arguments"
        )
        outputs: list[StageOutput] = []
        for position, output in enumerate(preset.outputs):
            configured = values.get(f"{preset.name}_output_directory")
            if position > 0:
                configured = values.get(f"{preset.name}_output_directory_{position + 1}")
            if configured is None and position == 0 and len(goal.stages) == 1:
                configured = values.get("output_directory")
            directory = (
                _resolve(project_root, configured, key=f"{preset.name}_output_directory")
                if configured is not None
                else build_directory / output.default_subdir
            )
            outputs.append(StageOutput(output.option, directory, output.intermediate_prefix))
        stages.append(
            StageConfig(
                name=preset.name,
                role=preset.role,
                command=command,
                arguments=arguments,
                outputs=tuple(outputs),
                copy_annotated=(index == 0 and preset.role is StageRole.PREPROCESSOR),
                timeout_seconds=timeout,
            )
        )
    return tuple(stages)


def load_run_config(
    goal_name: str,
    *,
    project_root: Path,
    config_path: Path | None = None,
    overrides: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
) -> RunConfig:
    """Build the :class:`RunConfig` for ``goal_name``.

    Precedence, highest first: ``overrides`` (command line), ``GRAMFORGE_*``
    environment variables, the goal table and general table of the project
    file, then the goal preset defaults.

    Parameters
    ----------
    goal_name : str
        Goal to configure.
    project_root : Path
        Project base directory.
    config_path : Path | None, optional
        Explicit project file.
    overrides : Mapping[str, object] | None, optional
        Command-line values; ``None`` entries are ignored.
    env : Mapping[str, str] | None, optional
        Environment mapping used to select the project file.

    Returns
    -------
    RunConfig
        Immutable run configuration. Paths are absolute but not yet validated;
        see :func:`validate_run_config`.

    Raises
    ------
    ConfigurationError
        If the goal is unknown, the project file is unreadable, or a value is invalid.
    """
    goal = get_goal(goal_name)
    root = project_root.expanduser().resolve()
    selection = select_config_path(root, override=config_path, env=env)
    table = _load_table(selection)
    goal_table = table.get(goal.name, {})
    if not isinstance(goal_table, dict):
        message = f"[tool.gramforge.{goal.name}] must be a table"
        raise ConfigurationError(message)
    values: dict[str, object] = {
        key: value for key, value in table.items() if not isinstance(value, dict)
    }
    values.update(goal_table)
    cli = {key: value for key, value in (overrides or {}).items() if value is not None}

    settings = load_settings(values)
    settings_updates = {key: cli[key] for key in cli if key in GramforgeSettings.model_fields}
    if settings_updates:
        settings = settings.model_copy(update=settings_updates)
    values.update({key: value for key, value in cli.items() if key not in settings_updates})
    LOGGER.debug(
        "Loaded configuration for goal '%s' from %s",
        goal.name,
        selection.path or "defaults",
        extra={"operation": "configure", "config_source": selection.source},
    )

    build_directory = _resolve(
        root, values.get("build_directory", DEFAULT_BUILD_DIRECTORY), key="build_directory"
    )
    stages = _build_stages(
        goal,
        values,
        build_directory=build_directory,
        project_root=root,
        timeout=settings.stage_timeout_seconds,
    )

    explicit_sources = values.get("source_directories") or values.get("source_directory")
    if explicit_sources is not None:
        sources = tuple(
            _resolve(root, item, key="source_directory")
            for item in _as_strings(explicit_sources, key="source_directory")
        )
        optional_sources = False
    else:
        sources = tuple(root / item for item in goal.source_directories)
        optional_sources = goal.report

    generator = stages[-1]
    code_generator = generator.code_generator or DEFAULT_CODE_GENERATOR
    language = language_from_option(code_generator)
    if language is None:
        LOGGER.warning(
            "Unsupported code generator '%s'; every grammar will be treated as stale",
            code_generator,
            extra={"operation": "configure"},
        )
    encoding = settings.grammar_encoding or generator.grammar_encoding

    compile_roots_value = values.get("compile_source_roots")
    if compile_roots_value is not None:
        compile_roots = tuple(
            _resolve(root, item, key="compile_source_roots")
            for item in _as_strings(compile_roots_value, key="compile_source_roots")
        )
    else:
        outputs = tuple(out for stage in stages for out in stage.output_directories)
        compile_roots = (*sources[:1], *outputs)

    dependency_path = tuple(
        _resolve(root, item, key="dependency_path")
        for item in _as_strings(values.get("dependency_path"), key="dependency_path")
    )
    resource_templates = _as_strings(values.get("dependency_resources"), key="dependency_resources")
    resources = resource_templates or DEFAULT_DEPENDENCY_RESOURCES
    sub_dir = language.sub_dir if language is not None else ""
    dependency_resources = tuple(
        name.format(sub_dir=sub_dir)
        for name in resources
        if sub_dir or "{sub_dir}" not in name
    )

    generator_suffix = values.get("generator_suffix", DEFAULT_GENERATOR_SUFFIX)
    if not isinstance(generator_suffix, str) or not generator_suffix.startswith("."):
        raise ConfigurationError.with_details(
            field="generator_suffix", issue="must be a suffix starting with '.'"
        )

    return RunConfig(
        goal=goal.name,
        project_root=root,
        build_directory=build_directory,
        source_directories=sources,
        includes=_as_strings(values.get("includes"), key="includes") or goal.includes,
        excludes=_as_strings(values.get("excludes"), key="excludes"),
        stages=stages,
        language=language,
        grammar_encoding=encoding,
        generator_suffix=generator_suffix,
        timestamp_delta_ms=settings.timestamp_delta_ms,
        keep_intermediate_directory=settings.keep_intermediate_directory,
        skip=settings.skip,
        escalation=EscalationSettings(
            metadata=EscalationMode.parse(
                settings.fail_on_grammar_error, parameter="fail_on_grammar_error"
            ),
            processor=EscalationMode.parse(
                settings.fail_on_processor_error, parameter="fail_on_processor_error"
            ),
            abort_on_configuration_error=settings.fail_on_plugin_error,
        ),
        compile_source_roots=compile_roots,
        dependency_path=dependency_path,
        dependency_resources=dependency_resources,
        max_workers=settings.max_workers,
        report=goal.report,
        optional_sources=optional_sources,
    )


def canonical_output_directory(directory: Path) -> Path:
    """Canonicalize an output directory, rejecting existing non-directories.

    Raises
    ------
    ConfigurationError
        If ``directory`` exists and is not a directory.
    """
    if directory.exists() and not directory.is_dir():
        message = f"Output directory '{directory}' is an existing file"
        raise ConfigurationError(message, context={"path": str(directory)})
    return directory.resolve()


def check_consistency(first: StageConfig, second: StageConfig) -> None:
    """Verify two chained stages agree on encoding and code generator.

    Explicit values are compared with each other, or with the default when
    only one side is explicit.

    Raises
    ------
    ConfigurationError
        If either selection disagrees.
    """
    has_error = False
    pairs = (
        ("Grammar file encodings", first.grammar_encoding, second.grammar_encoding, None),
        ("Languages", first.code_generator, second.code_generator, DEFAULT_CODE_GENERATOR),
    )
    for label, left, right, default in pairs:
        if left is not None:
            consistent = right is None or right.lower() == left.lower()
        else:
            consistent = right is None or (default is not None and right.lower() == default.lower())
        if not consistent:
            has_error = True
            LOGGER.warning(
                "%s are inconsistent: %s: '%s', %s: '%s'",
                label,
                first.name,
                left if left is not None else f"{default} (default)",
                second.name,
                right if right is not None else f"{default} (default)",
                extra={"operation": "configure"},
            )
    if has_error:
        message = "Inconsistent option(s)"
        raise ConfigurationError(message, context={"stages": [first.name, second.name]})


def validate_run_config(config: RunConfig) -> RunConfig:
    """Validate ``config`` and return it with canonical output directories.

    Parameters
    ----------
    config : RunConfig
        Configuration to validate.

    Returns
    -------
    RunConfig
        Copy whose stage output directories are canonical.

    Raises
    ------
    ConfigurationError
        If a required source directory is missing, an output path is an
        existing file, or chained stages are inconsistent.
    """
    if not config.stages:
        message = f"Goal '{config.goal}' has no stage configured"
        raise ConfigurationError(message)
    if not config.optional_sources:
        for directory in config.source_directories:
            if not directory.exists():
                message = f"sourceDirectory '{directory}' does not exist"
                raise ConfigurationError(message, context={"path": str(directory)})
            if not directory.is_dir():
                message = f"sourceDirectory '{directory}' is not a directory"
                raise ConfigurationError(message, context={"path": str(directory)})
    if config.timestamp_delta_ms < 0:
        LOGGER.info(
            "negative timestampDeltaMs '%d', so grammars will always be processed",
            config.timestamp_delta_ms,
            extra={"operation": "configure"},
        )
    if config.grammar_encoding is None and not config.report:
        LOGGER.warning(
            "File encoding for grammars has not been configured, "
            "using platform default encoding, i.e. build is platform dependent!",
            extra={"operation": "configure"},
        )
    if len(config.stages) == 2:
        check_consistency(config.stages[0], config.stages[1])

    stages = tuple(
        replace(
            stage,
            outputs=tuple(
                replace(output, directory=canonical_output_directory(output.directory))
                for output in stage.outputs
            ),
        )
        for stage in config.stages
    )
    return replace(
        config,
        stages=stages,
        build_directory=config.build_directory.resolve(),
        source_directories=tuple(path.resolve() for path in config.source_directories),
    )
