"""Tests for run configuration loading and validation."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from gramforge.config import (
    StageConfig,
    check_consistency,
    find_option_value,
    load_run_config,
    select_config_path,
    validate_run_config,
)
from gramforge.errors import ConfigurationError
from gramforge.goals import StageRole
from gramforge.languages import CPP, JAVA
from gramforge.policy import EscalationMode
from gramforge.settings import load_settings
from tests.helpers import assert_frozen_attribute

if TYPE_CHECKING:
    from collections.abc import Callable

    from gramforge.config import RunConfig


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "GRAMFORGE_CONFIG",
        "GRAMFORGE_TIMESTAMP_DELTA_MS",
        "GRAMFORGE_FAIL_ON_PROCESSOR_ERROR",
        "GRAMFORGE_MAX_WORKERS",
        "GRAMFORGE_GRAMMAR_ENCODING",
    ):
        monkeypatch.delenv(name, raising=False)


def _pyproject(root: Path, body: str) -> Path:
    path = root / "pyproject.toml"
    path.write_text(f'[project]\nname = "demo"\n\n{body}', encoding="utf-8")
    return path


def _stage(name: str, *arguments: str) -> StageConfig:
    return StageConfig(name=name, role=StageRole.GENERATOR, command=(name,), arguments=arguments)


class TestFindOptionValue:
    """Option lookup in pass-through arguments."""

    def test_equals_and_colon_forms(self) -> None:
        """Both separators are accepted and quotes are stripped."""
        assert find_option_value(["-CODE_GENERATOR=Java"], "-CODE_GENERATOR") == "Java"
        assert find_option_value(['-code_generator:"C++"'], "-CODE_GENERATOR") == "C++"

    def test_absent_option(self) -> None:
        """Other options do not match."""
        assert find_option_value(["-STATIC=false"], "-CODE_GENERATOR") is None


class TestLoadRunConfig:
    """Building a run configuration from presets, files and overrides."""

    def test_defaults_for_single_stage_goal(self, tmp_path: Path) -> None:
        """Without a project file the goal preset applies."""
        config = load_run_config("javacc", project_root=tmp_path, env={})

        assert config.goal == "javacc"
        assert config.source_directories == (tmp_path.resolve() / "src/main/javacc",)
        assert config.includes == ("**/*.jj",)
        assert config.language is JAVA
        assert config.escalation.processor is EscalationMode.FIRST
        stage = config.first_stage
        assert stage.name == "javacc"
        assert stage.output_directories == (
            tmp_path.resolve() / "target" / "generated-sources" / "javacc",
        )
        assert not stage.copy_annotated

    def test_two_stage_goal_chains_preprocessor(self, tmp_path: Path) -> None:
        """The preprocessor copies its annotated output; the generator does not."""
        config = load_run_config("jtb-javacc", project_root=tmp_path, env={})

        names = [stage.name for stage in config.stages]
        assert names == ["jtb", "javacc"]
        jtb, javacc = config.stages
        assert jtb.copy_annotated
        assert not javacc.copy_annotated
        assert [out.option for out in jtb.outputs] == [
            "-JTB_OUTPUT_DIRECTORY",
            "-OUTPUT_DIRECTORY",
        ]
        assert jtb.primary_output.option == "-OUTPUT_DIRECTORY"

    def test_project_file_values(self, tmp_path: Path) -> None:
        """``[tool.gramforge]`` and its goal table configure the run."""
        _pyproject(
            tmp_path,
            "[tool.gramforge]\n"
            'grammar_encoding = "UTF-8"\n'
            "timestamp_delta_ms = 250\n"
            'fail_on_processor_error = "last"\n'
            "\n"
            "[tool.gramforge.javacc]\n"
            'source_directory = "grammars"\n'
            'output_directory = "out/parsers"\n'
            'arguments = ["-STATIC=false", "-CODE_GENERATOR=C++"]\n'
            'excludes = ["**/Old*.jj"]\n',
        )

        config = load_run_config("javacc", project_root=tmp_path, env={})

        root = tmp_path.resolve()
        assert config.source_directories == (root / "grammars",)
        assert config.first_stage.output_directories == (root / "out" / "parsers",)
        assert config.first_stage.arguments == ("-STATIC=false", "-CODE_GENERATOR=C++")
        assert config.language is CPP
        assert config.grammar_encoding == "UTF-8"
        assert config.timestamp_delta_ms == 250
        assert config.escalation.processor is EscalationMode.LAST
        assert config.excludes == ("**/Old*.jj",)

    def test_precedence_cli_over_environment_over_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Command-line values beat environment variables, which beat the file."""
        _pyproject(tmp_path, "[tool.gramforge]\ntimestamp_delta_ms = 10\nmax_workers = 2\n")
        monkeypatch.setenv("GRAMFORGE_TIMESTAMP_DELTA_MS", "20")
        monkeypatch.setenv("GRAMFORGE_MAX_WORKERS", "3")

        config = load_run_config(
            "javacc", project_root=tmp_path, env={}, overrides={"timestamp_delta_ms": 30}
        )

        assert config.timestamp_delta_ms == 30
        assert config.max_workers == 3

    def test_standalone_config_file(self, tmp_path: Path) -> None:
        """A ``gramforge.toml`` is read without the ``tool`` prefix."""
        (tmp_path / "gramforge.toml").write_text(
            "keep_intermediate_directory = true\n", encoding="utf-8"
        )

        config = load_run_config("javacc", project_root=tmp_path, env={})

        assert config.keep_intermediate_directory

    def test_unknown_code_generator_warns(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """An unsupported generator leaves the language unknown."""
        caplog.set_level("WARNING", logger="gramforge.config")

        config = load_run_config(
            "javacc",
            project_root=tmp_path,
            env={},
            overrides={"arguments": ["-CODE_GENERATOR=Cobol"]},
        )

        assert config.language is None
        assert "Unsupported code generator 'Cobol'" in caplog.text

    def test_report_goal_roots_are_optional(self, tmp_path: Path) -> None:
        """Documentation reports tolerate missing default roots."""
        config = load_run_config("jjdoc", project_root=tmp_path, env={})

        assert config.report
        assert config.optional_sources
        assert len(config.source_directories) == 3

    def test_dependency_resources_use_language_directory(self, tmp_path: Path) -> None:
        """Resource templates are expanded with the language's sub-directory."""
        config = load_run_config("javacc", project_root=tmp_path, env={})

        assert "templates/java" in config.dependency_resources

    def test_unknown_goal(self, tmp_path: Path) -> None:
        """Only the built-in goals exist."""
        with pytest.raises(ConfigurationError, match="Unknown goal 'antlr'"):
            load_run_config("antlr", project_root=tmp_path, env={})

    def test_invalid_settings_value(self, tmp_path: Path) -> None:
        """Validation failures name the offending field."""
        _pyproject(tmp_path, "[tool.gramforge]\nmax_workers = 0\n")

        with pytest.raises(ConfigurationError, match="max_workers"):
            load_run_config("javacc", project_root=tmp_path, env={})

    def test_invalid_generator_suffix(self, tmp_path: Path) -> None:
        """The generator suffix must look like a file suffix."""
        with pytest.raises(ConfigurationError, match="generator_suffix"):
            load_run_config(
                "javacc", project_root=tmp_path, env={}, overrides={"generator_suffix": "jj"}
            )

    def test_config_is_frozen(self, tmp_path: Path) -> None:
        """The run configuration cannot change during a run."""
        config = load_run_config("javacc", project_root=tmp_path, env={})
        assert_frozen_attribute(config, "timestamp_delta_ms", 5)


class TestSelectConfigPath:
    """Project file selection precedence."""

    def test_cli_path_wins(self, tmp_path: Path) -> None:
        """An explicit path is used even when others exist."""
        explicit = tmp_path / "ci.toml"
        explicit.write_text("", encoding="utf-8")
        (tmp_path / "gramforge.toml").write_text("", encoding="utf-8")

        selection = select_config_path(
            tmp_path, override=Path("ci.toml"), env={"GRAMFORGE_CONFIG": "other.toml"}
        )

        assert selection.path == explicit
        assert selection.source == "cli"

    def test_environment_path(self, tmp_path: Path) -> None:
        """``GRAMFORGE_CONFIG`` is used when no path is given."""
        env_file = tmp_path / "env.toml"
        env_file.write_text("", encoding="utf-8")

        selection = select_config_path(tmp_path, env={"GRAMFORGE_CONFIG": str(env_file)})

        assert selection == type(selection)(env_file, "env")

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        """A selected file that does not exist is a configuration error."""
        with pytest.raises(ConfigurationError, match="does not exist"):
            select_config_path(tmp_path, override=Path("missing.toml"), env={})

    def test_nothing_found(self, tmp_path: Path) -> None:
        """Defaults apply when no project file exists."""
        assert select_config_path(tmp_path, env={}).path is None


class TestValidateRunConfig:
    """Run-wide validation."""

    def test_missing_source_directory(
        self, make_config: Callable[..., RunConfig], project: Path
    ) -> None:
        """A required source root must exist."""
        config = make_config(source_directories=(project / "missing",))

        with pytest.raises(ConfigurationError, match="does not exist"):
            validate_run_config(config)

    def test_output_directory_that_is_a_file(
        self, make_config: Callable[..., RunConfig], project: Path
    ) -> None:
        """An output location occupied by a file is rejected."""
        blocker = project / "target" / "out"
        blocker.parent.mkdir(parents=True)
        blocker.write_text("", encoding="utf-8")
        config = make_config()
        stage = config.first_stage
        config = replace(
            config,
            stages=(replace(stage, outputs=(replace(stage.outputs[0], directory=blocker),)),),
        )

        with pytest.raises(ConfigurationError, match="is an existing file"):
            validate_run_config(config)

    def test_negative_delta_is_logged(
        self, make_config: Callable[..., RunConfig], caplog: pytest.LogCaptureFixture
    ) -> None:
        """Forced regeneration is announced."""
        caplog.set_level("INFO", logger="gramforge.config")

        validate_run_config(make_config(timestamp_delta_ms=-1))

        assert "negative timestampDeltaMs '-1'" in caplog.text

    def test_platform_encoding_warning(
        self, make_config: Callable[..., RunConfig], caplog: pytest.LogCaptureFixture
    ) -> None:
        """An unset encoding makes the build platform dependent."""
        caplog.set_level("WARNING", logger="gramforge.config")

        validate_run_config(make_config(grammar_encoding=None))

        assert "platform default encoding" in caplog.text


class TestCheckConsistency:
    """Agreement between chained stages."""

    def test_matching_explicit_values(self) -> None:
        """Equal selections are consistent regardless of case."""
        check_consistency(
            _stage("jjtree", "-GRAMMAR_ENCODING=UTF-8", "-CODE_GENERATOR=Java"),
            _stage("javacc", "-GRAMMAR_ENCODING=utf-8", "-CODE_GENERATOR=java"),
        )

    def test_second_stage_matching_default(self) -> None:
        """An explicit default on one side only is consistent."""
        check_consistency(_stage("jjtree"), _stage("javacc", "-CODE_GENERATOR=Java"))

    def test_mismatch_is_reported(self, caplog: pytest.LogCaptureFixture) -> None:
        """Every mismatch is logged before the run is rejected."""
        caplog.set_level("WARNING", logger="gramforge.config")

        with pytest.raises(ConfigurationError, match="Inconsistent option"):
            check_consistency(
                _stage("jjtree", "-GRAMMAR_ENCODING=UTF-8"),
                _stage("javacc", "-GRAMMAR_ENCODING=latin1", "-CODE_GENERATOR=C++"),
            )

        assert "Grammar file encodings are inconsistent" in caplog.text
        assert "Languages are inconsistent" in caplog.text


def test_load_settings_ignores_unknown_keys() -> None:
    """Project-file keys that are not settings are left to the loader."""
    settings = load_settings({"source_directory": "grammars", "timestamp_delta_ms": 5})
    assert settings.timestamp_delta_ms == 5
