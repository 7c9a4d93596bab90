"""Tests for stage argument construction and external invocation."""

from __future__ import annotations

import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from gramforge.config import StageConfig, StageOutput
from gramforge.errors import ProcessorError
from gramforge.goals import StageRole
from gramforge.metadata import Unit
from gramforge.process import (
    ProcessRunner,
    SanitisedEnvironment,
    get_process_runner,
    set_process_runner,
)
from gramforge.stages import ExternalToolInvoker, StageInvoker, build_arguments, declared_output
from tests.helpers import GEN, FakeInvoker, generator_stage, preprocessor_stage

if TYPE_CHECKING:
    from collections.abc import Mapping

# writes <UnitName>.gen into the directory given through -OUTPUT_DIRECTORY
FAKE_GENERATOR = """\
import pathlib, re, sys
options = dict(arg.split('=', 1) for arg in sys.argv[1:-1])
out = pathlib.Path(options['-OUTPUT_DIRECTORY'].strip('"'))
text = pathlib.Path(sys.argv[-1]).read_text(encoding='utf-8')
name = re.search(r'^PARSER_BEGIN\\((\\w+)\\)', text, re.M).group(1)
(out / (name + '.gen')).write_text('generated', encoding='utf-8')
"""


@dataclass(slots=True)
class RecordingEnvironment:
    """Environment policy counting builds and tagging the child process."""

    builds: int = 0

    def build(self, overrides: Mapping[str, str] | None) -> dict[str, str]:
        self.builds += 1
        return {**SanitisedEnvironment().build(overrides), "GRAMFORGE_STAGE": "recorded"}


def _two_output_stage() -> StageConfig:
    return StageConfig(
        name="jtb",
        role=StageRole.PREPROCESSOR,
        command=("jtb",),
        arguments=("-JTB_OUTPUT_DIRECTORY:custom", "-printer=true"),
        outputs=(
            StageOutput("-JTB_OUTPUT_DIRECTORY", Path("/out/jtb"), "jtb"),
            StageOutput("-OUTPUT_DIRECTORY", Path("/out/jj"), "jjtk"),
        ),
    )


class TestBuildArguments:
    """Argument lists passed to generator tools."""

    def test_output_options_are_replaced(self) -> None:
        """User-supplied output options never reach the tool."""
        arguments = build_arguments(
            _two_output_stage(), Path("/src/Expr.jtb"), [Path("/tmp/jtb-1"), Path("/tmp/jjtk-1")]
        )

        assert arguments == [
            "-printer=true",
            '-JTB_OUTPUT_DIRECTORY="/tmp/jtb-1"',
            '-OUTPUT_DIRECTORY="/tmp/jjtk-1"',
            "/src/Expr.jtb",
        ]

    def test_location_count_must_match_outputs(self) -> None:
        """Every declared output gets exactly one location."""
        with pytest.raises(ValueError, match="zip"):
            build_arguments(_two_output_stage(), Path("/src/Expr.jtb"), [Path("/tmp/jtb-1")])


class TestDeclaredOutput:
    """Expected output of each stage role."""

    def test_generator_declares_main_artifact(self) -> None:
        """A generator writes ``<unit name><extension>``."""
        unit = Unit(Path("/src"), "Calc.gram", "", "CalcParser", "", "CalcParser.gen", GEN, ".gram")
        stage = generator_stage(Path("/out"))

        expected = declared_output(stage, unit, [Path("/tmp/gen-1")])

        assert expected == Path("/tmp/gen-1/CalcParser.gen")

    def test_preprocessor_declares_next_stage_input_in_last_location(self) -> None:
        """The next-stage input lands in the preprocessor's last location."""
        unit = Unit(Path("/src"), "a/Expr.pre", "", "Expr", "", "Expr.gram", GEN, ".gram")
        stage = replace(_two_output_stage(), name="pre")

        expected = declared_output(stage, unit, [Path("/tmp/jtb-1"), Path("/tmp/jjtk-1")])

        assert expected == Path("/tmp/jjtk-1/Expr.gram")

    def test_unknown_language_declares_nothing(self) -> None:
        """Without a language the generator's output name is unknown."""
        unit = Unit(Path("/src"), "Calc.jj", "", "Calc", "", None, None)

        assert declared_output(generator_stage(Path("/out")), unit, [Path("/tmp/gen-1")]) is None


class TestExternalToolInvoker:
    """Running a stage as a subprocess."""

    def test_runs_tool_in_intermediate_directory(self, tmp_path: Path) -> None:
        """The tool receives its private location and the absolute input."""
        grammar = tmp_path / "Calc.gram"
        grammar.write_text("PARSER_BEGIN(CalcParser)\n", encoding="utf-8")
        location = tmp_path / "build" / "gen-1"
        stage = replace(
            generator_stage(tmp_path / "out"), command=(sys.executable, "-c", FAKE_GENERATOR)
        )

        outcome = ExternalToolInvoker().invoke(stage, grammar, [location])

        assert outcome.returncode == 0
        assert (location / "CalcParser.gen").read_text(encoding="utf-8") == "generated"

    def test_uses_the_shared_process_runner(self, tmp_path: Path) -> None:
        """Without an explicit runner the process-wide one applies."""
        environment = RecordingEnvironment()
        stage = replace(
            generator_stage(tmp_path / "out"),
            command=(sys.executable, "-c", "import os; print(os.environ['GRAMFORGE_STAGE'])"),
        )
        previous = get_process_runner()
        set_process_runner(ProcessRunner(environment=environment))
        try:
            outcome = ExternalToolInvoker().invoke(
                stage, tmp_path / "Calc.gram", [tmp_path / "gen-1"]
            )
        finally:
            set_process_runner(previous)

        assert environment.builds == 1
        assert outcome.stdout.strip() == "recorded"
        assert get_process_runner() is previous

    def test_non_zero_exit_is_a_processor_error(self, tmp_path: Path) -> None:
        """A failing tool fails the unit with its exit code."""
        grammar = tmp_path / "Calc.gram"
        grammar.write_text("", encoding="utf-8")
        stage = replace(
            generator_stage(tmp_path / "out"),
            command=(sys.executable, "-c", "import sys; sys.exit(4)"),
        )

        with pytest.raises(ProcessorError, match="reported exit code '4'") as excinfo:
            ExternalToolInvoker().invoke(stage, grammar, [tmp_path / "gen-1"])

        assert excinfo.value.returncode == 4
        assert excinfo.value.stage == "gen"

    def test_missing_tool_is_a_processor_error(self, tmp_path: Path) -> None:
        """A tool that cannot be started fails the unit."""
        stage = replace(generator_stage(tmp_path / "out"), command=("gramforge-no-such-tool",))

        with pytest.raises(ProcessorError, match="Failed to execute processor 'gen'"):
            ExternalToolInvoker().invoke(stage, tmp_path / "Calc.gram", [tmp_path / "gen-1"])


def test_invokers_satisfy_protocol() -> None:
    """Both invokers plug into the pipeline seam."""
    assert isinstance(ExternalToolInvoker(), StageInvoker)
    assert isinstance(FakeInvoker(), StageInvoker)
    assert preprocessor_stage(Path("/out")).copy_annotated
