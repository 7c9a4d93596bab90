"""Fixtures shared by the gramforge test modules."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from gramforge.config import RunConfig
from gramforge.policy import EscalationMode, EscalationSettings
from tests.helpers import GEN, GENERATOR_SUFFIX, FakeInvoker, generator_stage

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from gramforge.config import StageConfig


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project directory with an empty grammar source root."""
    (tmp_path / "src" / "main" / "gram").mkdir(parents=True)
    return tmp_path


@pytest.fixture
def source_root(project: Path) -> Path:
    """Grammar source root of ``project``."""
    return project / "src" / "main" / "gram"


@pytest.fixture
def output_dir(project: Path) -> Path:
    """Generator output directory of ``project``."""
    return project / "target" / "generated-sources" / "gen"


@pytest.fixture
def invoker() -> FakeInvoker:
    """Fresh fake stage invoker."""
    return FakeInvoker()


@pytest.fixture
def make_config(project: Path, source_root: Path, output_dir: Path) -> Callable[..., RunConfig]:
    """Build a :class:`RunConfig` for the ``GEN`` language with overrides."""

    def _make(
        *,
        stages: tuple[StageConfig, ...] | None = None,
        processor: EscalationMode = EscalationMode.FIRST,
        metadata: EscalationMode = EscalationMode.FIRST,
        **overrides: object,
    ) -> RunConfig:
        values: dict[str, object] = {
            "goal": "test",
            "project_root": project,
            "build_directory": project / "target",
            "source_directories": (source_root,),
            "includes": ("**/*.gram",),
            "stages": stages or (generator_stage(output_dir),),
            "language": GEN,
            "grammar_encoding": "utf-8",
            "generator_suffix": GENERATOR_SUFFIX,
            "compile_source_roots": (source_root,),
            "escalation": EscalationSettings(metadata=metadata, processor=processor),
        }
        values.update(overrides)
        return RunConfig(**values)  # type: ignore[arg-type]

    return _make
