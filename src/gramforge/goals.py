"""Built-in goals: which stages run, where they read and where they write."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from gramforge.errors import ConfigurationError

__all__ = [
    "GOALS",
    "JAVACC_SOURCE_DIR",
    "JJTREE_SOURCE_DIR",
    "JTB_SOURCE_DIR",
    "GoalPreset",
    "OutputPreset",
    "StagePreset",
    "StageRole",
    "get_goal",
]

JAVACC_SOURCE_DIR: Final = "src/main/javacc"
JJTREE_SOURCE_DIR: Final = "src/main/jjtree"
JTB_SOURCE_DIR: Final = "src/main/jtb"

OUTPUT_DIRECTORY_OPTION: Final = "-OUTPUT_DIRECTORY"
JJTREE_OUTPUT_DIRECTORY_OPTION: Final = "-JJTREE_OUTPUT_DIRECTORY"
JTB_OUTPUT_DIRECTORY_OPTION: Final = "-JTB_OUTPUT_DIRECTORY"
OUTPUT_FILE_OPTION: Final = "-OUTPUT_FILE"


class StageRole(StrEnum):
    """What a stage's output is used for."""

    PREPROCESSOR = "preprocessor"
    GENERATOR = "generator"
    REPORT = "report"


@dataclass(slots=True, frozen=True)
class OutputPreset:
    """One output location of a stage."""

    option: str
    default_subdir: str
    intermediate_prefix: str


@dataclass(slots=True, frozen=True)
class StagePreset:
    """Defaults for one stage of a goal."""

    name: str
    executable: str
    role: StageRole
    outputs: tuple[OutputPreset, ...]


@dataclass(slots=True, frozen=True)
class GoalPreset:
    """Defaults for one goal."""

    name: str
    source_directories: tuple[str, ...]
    includes: tuple[str, ...]
    stages: tuple[StagePreset, ...]
    report: bool = False

    @property
    def two_stage(self) -> bool:
        """Return ``True`` when a preprocessor feeds a generator."""
        return len(self.stages) == 2


_JAVACC_STAGE = StagePreset(
    name="javacc",
    executable="javacc",
    role=StageRole.GENERATOR,
    outputs=(OutputPreset(OUTPUT_DIRECTORY_OPTION, "generated-sources/javacc", "javacc"),),
)
_JJTREE_STAGE = StagePreset(
    name="jjtree",
    executable="jjtree",
    role=StageRole.PREPROCESSOR,
    outputs=(OutputPreset(JJTREE_OUTPUT_DIRECTORY_OPTION, "generated-sources/jjtree", "jjtree"),),
)
_JTB_STAGE = StagePreset(
    name="jtb",
    executable="jtb",
    role=StageRole.PREPROCESSOR,
    outputs=(
        OutputPreset(JTB_OUTPUT_DIRECTORY_OPTION, "generated-sources/jtb", "jtb"),
        OutputPreset(OUTPUT_DIRECTORY_OPTION, "generated-sources/jtb-javacc", "jjtk"),
    ),
)
_JJDOC_STAGE = StagePreset(
    name="jjdoc",
    executable="jjdoc",
    role=StageRole.REPORT,
    outputs=(OutputPreset(OUTPUT_FILE_OPTION, "generated-jjdoc", "jjdoc"),),
)

GOALS: Final[dict[str, GoalPreset]] = {
    "javacc": GoalPreset(
        name="javacc",
        source_directories=(JAVACC_SOURCE_DIR,),
        includes=("**/*.jj",),
        stages=(_JAVACC_STAGE,),
    ),
    "jjtree-javacc": GoalPreset(
        name="jjtree-javacc",
        source_directories=(JJTREE_SOURCE_DIR,),
        includes=("**/*.jjt",),
        stages=(_JJTREE_STAGE, _JAVACC_STAGE),
    ),
    "jtb": GoalPreset(
        name="jtb",
        source_directories=(JTB_SOURCE_DIR,),
        includes=("**/*.jtb",),
        stages=(_JTB_STAGE,),
    ),
    "jtb-javacc": GoalPreset(
        name="jtb-javacc",
        source_directories=(JTB_SOURCE_DIR,),
        includes=("**/*.jtb",),
        stages=(_JTB_STAGE, _JAVACC_STAGE),
    ),
    "jjdoc": GoalPreset(
        name="jjdoc",
        source_directories=(JAVACC_SOURCE_DIR, JJTREE_SOURCE_DIR, JTB_SOURCE_DIR),
        includes=("**/*.jj", "**/*.jjt", "**/*.jtb"),
        stages=(_JJDOC_STAGE,),
        report=True,
    ),
}


def get_goal(name: str) -> GoalPreset:
    """Return the preset for goal ``name``.

    Raises
    ------
    ConfigurationError
        If ``name`` is not a known goal.
    """
    try:
        return GOALS[name]
    except KeyError as exc:
        message = f"Unknown goal '{name}'; expected one of {', '.join(sorted(GOALS))}"
        raise ConfigurationError(message, cause=exc) from exc
