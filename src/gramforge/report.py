"""Grammar documentation reports (the ``jjdoc`` goal).

Report mode scans several optional source roots, runs the documentation stage
once per grammar without staleness filtering, and writes a JSON index linking
each grammar to its report. Rendering the index as a site page is left to the
caller.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final

from gramforge.config import find_option_value
from gramforge.errors import ProcessorError
from gramforge.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from gramforge.config import RunConfig, StageConfig
    from gramforge.metadata import Unit
    from gramforge.stages import StageInvoker

__all__ = [
    "REPORT_INDEX_NAME",
    "ReportLink",
    "ReportRunner",
    "report_extension",
    "report_path",
    "write_report_index",
]

LOGGER = get_logger(__name__)

REPORT_INDEX_NAME: Final = "jjdoc-reports.json"


def report_extension(stage: StageConfig) -> str:
    """Return ``.txt`` for plain-text or BNF reports, ``.html`` otherwise."""
    for option in ("-TEXT", "-BNF"):
        value = find_option_value(stage.arguments, option)
        if value is not None and value.lower() == "true":
            return ".txt"
    return ".html"


def report_path(stage: StageConfig, unit: Unit) -> Path:
    """Return the report file written for ``unit``.

    Examples
    --------
    >>> from pathlib import Path
    >>> from gramforge.config import StageConfig, StageOutput
    >>> from gramforge.goals import StageRole
    >>> from gramforge.metadata import Unit
    >>> stage = StageConfig(
    ...     "jjdoc", StageRole.REPORT, ("jjdoc",),
    ...     outputs=(StageOutput("-OUTPUT_FILE", Path("/site/jjdoc"), "jjdoc"),),
    ... )
    >>> unit = Unit(Path("/src"), "a/Calc.jj", "", "Calc", "", None, None)
    >>> report_path(stage, unit).as_posix()
    '/site/jjdoc/a/Calc.html'
    """
    relative = PurePosixPath(unit.relative_path).with_suffix(report_extension(stage))
    return stage.primary_output.directory / relative


@dataclass(slots=True, frozen=True)
class ReportLink:
    """A grammar and the report generated for it, both relative."""

    grammar: str
    report: str


def write_report_index(directory: Path, links: Iterable[ReportLink]) -> Path:
    """Write the JSON report index into ``directory`` and return its path."""
    ordered = sorted(links, key=lambda link: link.grammar)
    directory.mkdir(parents=True, exist_ok=True)
    index = directory / REPORT_INDEX_NAME
    payload = {"reports": [asdict(link) for link in ordered]}
    index.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    LOGGER.info(
        "Wrote report index '%s' with %d entr(ies)",
        index,
        len(ordered),
        extra={"operation": "report", "path": str(index)},
    )
    return index


@dataclass(slots=True)
class ReportRunner:
    """Run the documentation stage for one unit at a time."""

    config: RunConfig
    invoker: StageInvoker

    @property
    def stage(self) -> StageConfig:
        """The documentation stage."""
        return self.config.stages[0]

    def generate(self, unit: Unit) -> ReportLink:
        """Generate the report for ``unit``.

        Raises
        ------
        ProcessorError
            If the stage fails or does not write the report file.
        """
        stage = self.stage
        target = report_path(stage, unit)
        self.invoker.invoke(stage, unit.source_path, [target])
        if not target.is_file():
            message = f"Processor '{stage.name}' did not produce '{target}'"
            raise ProcessorError(message, stage=stage.name, path=unit.source_path)
        LOGGER.debug(
            "Generated report '%s'",
            target,
            extra={"operation": "report", "unit": unit.relative_path},
        )
        relative = target.relative_to(stage.primary_output.directory).as_posix()
        return ReportLink(grammar=unit.relative_path, report=relative)
