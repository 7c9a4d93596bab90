"""Staleness evaluation for grammar units.

A unit is *stale* when its main artifact is missing from an output location,
or older (allowing for the configured slack) than either the grammar itself
or the newest generator dependency. Decisions keep the compared timestamps
as evidence so they can be logged and reported.
"""

from __future__ import annotations

import os
import sys
import zipfile
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from gramforge.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from gramforge.metadata import Unit

__all__ = [
    "ArtifactProbe",
    "BuildDecision",
    "DependencyTimestamps",
    "Evidence",
    "StalenessEvaluator",
    "Verdict",
    "mtime_ms",
]

LOGGER = get_logger(__name__)


def mtime_ms(path: Path) -> int | None:
    """Return the last-modified time of ``path`` in milliseconds, or ``None``."""
    try:
        return path.stat().st_mtime_ns // 1_000_000
    except OSError:
        return None


class Verdict(StrEnum):
    """Outcome of a staleness evaluation."""

    STALE = "stale"
    CURRENT = "current"


@dataclass(slots=True, frozen=True)
class ArtifactProbe:
    """A main artifact expected under one output location."""

    output_directory: Path
    artifact: str | None

    @property
    def path(self) -> Path | None:
        """Absolute artifact path, when an artifact name is known."""
        if self.artifact is None:
            return None
        return self.output_directory / self.artifact


@dataclass(slots=True, frozen=True)
class Evidence:
    """Timestamps compared for one output location (milliseconds)."""

    output_directory: str
    artifact: str | None
    artifact_ms: int | None
    source_ms: int | None
    dependency_ms: int
    slack_ms: int
    reason: str


@dataclass(slots=True, frozen=True)
class BuildDecision:
    """A unit tagged stale or current, with the evidence behind the verdict."""

    unit: Unit
    verdict: Verdict
    evidence: tuple[Evidence, ...] = ()

    @property
    def stale(self) -> bool:
        """Return ``True`` when the unit must be (re)processed."""
        return self.verdict is Verdict.STALE

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view for summaries."""
        return {
            "unit": self.unit.relative_path,
            "verdict": self.verdict.value,
            "evidence": [
                {
                    "output_directory": item.output_directory,
                    "artifact": item.artifact,
                    "artifact_ms": item.artifact_ms,
                    "source_ms": item.source_ms,
                    "dependency_ms": item.dependency_ms,
                    "slack_ms": item.slack_ms,
                    "reason": item.reason,
                }
                for item in self.evidence
            ],
        }


@dataclass(slots=True, frozen=True)
class StalenessEvaluator:
    """Decide whether units need regeneration.

    Parameters
    ----------
    slack_ms : int
        Tolerance added to artifact timestamps. A negative value makes every
        unit stale.
    dependency_ms : int, optional
        Newest timestamp among generator dependencies and template overrides.
    """

    slack_ms: int
    dependency_ms: int = 0

    def evaluate(self, unit: Unit, probes: Sequence[ArtifactProbe]) -> BuildDecision:
        """Evaluate ``unit`` against each output location in ``probes``.

        The unit is stale if it is stale with respect to any location.

        Parameters
        ----------
        unit : Unit
            Unit to evaluate.
        probes : Sequence[ArtifactProbe]
            Main artifact expected under each relevant output location.

        Returns
        -------
        BuildDecision
            Verdict and the evidence that produced it.
        """
        source_ms = mtime_ms(unit.source_path)
        if self.slack_ms < 0:
            evidence = Evidence(
                output_directory="",
                artifact=unit.main_artifact,
                artifact_ms=None,
                source_ms=source_ms,
                dependency_ms=self.dependency_ms,
                slack_ms=self.slack_ms,
                reason="no stale detection requested",
            )
            return self._decide(unit, Verdict.STALE, [evidence])

        if not probes or any(probe.artifact is None for probe in probes):
            evidence = Evidence(
                output_directory="",
                artifact=None,
                artifact_ms=None,
                source_ms=source_ms,
                dependency_ms=self.dependency_ms,
                slack_ms=self.slack_ms,
                reason="no main artifact can be determined",
            )
            return self._decide(unit, Verdict.STALE, [evidence])

        collected: list[Evidence] = []
        for probe in probes:
            item = self._probe(probe, source_ms)
            collected.append(item)
            if item.reason != "up to date":
                return self._decide(unit, Verdict.STALE, collected)
        return self._decide(unit, Verdict.CURRENT, collected)

    def _probe(self, probe: ArtifactProbe, source_ms: int | None) -> Evidence:
        path = probe.path
        artifact_ms = mtime_ms(path) if path is not None else None
        if artifact_ms is None:
            reason = "no existing main artifact"
        elif source_ms is not None and artifact_ms + self.slack_ms < source_ms:
            reason = "grammar newer than main artifact"
        elif artifact_ms + self.slack_ms < self.dependency_ms:
            reason = "main artifact older than generator dependencies"
        else:
            reason = "up to date"
        return Evidence(
            output_directory=str(probe.output_directory),
            artifact=probe.artifact,
            artifact_ms=artifact_ms,
            source_ms=source_ms,
            dependency_ms=self.dependency_ms,
            slack_ms=self.slack_ms,
            reason=reason,
        )

    @staticmethod
    def _decide(unit: Unit, verdict: Verdict, evidence: Iterable[Evidence]) -> BuildDecision:
        decision = BuildDecision(unit=unit, verdict=verdict, evidence=tuple(evidence))
        last = decision.evidence[-1] if decision.evidence else None
        LOGGER.info(
            "Grammar file '%s' %s: %s",
            unit.source_path,
            "included" if decision.stale else "not included",
            last.reason if last else "",
            extra={
                "operation": "evaluate",
                "unit": unit.relative_path,
                "verdict": verdict.value,
            },
        )
        return decision


@dataclass(slots=True)
class DependencyTimestamps:
    """Resolve generator dependency names to a freshness timestamp.

    Each resource name is looked up along a search path of archives and
    directories, the way a runtime resolves resources on its class or module
    path. A hit inside an archive contributes the archive's own modification
    time; a hit in a directory contributes the entry's modification time.

    Parameters
    ----------
    search_path : Sequence[Path], optional
        Archives and directories to search. Defaults to ``sys.path``.
    """

    search_path: Sequence[Path] = field(default_factory=lambda: [Path(p) for p in sys.path if p])

    def resolve(self, name: str) -> int | None:
        """Return the timestamp contributed by resource ``name``, if found.

        Parameters
        ----------
        name : str
            ``/``-separated resource name.

        Returns
        -------
        int | None
            Milliseconds timestamp, or ``None`` when the resource is not found.
        """
        entry_name = name.strip("/")
        for location in self.search_path:
            if location.is_dir():
                candidate = location / entry_name
                if candidate.exists():
                    return mtime_ms(candidate)
            elif location.is_file() and zipfile.is_zipfile(location):
                if _archive_contains(location, entry_name):
                    return mtime_ms(location)
        return None

    def latest(self, names: Iterable[str]) -> int:
        """Return the newest timestamp across ``names``; 0 when none resolve.

        Missing resources are logged as warnings and contribute nothing.
        """
        latest_ms = 0
        for name in names:
            found = self.resolve(name)
            if found is None:
                LOGGER.warning(
                    "No dependent archive found for resource '%s'; check the dependency path",
                    name,
                    extra={"operation": "evaluate", "resource": name},
                )
                continue
            LOGGER.debug(
                "Resource '%s' last modified at %d",
                name,
                found,
                extra={"operation": "evaluate", "resource": name},
            )
            latest_ms = max(latest_ms, found)
        return latest_ms


def _archive_contains(archive: Path, entry_name: str) -> bool:
    prefix = f"{entry_name}/"
    try:
        with zipfile.ZipFile(archive) as handle:
            return any(
                member == entry_name or member.startswith(prefix) for member in handle.namelist()
            )
    except (OSError, zipfile.BadZipFile) as exc:
        LOGGER.warning(
            "Unreadable archive '%s' on dependency path: %s",
            archive,
            exc,
            extra={"operation": "evaluate", "path": os.fspath(archive)},
        )
        return False
