"""Tests for staleness evaluation and dependency timestamps."""

from __future__ import annotations

import os
import time
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING

from gramforge.metadata import Unit
from gramforge.staleness import (
    ArtifactProbe,
    DependencyTimestamps,
    StalenessEvaluator,
    Verdict,
    mtime_ms,
)
from tests.helpers import GEN, assert_frozen_attribute

if TYPE_CHECKING:
    import pytest

NOW = time.time()


def _file(path: Path, *, age_seconds: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x", encoding="utf-8")
    stamp = NOW - age_seconds
    os.utime(path, (stamp, stamp))
    return path


def _unit(root: Path, *, age_seconds: float) -> Unit:
    _file(root / "Calc.gram", age_seconds=age_seconds)
    return Unit(root, "Calc.gram", "", "Calc", "", "Calc.gen", GEN, ".gram")


class TestStalenessEvaluator:
    """Verdicts from grammar, artifact and dependency timestamps."""

    def test_missing_artifact_is_stale(self, tmp_path: Path) -> None:
        """No main artifact in the output location means regeneration."""
        unit = _unit(tmp_path / "src", age_seconds=100)

        decision = StalenessEvaluator(slack_ms=0).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert decision.verdict is Verdict.STALE
        assert decision.evidence[-1].reason == "no existing main artifact"

    def test_newer_artifact_is_current(self, tmp_path: Path) -> None:
        """An artifact written after the grammar keeps the unit current."""
        unit = _unit(tmp_path / "src", age_seconds=100)
        _file(tmp_path / "out" / "Calc.gen", age_seconds=10)

        decision = StalenessEvaluator(slack_ms=0).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert not decision.stale
        assert decision.evidence[0].reason == "up to date"
        assert decision.evidence[0].artifact_ms is not None

    def test_older_artifact_is_stale(self, tmp_path: Path) -> None:
        """A grammar edited after generation is stale."""
        unit = _unit(tmp_path / "src", age_seconds=10)
        _file(tmp_path / "out" / "Calc.gen", age_seconds=100)

        decision = StalenessEvaluator(slack_ms=0).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert decision.stale
        assert decision.evidence[0].reason == "grammar newer than main artifact"

    def test_slack_tolerates_small_differences(self, tmp_path: Path) -> None:
        """The slack is added to the artifact timestamp before comparing."""
        unit = _unit(tmp_path / "src", age_seconds=10)
        _file(tmp_path / "out" / "Calc.gen", age_seconds=12)

        decision = StalenessEvaluator(slack_ms=5_000).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert not decision.stale

    def test_negative_slack_forces_regeneration(self, tmp_path: Path) -> None:
        """Every unit is stale when the slack is negative."""
        unit = _unit(tmp_path / "src", age_seconds=100)
        _file(tmp_path / "out" / "Calc.gen", age_seconds=1)

        decision = StalenessEvaluator(slack_ms=-1).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert decision.stale
        assert decision.evidence[0].reason == "no stale detection requested"

    def test_unknown_artifact_is_stale(self, tmp_path: Path) -> None:
        """Without a main artifact name the unit cannot be proven current."""
        unit = _unit(tmp_path / "src", age_seconds=100).with_main_artifact(None)

        decision = StalenessEvaluator(slack_ms=0).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", None)]
        )

        assert decision.stale
        assert decision.evidence[0].reason == "no main artifact can be determined"

    def test_newer_dependency_invalidates_artifact(self, tmp_path: Path) -> None:
        """A generator dependency newer than the artifact makes the unit stale."""
        unit = _unit(tmp_path / "src", age_seconds=100)
        artifact = _file(tmp_path / "out" / "Calc.gen", age_seconds=50)
        dependency_ms = (mtime_ms(artifact) or 0) + 10_000

        decision = StalenessEvaluator(slack_ms=0, dependency_ms=dependency_ms).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert decision.stale
        assert decision.evidence[0].reason == "main artifact older than generator dependencies"

    def test_stale_in_any_location_is_stale(self, tmp_path: Path) -> None:
        """Two-stage units are stale when either output is missing or old."""
        unit = _unit(tmp_path / "src", age_seconds=100)
        _file(tmp_path / "pre" / "Calc.gen", age_seconds=10)

        decision = StalenessEvaluator(slack_ms=0).evaluate(
            unit,
            [
                ArtifactProbe(tmp_path / "pre", unit.main_artifact),
                ArtifactProbe(tmp_path / "out", unit.main_artifact),
            ],
        )

        assert decision.stale
        assert [item.reason for item in decision.evidence] == [
            "up to date",
            "no existing main artifact",
        ]

    def test_decision_logs_verdict(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Each decision is logged with the grammar path."""
        caplog.set_level("INFO", logger="gramforge.staleness")
        unit = _unit(tmp_path / "src", age_seconds=100)

        StalenessEvaluator(slack_ms=0).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        assert "included: no existing main artifact" in caplog.text

    def test_as_dict_is_json_friendly(self, tmp_path: Path) -> None:
        """Decisions serialise with their evidence."""
        unit = _unit(tmp_path / "src", age_seconds=100)
        decision = StalenessEvaluator(slack_ms=0).evaluate(
            unit, [ArtifactProbe(tmp_path / "out", unit.main_artifact)]
        )

        payload = decision.as_dict()

        assert payload["unit"] == "Calc.gram"
        assert payload["verdict"] == "stale"
        assert isinstance(payload["evidence"], list)

    def test_probe_is_frozen(self, tmp_path: Path) -> None:
        """Probes are immutable."""
        assert_frozen_attribute(ArtifactProbe(tmp_path, "A.gen"), "artifact", "B.gen")


class TestDependencyTimestamps:
    """Resolution of generator dependency resources."""

    def test_directory_entry_contributes_its_mtime(self, tmp_path: Path) -> None:
        """A resource found in a directory uses the entry's timestamp."""
        classes = tmp_path / "classes"
        entry = _file(classes / "templates" / "gen" / "Parser.template", age_seconds=30)

        lookup = DependencyTimestamps(search_path=[classes])

        assert lookup.resolve("templates/gen") == mtime_ms(entry.parent)

    def test_archive_entry_contributes_archive_mtime(self, tmp_path: Path) -> None:
        """A resource inside an archive uses the archive's timestamp."""
        archive = tmp_path / "generator.jar"
        with zipfile.ZipFile(archive, "w") as handle:
            handle.writestr("templates/gen/Parser.template", "template")
        stamp = NOW - 20
        os.utime(archive, (stamp, stamp))

        lookup = DependencyTimestamps(search_path=[archive])

        assert lookup.resolve("templates/gen") == mtime_ms(archive)

    def test_latest_takes_newest_and_warns_on_missing(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Missing resources are logged and contribute nothing."""
        caplog.set_level("WARNING", logger="gramforge.staleness")
        old = _file(tmp_path / "old" / "core", age_seconds=100)
        new = _file(tmp_path / "new" / "templates" / "gen", age_seconds=5)
        lookup = DependencyTimestamps(search_path=[tmp_path / "old", tmp_path / "new"])

        latest = lookup.latest(["core", "templates/gen", "missing/resource"])

        assert latest == max(mtime_ms(old) or 0, mtime_ms(new) or 0)
        assert "No dependent archive found for resource 'missing/resource'" in caplog.text

    def test_latest_is_zero_when_nothing_resolves(self, tmp_path: Path) -> None:
        """Nothing found means no dependency constraint."""
        assert DependencyTimestamps(search_path=[tmp_path]).latest(["missing"]) == 0
