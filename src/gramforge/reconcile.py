"""Merge generated output into final output locations.

Files are copied from a stage's intermediate directory into its configured
output directory, under the unit's output sub-path. A file is skipped when the
same relative path already exists in an owned location (user-maintained
source roots) or in one of the stage's output directories: the existing file
wins, so customised copies are never overwritten.
"""

from __future__ import annotations

import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from gramforge.errors import ProcessorError
from gramforge.logging import get_logger
from gramforge.metrics import RECONCILED_FILES_TOTAL

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from gramforge.config import RunConfig

__all__ = ["CopyReport", "OwnedLocations", "Reconciler"]

LOGGER = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class OwnedLocations:
    """Directories whose files must never be overwritten.

    Computed once per run: the primary source directory plus every declared
    compile source root that does not live under the build directory.
    """

    roots: tuple[Path, ...] = ()

    @classmethod
    def from_config(cls, config: RunConfig) -> OwnedLocations:
        """Derive the owned locations of ``config``."""
        build_directory = config.build_directory.resolve()
        roots: list[Path] = []
        primary = config.source_directory.resolve()
        roots.append(primary)
        for root in config.compile_source_roots:
            canonical = root.resolve()
            if canonical == primary:
                continue
            if canonical.is_relative_to(build_directory):
                LOGGER.debug(
                    "compile source root '%s' is a generated one",
                    root,
                    extra={"operation": "reconcile", "path": str(root)},
                )
                continue
            LOGGER.debug(
                "compile source root '%s' is a non generated one",
                root,
                extra={"operation": "reconcile", "path": str(root)},
            )
            if canonical not in roots:
                roots.append(canonical)
        return cls(tuple(roots))

    def __contains__(self, directory: object) -> bool:
        """Return ``True`` when ``directory`` is one of the owned roots."""
        if not isinstance(directory, (str, os.PathLike)):
            return False
        return Path(directory).resolve() in self.roots


@dataclass(slots=True, frozen=True)
class CopyReport:
    """Files copied and skipped by one reconciliation pass."""

    copied: tuple[Path, ...] = ()
    skipped: tuple[str, ...] = ()


def _collect(origin: Path, suffixes: Iterable[str]) -> list[Path]:
    wanted = tuple(dict.fromkeys(suffixes))
    found: list[Path] = []
    for suffix in wanted:
        found.extend(sorted(path for path in origin.rglob(f"*{suffix}") if path.is_file()))
    return list(dict.fromkeys(found))


@dataclass(slots=True)
class Reconciler:
    """Copy-with-skip-if-exists merge of generated files.

    The check-then-copy sequence is serialised by a lock so that units
    processed concurrently within one run never race on the same destination.

    Parameters
    ----------
    owned : OwnedLocations
        User-owned roots, checked first.
    extensions : Sequence[str]
        Primary and secondary generated-file suffixes; empty to merge every file.
    generator_suffix : str
        Suffix of the annotated generator input, copied on request.
    """

    owned: OwnedLocations
    extensions: Sequence[str]
    generator_suffix: str
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def locate_root(self, relative_path: str, output_directories: Sequence[Path]) -> Path | None:
        """Return the root holding ``relative_path``, owned locations first."""
        for root in (*self.owned.roots, *output_directories):
            if (root / relative_path).exists():
                return root
        return None

    def find_existing(self, relative_path: str, output_directories: Sequence[Path]) -> Path | None:
        """Return the existing file shadowing ``relative_path``, if any."""
        root = self.locate_root(relative_path, output_directories)
        return None if root is None else root / relative_path

    def copy_output(
        self,
        origin: Path,
        destination: Path,
        sub_path: str,
        *,
        output_directories: Sequence[Path],
        copy_annotated: bool,
        unit_path: Path | str,
    ) -> CopyReport:
        """Merge the generated files found under ``origin`` into ``destination``.

        Parameters
        ----------
        origin : Path
            Directory scanned for generated files.
        destination : Path
            Final output root.
        sub_path : str
            Output sub-path, empty or ``/``-terminated.
        output_directories : Sequence[Path]
            Output directories of the stage, consulted for existing files.
        copy_annotated : bool
            Also copy files carrying the generator-input suffix.
        unit_path : Path | str
            Grammar path reported in errors.

        Returns
        -------
        CopyReport
            Copied destinations and skipped relative paths.

        Raises
        ------
        ProcessorError
            If a file cannot be listed or copied.
        """
        # no known extension: every generated file is merged
        suffixes = list(self.extensions[:1]) or [""]
        if copy_annotated:
            suffixes.append(self.generator_suffix)
        suffixes.extend(self.extensions[1:])
        try:
            candidates = _collect(origin, suffixes) if origin.is_dir() else []
        except OSError as exc:
            message = f"Failed to get generated files within '{origin}'"
            raise ProcessorError(message, stage="reconcile", path=unit_path, cause=exc) from exc

        copied: list[Path] = []
        skipped: list[str] = []
        for candidate in candidates:
            relative = f"{sub_path}{candidate.relative_to(origin).as_posix()}"
            target = destination / relative
            with self._lock:
                existing = self.find_existing(relative, output_directories)
                if existing is not None:
                    skipped.append(relative)
                    RECONCILED_FILES_TOTAL.labels(action="skipped").inc()
                    LOGGER.debug(
                        "Skipping copying user file '%s' as custom or generated one '%s' exists",
                        relative,
                        existing,
                        extra={"operation": "reconcile", "path": relative},
                    )
                    continue
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(candidate, target)
                except OSError as exc:
                    message = f"Failed to copy generated file '{candidate}' to '{target}'"
                    raise ProcessorError(
                        message, stage="reconcile", path=unit_path, cause=exc
                    ) from exc
            copied.append(target)
            RECONCILED_FILES_TOTAL.labels(action="copied").inc()
            LOGGER.debug(
                "Copied generated file '%s' to '%s'",
                candidate,
                target,
                extra={"operation": "reconcile", "path": relative},
            )
        return CopyReport(copied=tuple(copied), skipped=tuple(skipped))
