"""Source root scanning with include/exclude glob filters."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final

from gramforge.errors import ConfigurationError
from gramforge.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

__all__ = [
    "DEFAULT_EXCLUDES",
    "matches_any",
    "scan_source_root",
    "scan_source_roots",
]

LOGGER = get_logger(__name__)

DEFAULT_EXCLUDES: Final[tuple[str, ...]] = (
    "**/*~",
    "**/#*#",
    "**/.#*",
    "**/.DS_Store",
    "**/.git/**",
    "**/.hg/**",
    "**/.svn/**",
    "**/CVS/**",
)


def matches_any(relative_path: str, patterns: Iterable[str]) -> bool:
    """Return ``True`` when ``relative_path`` matches any glob in ``patterns``.

    ``**`` matches any number of directory segments, including none.

    Parameters
    ----------
    relative_path : str
        ``/``-separated path relative to the scanned root.
    patterns : Iterable[str]
        Glob patterns.

    Returns
    -------
    bool
        True if at least one pattern matches.

    Examples
    --------
    >>> matches_any("a/b/Calc.jj", ["**/*.jj"])
    True
    >>> matches_any("Calc.jj", ["**/*.jj"])
    True
    >>> matches_any("Calc.jjt", ["**/*.jj"])
    False
    """
    candidate = PurePosixPath(relative_path)
    return any(candidate.full_match(pattern.replace("\\", "/")) for pattern in patterns)


def _walk_files(root: Path) -> Iterator[str]:
    visited: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
        real = os.path.realpath(dirpath)
        if real in visited:
            # symlink cycle
            dirnames[:] = []
            continue
        visited.add(real)
        dirnames.sort()
        relative_dir = Path(dirpath).relative_to(root).as_posix()
        for filename in sorted(filenames):
            if relative_dir == ".":
                yield filename
            else:
                yield f"{relative_dir}/{filename}"


def scan_source_root(
    root: Path,
    *,
    includes: Sequence[str],
    excludes: Sequence[str] = (),
    optional: bool = False,
) -> list[str]:
    """List the files under ``root`` selected by the include/exclude patterns.

    Symbolic links are followed. A file is selected when it matches at least
    one include pattern and no exclude pattern (the VCS and editor leftovers in
    :data:`DEFAULT_EXCLUDES` are always excluded).

    Parameters
    ----------
    root : Path
        Source root to walk.
    includes : Sequence[str]
        Include glob patterns.
    excludes : Sequence[str], optional
        Exclude glob patterns. Defaults to none.
    optional : bool, optional
        When True a missing root yields an empty list instead of an error.

    Returns
    -------
    list[str]
        ``/``-separated paths relative to ``root``, in walk order.

    Raises
    ------
    ConfigurationError
        If ``root`` does not exist or is not a directory and is not optional.
    """
    if not root.is_dir():
        if optional and not root.exists():
            LOGGER.debug(
                "Skipping missing optional source root '%s'",
                root,
                extra={"operation": "scan", "path": str(root)},
            )
            return []
        issue = "does not exist" if not root.exists() else "is not a directory"
        message = f"sourceDirectory '{root}' {issue}"
        raise ConfigurationError(message, context={"path": str(root)})

    all_excludes = (*DEFAULT_EXCLUDES, *excludes)
    selected = [
        relative
        for relative in _walk_files(root)
        if matches_any(relative, includes) and not matches_any(relative, all_excludes)
    ]
    LOGGER.debug(
        "Scanned '%s': %d candidate(s)",
        root,
        len(selected),
        extra={"operation": "scan", "path": str(root), "count": len(selected)},
    )
    return selected


def scan_source_roots(
    roots: Sequence[Path],
    *,
    includes: Sequence[str],
    excludes: Sequence[str] = (),
    optional: bool = False,
) -> list[tuple[Path, str]]:
    """Scan several roots, pairing each selected path with its root.

    Returns
    -------
    list[tuple[Path, str]]
        ``(root, relative_path)`` pairs in root order.
    """
    pairs: list[tuple[Path, str]] = []
    for root in roots:
        pairs.extend(
            (root, relative)
            for relative in scan_source_root(
                root, includes=includes, excludes=excludes, optional=optional
            )
        )
    return pairs
