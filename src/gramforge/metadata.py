"""Unit metadata extraction from grammar source text.

A *unit* is one grammar file plus what the orchestrator derives from it: the
declared namespace, the unit (parser) name, the output sub-path and the name
of the main generated artifact whose timestamp decides staleness.

Marker extraction sits behind the :class:`MarkerExtractor` protocol. The
default :class:`RegexMarkerExtractor` matches line-anchored patterns over the
raw text and is blind to comments: a ``package`` or ``PARSER_BEGIN`` line
inside a multi-line comment is picked up like any other. A comment-aware
extractor can replace it without touching the orchestrator.
"""

from __future__ import annotations

import locale
import re
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

from gramforge.errors import MetadataError
from gramforge.logging import get_logger

if TYPE_CHECKING:
    from gramforge.languages import TargetLanguage

__all__ = [
    "DEFAULT_GENERATOR_SUFFIX",
    "MarkerExtractor",
    "RegexMarkerExtractor",
    "Unit",
    "UnitMarkers",
    "UnitReader",
    "decode_unicode_escapes",
    "platform_encoding",
]

LOGGER = get_logger(__name__)

DEFAULT_GENERATOR_SUFFIX: Final = ".jj"

NAMESPACE_PATTERN: Final = r"^package\s+([^.;]+(\.[^.;]+)*)\s*;"
UNIT_NAME_PATTERN: Final = r"^PARSER_BEGIN\s*\(\s*([^\s)]+)\s*\)"

_UNICODE_ESCAPE = re.compile(r"\\u([0-9a-fA-F]{4})")


def decode_unicode_escapes(value: str) -> str:
    r"""Replace ``\uXXXX`` escapes in ``value`` with the characters they encode.

    Examples
    --------
    >>> decode_unicode_escapes("org.jcc.\\u00df\\u03c06")
    'org.jcc.ßπ6'
    """
    return _UNICODE_ESCAPE.sub(lambda match: chr(int(match.group(1), 16)), value)


def platform_encoding() -> str:
    """Return the host's preferred text encoding."""
    return locale.getpreferredencoding(do_setlocale=False)


@dataclass(slots=True, frozen=True)
class UnitMarkers:
    """Structural markers found in a grammar's text."""

    namespace: str
    unit_name: str


@runtime_checkable
class MarkerExtractor(Protocol):
    """Extract the namespace and unit-name markers from grammar text."""

    def extract(self, text: str) -> UnitMarkers:
        """Return the markers; ``unit_name`` is empty when the marker is absent."""
        ...


@dataclass(slots=True, frozen=True)
class RegexMarkerExtractor:
    """Line-anchored regular expression extractor.

    Parameters
    ----------
    namespace_pattern : str, optional
        Pattern whose first group captures the dotted namespace.
    unit_name_pattern : str, optional
        Pattern whose first group captures the unit name.
    """

    namespace_pattern: str = NAMESPACE_PATTERN
    unit_name_pattern: str = UNIT_NAME_PATTERN
    _namespace_re: re.Pattern[str] = field(init=False, repr=False, compare=False)
    _unit_name_re: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Compile both patterns in multiline mode."""
        object.__setattr__(self, "_namespace_re", re.compile(self.namespace_pattern, re.MULTILINE))
        object.__setattr__(self, "_unit_name_re", re.compile(self.unit_name_pattern, re.MULTILINE))

    def extract(self, text: str) -> UnitMarkers:
        """Return the first namespace and unit-name matches in ``text``.

        Parameters
        ----------
        text : str
            Full grammar text.

        Returns
        -------
        UnitMarkers
            Decoded markers; missing markers are empty strings.
        """
        namespace_match = self._namespace_re.search(text)
        unit_match = self._unit_name_re.search(text)
        namespace = decode_unicode_escapes(namespace_match.group(1)) if namespace_match else ""
        unit_name = decode_unicode_escapes(unit_match.group(1)) if unit_match else ""
        return UnitMarkers(namespace=namespace, unit_name=unit_name)


@dataclass(slots=True, frozen=True)
class Unit:
    """One grammar file and its derived generation metadata.

    Attributes
    ----------
    source_root : Path
        Root the grammar was found under.
    relative_path : str
        ``/``-separated path of the grammar relative to ``source_root``.
    namespace : str
        Declared namespace, empty when absent or meaningless for the language.
    unit_name : str
        Logical name of the generated artifact family (the parser name).
    output_sub_path : str
        Relative output prefix, empty or ``/``-terminated.
    main_artifact : str | None
        Path, relative to an output root, of the file whose timestamp decides
        staleness. ``None`` when no target language is known.
    language : TargetLanguage | None
        Target language the unit generates.
    generator_suffix : str
        Suffix of generator-stage inputs; any other suffix marks a preprocessor input.
    """

    source_root: Path
    relative_path: str
    namespace: str
    unit_name: str
    output_sub_path: str
    main_artifact: str | None
    language: TargetLanguage | None
    generator_suffix: str = DEFAULT_GENERATOR_SUFFIX

    @property
    def source_path(self) -> Path:
        """Absolute path of the grammar file."""
        return self.source_root / self.relative_path

    @property
    def is_preprocessor_input(self) -> bool:
        """Return ``True`` when the unit feeds a preprocessing stage."""
        return PurePosixPath(self.relative_path).suffix != self.generator_suffix

    def with_main_artifact(self, main_artifact: str | None) -> Unit:
        """Return a copy whose main artifact is ``main_artifact``."""
        return replace(self, main_artifact=main_artifact)

    def next_stage_path(self) -> str:
        """Return the relative path of the generator input this unit produces.

        The path is expressed relative to the preprocessor's output root: the
        output sub-path followed by the grammar's stem and the generator suffix.

        Examples
        --------
        >>> from gramforge.languages import JAVA
        >>> unit = Unit(Path("/src"), "a/b/Foo.jjt", "a.b", "Foo", "a/b/", "a/b/Foo.jj", JAVA)
        >>> unit.next_stage_path()
        'a/b/Foo.jj'
        """
        stem = PurePosixPath(self.relative_path).stem
        return f"{self.output_sub_path}{stem}{self.generator_suffix}"

    def derive_next_stage(self, source_root: Path) -> Unit:
        """Predict the generator-stage unit produced from this preprocessor input.

        Parameters
        ----------
        source_root : Path
            Directory the preprocessor output is read from.

        Returns
        -------
        Unit
            Unit rooted at ``source_root`` keeping this unit's namespace and name.
        """
        relative = self.next_stage_path()
        return Unit(
            source_root=source_root,
            relative_path=relative,
            namespace=self.namespace,
            unit_name=self.unit_name,
            output_sub_path=self.output_sub_path,
            main_artifact=_main_artifact(
                relative, self.output_sub_path, self.unit_name, self.language, self.generator_suffix
            ),
            language=self.language,
            generator_suffix=self.generator_suffix,
        )

    def __str__(self) -> str:
        """Return ``<grammar> -> <main artifact>``."""
        return f"{self.source_path} -> {self.main_artifact}"


def _main_artifact(
    relative_path: str,
    sub_path: str,
    unit_name: str,
    language: TargetLanguage | None,
    generator_suffix: str,
) -> str | None:
    if language is None:
        return None
    pure = PurePosixPath(relative_path)
    if pure.suffix == generator_suffix:
        return f"{sub_path}{unit_name}{language.extension}"
    # preprocessor input: the next-stage file it will produce
    return f"{sub_path}{pure.stem}{generator_suffix}"


@dataclass(slots=True, frozen=True)
class UnitReader:
    """Read grammar files into :class:`Unit` values.

    Parameters
    ----------
    language : TargetLanguage | None
        Target language; ``None`` in report mode, where no output layout applies.
    encoding : str | None, optional
        Grammar text encoding. The platform default applies when omitted.
    extractor : MarkerExtractor, optional
        Marker extraction strategy.
    generator_suffix : str, optional
        Suffix identifying generator-stage inputs.
    """

    language: TargetLanguage | None
    encoding: str | None = None
    extractor: MarkerExtractor = field(default_factory=RegexMarkerExtractor)
    generator_suffix: str = DEFAULT_GENERATOR_SUFFIX

    @property
    def effective_encoding(self) -> str:
        """Configured encoding, or the platform default."""
        return self.encoding or platform_encoding()

    def read(self, source_root: Path, relative_path: str) -> Unit:
        """Read and analyse one grammar file.

        Parameters
        ----------
        source_root : Path
            Root the grammar was found under.
        relative_path : str
            ``/``-separated grammar path relative to ``source_root``.

        Returns
        -------
        Unit
            Unit with its derived metadata.

        Raises
        ------
        MetadataError
            If the file cannot be read or decoded, or has no unit-name marker.
        """
        path = source_root / relative_path
        try:
            text = path.read_text(encoding=self.effective_encoding)
        except (OSError, UnicodeDecodeError, LookupError) as exc:
            message = f"Error reading input file '{relative_path}' / '{path}'"
            raise MetadataError(message, path=path, cause=exc) from exc

        markers = self.extractor.extract(text)
        if self.language is None:
            LOGGER.debug(
                "No target language set for '%s', keeping markers only",
                path,
                extra={"operation": "scan", "path": str(path)},
            )
            return Unit(
                source_root=source_root,
                relative_path=relative_path,
                namespace=markers.namespace,
                unit_name=markers.unit_name,
                output_sub_path="",
                main_artifact=None,
                language=None,
                generator_suffix=self.generator_suffix,
            )

        namespace = markers.namespace if self.language.uses_namespace else ""
        sub_path = self.language.output_sub_path(namespace, relative_path)
        if not markers.unit_name:
            message = f"No unit name found in unit-name marker for grammar '{relative_path}'"
            raise MetadataError(message, path=path)

        unit = Unit(
            source_root=source_root,
            relative_path=relative_path,
            namespace=namespace,
            unit_name=markers.unit_name,
            output_sub_path=sub_path,
            main_artifact=_main_artifact(
                relative_path, sub_path, markers.unit_name, self.language, self.generator_suffix
            ),
            language=self.language,
            generator_suffix=self.generator_suffix,
        )
        LOGGER.debug(
            "Read unit %s",
            unit,
            extra={
                "operation": "scan",
                "unit": unit.unit_name,
                "namespace": unit.namespace,
                "sub_path": unit.output_sub_path,
            },
        )
        return unit
