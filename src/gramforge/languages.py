"""Target languages the generators can emit, and their output layout rules."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Final

__all__ = [
    "CPP",
    "CSHARP",
    "DEFAULT_LANGUAGE",
    "JAVA",
    "JAVASCRIPT",
    "KOTLIN",
    "PYTHON",
    "TargetLanguage",
    "language_from_option",
    "register_language",
    "registered_languages",
]


@dataclass(slots=True, frozen=True)
class TargetLanguage:
    """A generated-code language and how its output is laid out.

    Parameters
    ----------
    name : str
        Symbolic name (``"JAVA"``).
    extension : str
        Suffix of generated source files, dot included.
    option_value : str
        Value of the code-generator option selecting this language.
    sub_dir : str
        Directory name under which the generator ships its templates.
    other_extensions : tuple[str, ...], optional
        Additional generated suffixes (headers and the like).
    uses_namespace : bool, optional
        Whether output lands under the declared namespace (``a.b`` to ``a/b/``).
    uses_path : bool, optional
        Whether output mirrors the grammar's own directory position.
    """

    name: str
    extension: str
    option_value: str
    sub_dir: str
    other_extensions: tuple[str, ...] = ()
    uses_namespace: bool = False
    uses_path: bool = False

    @property
    def extensions(self) -> tuple[str, ...]:
        """Return the primary extension followed by the secondary ones."""
        return (self.extension, *self.other_extensions)

    def output_sub_path(self, namespace: str, relative_source: str) -> str:
        """Return the output sub-path for a unit, empty or ``/``-terminated.

        Parameters
        ----------
        namespace : str
            Declared dotted namespace, possibly empty.
        relative_source : str
            Grammar path relative to its source root, ``/``-separated.

        Returns
        -------
        str
            Relative sub-path such as ``"a/b/c/"`` or ``""``.

        Examples
        --------
        >>> JAVA.output_sub_path("a.b.c", "Calc.jj")
        'a/b/c/'
        >>> CPP.output_sub_path("", "sub/Calc.jj")
        'sub/'
        """
        if self.uses_namespace:
            sub_path = namespace.replace(".", "/")
            return f"{sub_path}/" if sub_path else ""
        if self.uses_path:
            parent = PurePosixPath(relative_source).parent.as_posix()
            return "" if parent == "." else f"{parent}/"
        return ""


JAVA: Final = TargetLanguage("JAVA", ".java", "Java", "java", uses_namespace=True)
CPP: Final = TargetLanguage("CPP", ".cc", "C++", "cpp", other_extensions=(".h",), uses_path=True)
CSHARP: Final = TargetLanguage("CSHARP", ".cs", "C#", "csharp", uses_path=True)
JAVASCRIPT: Final = TargetLanguage("JAVASCRIPT", ".js", "JS", "javascript", uses_path=True)
KOTLIN: Final = TargetLanguage("KOTLIN", ".kt", "Kotlin", "kotlin", uses_namespace=True)
PYTHON: Final = TargetLanguage("PYTHON", ".py", "Python", "python", uses_path=True)

DEFAULT_LANGUAGE: Final = JAVA

_REGISTRY: dict[str, TargetLanguage] = {
    language.option_value.lower(): language
    for language in (JAVA, CPP, CSHARP, JAVASCRIPT, KOTLIN, PYTHON)
}
_REGISTRY_LOCK = threading.Lock()


def register_language(language: TargetLanguage) -> None:
    """Make ``language`` selectable through its code-generator option value."""
    with _REGISTRY_LOCK:
        _REGISTRY[language.option_value.lower()] = language


def registered_languages() -> tuple[TargetLanguage, ...]:
    """Return every selectable language."""
    with _REGISTRY_LOCK:
        return tuple(_REGISTRY.values())


def language_from_option(value: str | None) -> TargetLanguage | None:
    """Return the language selected by a code-generator option value.

    Parameters
    ----------
    value : str | None
        Option value such as ``"Java"`` or ``"C++"`` (case-insensitive).

    Returns
    -------
    TargetLanguage | None
        Matching language, or ``None`` when ``value`` is missing or unknown.
    """
    if not value:
        return None
    with _REGISTRY_LOCK:
        return _REGISTRY.get(value.strip().lower())
