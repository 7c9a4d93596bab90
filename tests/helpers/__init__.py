"""Shared test helpers for gramforge.

Helpers defined here have no side effects beyond registering the ``GEN``
test language.
"""

from __future__ import annotations

from tests.helpers.fakes import (
    GEN,
    GENERATOR_SUFFIX,
    FakeInvoker,
    generator_stage,
    preprocessor_stage,
    write_grammar,
)
from tests.helpers.immutability import assert_frozen_attribute, assert_frozen_attributes

__all__ = [
    "GEN",
    "GENERATOR_SUFFIX",
    "FakeInvoker",
    "assert_frozen_attribute",
    "assert_frozen_attributes",
    "generator_stage",
    "preprocessor_stage",
    "write_grammar",
]
