"""Incremental build orchestration for grammar-based code generators.

gramforge scans grammar source roots, decides which grammars need
regeneration, runs one or two external generator stages per grammar, and
merges their output into the project without overwriting user-owned files.
"""

from __future__ import annotations

__version__ = "0.1.0"

from gramforge.config import RunConfig, StageConfig, StageOutput, load_run_config
from gramforge.errors import (
    BatchFailedError,
    ConfigurationError,
    GramforgeError,
    MetadataError,
    ProcessorError,
)
from gramforge.orchestrator import Orchestrator, RunResult, RunStatus, run_goal
from gramforge.stages import StageInvoker, StageOutcome

__all__ = [
    "BatchFailedError",
    "ConfigurationError",
    "GramforgeError",
    "MetadataError",
    "Orchestrator",
    "ProcessorError",
    "RunConfig",
    "RunResult",
    "RunStatus",
    "StageConfig",
    "StageInvoker",
    "StageOutcome",
    "StageOutput",
    "__version__",
    "load_run_config",
    "run_goal",
]
