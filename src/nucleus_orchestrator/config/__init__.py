"""
nucleus-orchestrator config package public API.

File: src/nucleus_orchestrator/config/__init__.py
Last updated: 2026-10-19

Purpose
- Export config loading and validation entrypoints, the runtime settings
  types and public error types.

Functional requirements
- Support loading from ``nucleus.toml`` + ``NUCLEUS_`` env overrides.
- Fail fast with clear structured validation and load errors.
"""

from nucleus_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    build_checkpoint_store,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from nucleus_orchestrator.config.schema import (
    CHECKPOINT_BACKENDS,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    ExecutorSettings,
    NucleusSettings,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "CHECKPOINT_BACKENDS",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "PATH_FIELDS",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ExecutorSettings",
    "NucleusSettings",
    "assert_valid_config",
    "build_checkpoint_store",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
