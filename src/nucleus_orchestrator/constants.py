"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Nucleus round loop.
DEFAULT_MAX_QUERY_ROUNDS: Final[int] = 3
DEFAULT_MAX_RETRIEVAL_ROUNDS: Final[int] = 1
DEFAULT_BUDGET_THRESHOLD: Final[float] = 0.85

# Context provider adapter.
DEFAULT_MAX_ARTIFACTS_PER_CALL: Final[int] = 16

# Executor and checkpoints.
CHECKPOINT_VERSION: Final[str] = "1.0.0"
DEFAULT_CHECKPOINT_INTERVAL: Final[int] = 1
DEFAULT_KEEP_CHECKPOINTS: Final[int] = 5

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
LEDGER_EXPORT_SCHEMA_VERSION: Final[int] = 1
CHECKPOINT_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the working directory unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
CHECKPOINT_DIR: Final[PurePosixPath] = PurePosixPath("state/checkpoints")

ENV_PREFIX: Final[str] = "NUCLEUS_"

__all__ = [
    "CHECKPOINT_DB_SCHEMA_VERSION",
    "CHECKPOINT_DIR",
    "CHECKPOINT_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BUDGET_THRESHOLD",
    "DEFAULT_CHECKPOINT_INTERVAL",
    "DEFAULT_KEEP_CHECKPOINTS",
    "DEFAULT_MAX_ARTIFACTS_PER_CALL",
    "DEFAULT_MAX_QUERY_ROUNDS",
    "DEFAULT_MAX_RETRIEVAL_ROUNDS",
    "ENV_PREFIX",
    "LEDGER_EXPORT_SCHEMA_VERSION",
    "STATE_DIR",
]
