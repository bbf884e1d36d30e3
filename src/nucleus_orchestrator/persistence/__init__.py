"""Persistence public API: checkpoint records and stores."""

from nucleus_orchestrator.persistence.checkpoint_store import (
    Checkpoint,
    CheckpointCorruptedError,
    CheckpointError,
    CheckpointMetadata,
    CheckpointNotFoundError,
    CheckpointStore,
    CheckpointVersionError,
    FileCheckpointStore,
    MemoryCheckpointStore,
    validate_checkpoint,
)
from nucleus_orchestrator.persistence.sqlite_store import (
    CheckpointDBMigrationError,
    SQLiteCheckpointStore,
)

__all__ = [
    "Checkpoint",
    "CheckpointCorruptedError",
    "CheckpointDBMigrationError",
    "CheckpointError",
    "CheckpointMetadata",
    "CheckpointNotFoundError",
    "CheckpointStore",
    "CheckpointVersionError",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "SQLiteCheckpointStore",
    "validate_checkpoint",
]
