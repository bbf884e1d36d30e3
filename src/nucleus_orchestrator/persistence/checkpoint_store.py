"""
nucleus-orchestrator — executor checkpoints

File: src/nucleus_orchestrator/persistence/checkpoint_store.py
Last updated: 2026-10-19

Purpose
- Define the checkpoint record the resumable executor persists after settled
  tasks, and the store contract used to save, load, list and prune them.
- Provide in-memory and file-backed stores.

Functional requirements
- Checkpoints hold state by value (plain JSON); loading one gives back exactly
  what was saved.
- ``get(run_id)`` without an id returns the checkpoint with the highest sequence;
  a run or id with no checkpoint gives ``None``.
- ``latest_sequence`` reads only sequence numbers, so one unreadable older
  checkpoint does not block resuming from a good one.
- Version compatibility is decided by the major component of ``version``.
- The file store writes ``<base>/<run_id>/<sequence>_<id>.json`` atomically.

Non-functional requirements
- Blocking file I/O runs in ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, Protocol

from nucleus_orchestrator.constants import CHECKPOINT_VERSION, DEFAULT_KEEP_CHECKPOINTS
from nucleus_orchestrator.utils.fs import atomic_write
from nucleus_orchestrator.utils.hashing import canonical_json

PathLike = str | os.PathLike[str]

REQUIRED_STATE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "goal",
        "context",
        "plan",
        "outputs",
        "executed_task_ids",
        "failed_tasks",
        "edge_state",
        "idempotency",
        "ledger",
        "metrics",
    }
)
_REQUIRED_FIELDS: Final[tuple[str, ...]] = ("id", "run_id", "ts", "version", "sequence", "state")


class CheckpointError(RuntimeError):
    """Base error for checkpoint persistence."""


class CheckpointNotFoundError(CheckpointError, LookupError):
    """Raised when a run has no checkpoint, or not the requested one."""


class CheckpointVersionError(CheckpointError):
    """Raised when a checkpoint's major version differs from this build's."""


class CheckpointCorruptedError(CheckpointError):
    """Raised when a checkpoint is unreadable or missing required fields."""


@dataclass(frozen=True, slots=True)
class CheckpointMetadata:
    tasks_completed: int = 0
    tasks_failed: int = 0
    reason: str = "task_settled"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> CheckpointMetadata:
        data = data or {}
        return cls(
            tasks_completed=int(data.get("tasks_completed", 0)),
            tasks_failed=int(data.get("tasks_failed", 0)),
            reason=str(data.get("reason", "task_settled")),
        )


@dataclass(frozen=True, slots=True)
class Checkpoint:
    id: str
    run_id: str
    ts: str
    sequence: int
    state: Mapping[str, Any]
    version: str = CHECKPOINT_VERSION
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "ts": self.ts,
            "version": self.version,
            "sequence": self.sequence,
            "metadata": self.metadata.to_dict(),
            "state": copy.deepcopy(dict(self.state)),
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        validate_checkpoint(data)
        return cls(
            id=str(data["id"]),
            run_id=str(data["run_id"]),
            ts=str(data["ts"]),
            version=str(data["version"]),
            sequence=int(data["sequence"]),
            state=copy.deepcopy(dict(data["state"])),
            metadata=CheckpointMetadata.from_dict(data.get("metadata")),
        )

    @classmethod
    def from_json(cls, raw: str) -> Checkpoint:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CheckpointCorruptedError(f"checkpoint is not valid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise CheckpointCorruptedError("checkpoint must be a JSON object")
        return cls.from_dict(data)


def utc_timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _major(version: str) -> str:
    return version.split(".", 1)[0]


def validate_checkpoint(data: Mapping[str, Any]) -> None:
    """Check fields, major version and state keys; raise ``CheckpointError`` subclasses."""
    missing = [name for name in _REQUIRED_FIELDS if name not in data]
    if missing:
        raise CheckpointCorruptedError(f"checkpoint missing required fields: {', '.join(missing)}")
    version = data["version"]
    if not isinstance(version, str) or not version:
        raise CheckpointCorruptedError("checkpoint version must be a non-empty string")
    if _major(version) != _major(CHECKPOINT_VERSION):
        raise CheckpointVersionError(
            f"checkpoint version {version} is incompatible with {CHECKPOINT_VERSION}"
        )
    if isinstance(data["sequence"], bool) or not isinstance(data["sequence"], int):
        raise CheckpointCorruptedError("checkpoint sequence must be an integer")
    state = data["state"]
    if not isinstance(state, Mapping):
        raise CheckpointCorruptedError("checkpoint state must be an object")
    missing_state = sorted(REQUIRED_STATE_KEYS - set(state))
    if missing_state:
        raise CheckpointCorruptedError(
            f"checkpoint state missing required keys: {', '.join(missing_state)}"
        )


class CheckpointStore(Protocol):
    async def put(self, checkpoint: Checkpoint) -> None: ...

    async def get(self, run_id: str, checkpoint_id: str | None = None) -> Checkpoint | None: ...

    async def latest_sequence(self, run_id: str) -> int | None: ...
    async def list(self, run_id: str) -> list[Checkpoint]: ...

    async def prune(self, run_id: str, keep_last: int = DEFAULT_KEEP_CHECKPOINTS) -> int: ...


def _safe_component(value: str, label: str) -> str:
    if not value or value in {".", ".."} or any(sep in value for sep in ("/", "\\", "\x00")):
        raise ValueError(f"{label} is not a safe path component: {value!r}")
    return value


def _check_keep_last(keep_last: int) -> None:
    if isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last < 0:
        raise ValueError("keep_last must be an integer >= 0")


class MemoryCheckpointStore:
    """Process-local store; saves and returns deep copies."""

    def __init__(self) -> None:
        self._runs: dict[str, list[Checkpoint]] = {}

    async def put(self, checkpoint: Checkpoint) -> None:
        stored = Checkpoint.from_dict(checkpoint.to_dict())
        self._runs.setdefault(checkpoint.run_id, []).append(stored)
        self._runs[checkpoint.run_id].sort(key=lambda item: item.sequence)

    async def get(self, run_id: str, checkpoint_id: str | None = None) -> Checkpoint | None:
        checkpoints = self._runs.get(run_id, [])
        if checkpoint_id is None:
            return Checkpoint.from_dict(checkpoints[-1].to_dict()) if checkpoints else None
        for checkpoint in checkpoints:
            if checkpoint.id == checkpoint_id:
                return Checkpoint.from_dict(checkpoint.to_dict())
        return None

    async def latest_sequence(self, run_id: str) -> int | None:
        checkpoints = self._runs.get(run_id)
        return checkpoints[-1].sequence if checkpoints else None

    async def list(self, run_id: str) -> list[Checkpoint]:
        return [Checkpoint.from_dict(item.to_dict()) for item in self._runs.get(run_id, [])]

    async def prune(self, run_id: str, keep_last: int = DEFAULT_KEEP_CHECKPOINTS) -> int:
        _check_keep_last(keep_last)
        checkpoints = self._runs.get(run_id, [])
        removed = max(0, len(checkpoints) - keep_last)
        if removed:
            self._runs[run_id] = checkpoints[removed:]
        return removed

    def run_ids(self) -> list[str]:
        return sorted(self._runs)


class FileCheckpointStore:
    """One JSON file per checkpoint under ``<base>/<run_id>/``."""

    def __init__(self, base_dir: PathLike) -> None:
        self._base = Path(base_dir).expanduser()

    @property
    def base_dir(self) -> Path:
        return self._base

    def _run_dir(self, run_id: str) -> Path:
        return self._base / _safe_component(run_id, "run_id")

    @staticmethod
    def _filename(checkpoint: Checkpoint) -> str:
        return f"{checkpoint.sequence:08d}_{checkpoint.id}.json"

    async def put(self, checkpoint: Checkpoint) -> None:
        validate_checkpoint(checkpoint.to_dict())
        _safe_component(checkpoint.id, "checkpoint id")
        path = self._run_dir(checkpoint.run_id) / self._filename(checkpoint)
        await asyncio.to_thread(atomic_write, path, checkpoint.to_json() + "\n")

    async def get(self, run_id: str, checkpoint_id: str | None = None) -> Checkpoint | None:
        return await asyncio.to_thread(self._get_sync, run_id, checkpoint_id)

    async def latest_sequence(self, run_id: str) -> int | None:
        return await asyncio.to_thread(self._latest_sequence_sync, run_id)

    async def list(self, run_id: str) -> list[Checkpoint]:
        return await asyncio.to_thread(self._list_sync, run_id)

    async def prune(self, run_id: str, keep_last: int = DEFAULT_KEEP_CHECKPOINTS) -> int:
        _check_keep_last(keep_last)
        return await asyncio.to_thread(self._prune_sync, run_id, keep_last)

    def run_ids(self) -> list[str]:
        if not self._base.is_dir():
            return []
        return sorted(child.name for child in self._base.iterdir() if child.is_dir())

    def _paths(self, run_id: str) -> list[Path]:
        run_dir = self._run_dir(run_id)
        if not run_dir.is_dir():
            return []
        return sorted(run_dir.glob("*.json"))

    def _load(self, path: Path) -> Checkpoint:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CheckpointCorruptedError(f"cannot read checkpoint {path.name}: {exc}") from exc
        return Checkpoint.from_json(raw)

    def _get_sync(self, run_id: str, checkpoint_id: str | None) -> Checkpoint | None:
        paths = self._paths(run_id)
        if checkpoint_id is None:
            return self._load(paths[-1]) if paths else None
        for path in paths:
            if path.stem.endswith(f"_{checkpoint_id}"):
                return self._load(path)
        return None

    def _latest_sequence_sync(self, run_id: str) -> int | None:
        sequences = [
            int(prefix)
            for prefix, _, _ in (path.name.partition("_") for path in self._paths(run_id))
            if prefix.isdigit()
        ]
        return max(sequences, default=None)

    def _list_sync(self, run_id: str) -> list[Checkpoint]:
        return [self._load(path) for path in self._paths(run_id)]

    def _prune_sync(self, run_id: str, keep_last: int) -> int:
        paths = self._paths(run_id)
        stale = paths[: max(0, len(paths) - keep_last)]
        for path in stale:
            path.unlink(missing_ok=True)
        return len(stale)


__all__ = [
    "REQUIRED_STATE_KEYS",
    "Checkpoint",
    "CheckpointCorruptedError",
    "CheckpointError",
    "CheckpointMetadata",
    "CheckpointNotFoundError",
    "CheckpointStore",
    "CheckpointVersionError",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "utc_timestamp",
    "validate_checkpoint",
]
