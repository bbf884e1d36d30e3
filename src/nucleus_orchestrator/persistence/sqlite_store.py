"""
nucleus-orchestrator — SQLite checkpoint store

File: src/nucleus_orchestrator/persistence/sqlite_store.py
Last updated: 2026-10-19

Purpose
- Durable checkpoint storage in a single SQLite file, for runs that outlive
  the process and for the ``checkpoints`` CLI.

Functional requirements
- Schema is managed by ordered migrations recorded in ``schema_versions`` with
  a SHA-256 checksum of each migration's statements; an edited migration or a
  database newer than this build is refused.
- ``(run_id, sequence)`` is unique; checkpoints are stored as canonical JSON.

Non-functional requirements
- Every public coroutine offloads its blocking work with ``asyncio.to_thread``.
- Each operation opens a short-lived connection so no lock is held between calls.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from nucleus_orchestrator.constants import CHECKPOINT_DB_SCHEMA_VERSION, DEFAULT_KEEP_CHECKPOINTS
from nucleus_orchestrator.persistence.checkpoint_store import (
    Checkpoint,
    CheckpointError,
    utc_timestamp,
    validate_checkpoint,
)

PathLike = str | os.PathLike[str]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL,
        sequence INTEGER NOT NULL CHECK (sequence >= 0),
        version TEXT NOT NULL,
        ts TEXT NOT NULL,
        payload TEXT NOT NULL,
        UNIQUE (run_id, sequence)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_checkpoints_run_sequence
    ON checkpoints(run_id, sequence DESC)
    """,
)


class CheckpointDBMigrationError(CheckpointError):
    """Raised when the schema cannot be brought to this build's version."""


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="checkpoint_store",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "checkpoint_store", _MIGRATION_0001_STATEMENTS),
    ),
)


class SQLiteCheckpointStore:
    """Checkpoint store backed by one SQLite database file."""

    def __init__(self, path: PathLike, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def migrate(self) -> int:
        """Apply pending migrations idempotently and return the schema version."""
        with self._connection() as conn:
            conn.execute(_SCHEMA_VERSIONS_TABLE_SQL)
            applied = self._load_applied_migrations(conn)
            current = max(applied, default=0)
            if current > CHECKPOINT_DB_SCHEMA_VERSION:
                raise CheckpointDBMigrationError(
                    "checkpoint database schema is newer than supported "
                    f"(db={current}, code={CHECKPOINT_DB_SCHEMA_VERSION})"
                )
            for migration in _MIGRATIONS:
                if migration.version > CHECKPOINT_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise CheckpointDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue
                with self._transaction(conn) as tx:
                    for statement in migration.statements:
                        tx.execute(statement)
                    tx.execute(
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, utc_timestamp()),
                    )
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions"
            ).fetchone()
        self._migrated = True
        return int(row["version"]) if row is not None else 0

    def schema_history(self) -> list[MigrationRecord]:
        self._ensure_schema()
        with self._connection() as conn:
            return list(self._load_applied_migrations(conn).values())

    def _ensure_schema(self) -> None:
        if not self._migrated:
            self.migrate()

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = conn.execute(
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version ASC"
        ).fetchall()
        out: dict[int, MigrationRecord] = {}
        for row in rows:
            if not isinstance(row["version"], int) or not isinstance(row["checksum"], str):
                raise CheckpointDBMigrationError("schema_versions row is malformed")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=row["checksum"],
                applied_at=str(row["applied_at"]),
            )
        return out

    # ------------------------------------------------------------------
    # Store contract
    # ------------------------------------------------------------------

    async def put(self, checkpoint: Checkpoint) -> None:
        await asyncio.to_thread(self._put_sync, checkpoint)

    async def get(self, run_id: str, checkpoint_id: str | None = None) -> Checkpoint | None:
        return await asyncio.to_thread(self._get_sync, run_id, checkpoint_id)

    async def latest_sequence(self, run_id: str) -> int | None:
        return await asyncio.to_thread(self._latest_sequence_sync, run_id)

    async def list(self, run_id: str) -> list[Checkpoint]:
        return await asyncio.to_thread(self._list_sync, run_id)

    async def prune(self, run_id: str, keep_last: int = DEFAULT_KEEP_CHECKPOINTS) -> int:
        if isinstance(keep_last, bool) or not isinstance(keep_last, int) or keep_last < 0:
            raise ValueError("keep_last must be an integer >= 0")
        return await asyncio.to_thread(self._prune_sync, run_id, keep_last)

    def run_ids(self) -> list[str]:
        self._ensure_schema()
        with self._connection() as conn:
            rows = conn.execute("SELECT DISTINCT run_id FROM checkpoints ORDER BY run_id").fetchall()
        return [str(row["run_id"]) for row in rows]

    def _put_sync(self, checkpoint: Checkpoint) -> None:
        validate_checkpoint(checkpoint.to_dict())
        self._ensure_schema()
        with self._connection() as conn, self._transaction(conn) as tx:
            try:
                tx.execute(
                    """
                    INSERT INTO checkpoints (id, run_id, sequence, version, ts, payload)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        checkpoint.id,
                        checkpoint.run_id,
                        checkpoint.sequence,
                        checkpoint.version,
                        checkpoint.ts,
                        checkpoint.to_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise CheckpointError(
                    f"checkpoint {checkpoint.id} (run {checkpoint.run_id}, "
                    f"sequence {checkpoint.sequence}) already exists"
                ) from exc

    def _get_sync(self, run_id: str, checkpoint_id: str | None) -> Checkpoint | None:
        self._ensure_schema()
        with self._connection() as conn:
            if checkpoint_id is None:
                row = conn.execute(
                    "SELECT payload FROM checkpoints WHERE run_id = ? ORDER BY sequence DESC LIMIT 1",
                    (run_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT payload FROM checkpoints WHERE run_id = ? AND id = ?",
                    (run_id, checkpoint_id),
                ).fetchone()
        if row is None:
            return None
        return Checkpoint.from_json(str(row["payload"]))

    def _latest_sequence_sync(self, run_id: str) -> int | None:
        self._ensure_schema()
        with self._connection() as conn:
            row = conn.execute(
                "SELECT MAX(sequence) AS sequence FROM checkpoints WHERE run_id = ?", (run_id,)
            ).fetchone()
        return None if row is None or row["sequence"] is None else int(row["sequence"])

    def _list_sync(self, run_id: str) -> list[Checkpoint]:
        self._ensure_schema()
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload FROM checkpoints WHERE run_id = ? ORDER BY sequence ASC",
                (run_id,),
            ).fetchall()
        return [Checkpoint.from_json(str(row["payload"])) for row in rows]

    def _prune_sync(self, run_id: str, keep_last: int) -> int:
        self._ensure_schema()
        with self._connection() as conn, self._transaction(conn) as tx:
            cursor = tx.execute(
                """
                DELETE FROM checkpoints
                WHERE run_id = ?
                  AND id NOT IN (
                    SELECT id FROM checkpoints WHERE run_id = ?
                    ORDER BY sequence DESC LIMIT ?
                  )
                """,
                (run_id, run_id, keep_last),
            )
            return cursor.rowcount


__all__ = [
    "CheckpointDBMigrationError",
    "MigrationRecord",
    "SQLiteCheckpointStore",
]
