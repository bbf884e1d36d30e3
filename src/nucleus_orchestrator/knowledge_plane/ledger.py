"""
nucleus-orchestrator — append-only decision ledger

File: src/nucleus_orchestrator/knowledge_plane/ledger.py
Last updated: 2026-10-19

Purpose
- Record every plan selection, guard evaluation, policy decision, task boundary,
  model inference, tool call and context internalization in one ordered log.
- Make the log tamper-evident: each entry carries a digest of its details and a
  chain digest binding it to every entry before it.

Functional requirements
- Appends are serialized; ``seq`` is dense and strictly increasing.
- ``validate()`` recomputes every digest and chain link and raises
  ``LedgerIntegrityError`` on the first mismatch.
- Snapshots round-trip by value and are validated on restore.
- Export is ordered JSON lines, one independently hashable entry per line.

Non-functional requirements
- Listener failures never interrupt the appending component.
"""

from __future__ import annotations

import copy
import json
import os
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

import structlog

from nucleus_orchestrator.domain.ids import generate_ledger_entry_id
from nucleus_orchestrator.utils.fs import atomic_write
from nucleus_orchestrator.utils.hashing import canonical_json, sha256_json, sha256_text

PathLike = str | os.PathLike[str]

_GENESIS_CHAIN: Final[str] = "0" * 64


class LedgerEntryType(StrEnum):
    PLAN_SELECTED = "PLAN_SELECTED"
    BRANCH_TAKEN = "BRANCH_TAKEN"
    GUARD_EVAL = "GUARD_EVAL"
    TASK_START = "TASK_START"
    TASK_END = "TASK_END"
    POLICY_PRE = "POLICY_PRE"
    POLICY_POST = "POLICY_POST"
    POLICY_DECISION = "POLICY_DECISION"
    VERIFICATION = "VERIFICATION"
    ERROR = "ERROR"
    COMPENSATION = "COMPENSATION"
    NUCLEUS_INFERENCE = "NUCLEUS_INFERENCE"
    CONTEXT_INTERNALIZED = "CONTEXT_INTERNALIZED"
    TOOL_CALL = "TOOL_CALL"


class LedgerError(RuntimeError):
    """Base ledger error."""


class LedgerIntegrityError(LedgerError):
    """Raised when a stored entry no longer matches its recorded digests."""

    def __init__(self, seq: int, reason: str) -> None:
        self.seq = seq
        self.reason = reason
        super().__init__(f"ledger entry {seq}: {reason}")


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    seq: int
    id: str
    ts: str
    type: LedgerEntryType
    details: dict[str, Any] = field(default_factory=dict)
    digest: str = ""
    chain: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "id": self.id,
            "ts": self.ts,
            "type": self.type.value,
            "details": copy.deepcopy(self.details),
            "digest": self.digest,
            "chain": self.chain,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LedgerEntry:
        missing = sorted(
            key for key in ("seq", "id", "ts", "type", "details", "digest", "chain") if key not in data
        )
        if missing:
            raise ValueError(f"LedgerEntry: missing required fields: {missing}")
        details = data["details"]
        if not isinstance(details, Mapping):
            raise ValueError("LedgerEntry.details: expected object")
        try:
            entry_type = LedgerEntryType(data["type"])
        except ValueError as exc:
            raise ValueError(f"LedgerEntry.type: unknown entry type {data['type']!r}") from exc
        return cls(
            seq=int(data["seq"]),
            id=str(data["id"]),
            ts=str(data["ts"]),
            type=entry_type,
            details=copy.deepcopy(dict(details)),
            digest=str(data["digest"]),
            chain=str(data["chain"]),
        )


LedgerAppend = Callable[[LedgerEntryType, Mapping[str, Any]], LedgerEntry]
LedgerListener = Callable[[LedgerEntry], object]
Clock = Callable[[], datetime]


def compute_entry_digest(details: Mapping[str, Any]) -> str:
    return sha256_json(details)


def compute_chain_digest(previous_chain: str, digest: str) -> str:
    return sha256_text(f"{previous_chain}:{digest}")


class Ledger:
    """Thread-safe append-only ledger with digest chaining and listeners."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._entries: list[LedgerEntry] = []
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._id_factory = id_factory or generate_ledger_entry_id
        self._listeners: dict[int, LedgerListener] = {}
        self._next_token = 1
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.entries())

    @property
    def head(self) -> str:
        """Chain digest of the newest entry (genesis value when empty)."""
        with self._lock:
            return self._entries[-1].chain if self._entries else _GENESIS_CHAIN

    def append(self, entry_type: LedgerEntryType | str, details: Mapping[str, Any]) -> LedgerEntry:
        normalized_type = LedgerEntryType(entry_type)
        # Round-trip through canonical JSON so stored details are plain data and
        # the digest covers exactly what an export would contain.
        stored_details = json.loads(canonical_json(dict(details)))
        digest = compute_entry_digest(stored_details)

        with self._lock:
            previous_chain = self._entries[-1].chain if self._entries else _GENESIS_CHAIN
            entry = LedgerEntry(
                seq=len(self._entries),
                id=self._id_factory(),
                ts=_iso8601z(self._clock()),
                type=normalized_type,
                details=stored_details,
                digest=digest,
                chain=compute_chain_digest(previous_chain, digest),
            )
            self._entries.append(entry)
            listeners = tuple(self._listeners.values())

        for listener in listeners:
            try:
                listener(entry)
            except Exception:  # noqa: BLE001
                self._logger.warning(
                    "ledger_listener_failed",
                    entry_type=entry.type.value,
                    seq=entry.seq,
                    exc_info=True,
                )
        return entry

    def entries(self) -> tuple[LedgerEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def entries_of_type(self, *entry_types: LedgerEntryType | str) -> tuple[LedgerEntry, ...]:
        wanted = {LedgerEntryType(item) for item in entry_types}
        return tuple(entry for entry in self.entries() if entry.type in wanted)

    def subscribe(self, listener: LedgerListener) -> int:
        """Register ``listener`` for every future append; returns an unsubscribe token."""
        if not callable(listener):
            raise ValueError("listener must be callable")
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._listeners.pop(token, None) is not None

    def validate(self) -> None:
        """Recompute every digest and chain link; raise ``LedgerIntegrityError`` on mismatch."""
        _validate_entries(self.entries())

    def snapshot(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]

    @classmethod
    def restore(
        cls,
        snapshot: Sequence[Mapping[str, Any]],
        *,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        logger: Any | None = None,
    ) -> Ledger:
        """Rebuild a ledger from :meth:`snapshot` output, verifying every digest."""
        entries = tuple(LedgerEntry.from_dict(item) for item in snapshot)
        _validate_entries(entries)
        ledger = cls(clock=clock, id_factory=id_factory, logger=logger)
        ledger._entries.extend(entries)
        return ledger

    def to_jsonl(self) -> str:
        return "".join(canonical_json(item) + "\n" for item in self.snapshot())

    def export_jsonl(self, path: PathLike) -> Path:
        return atomic_write(path, self.to_jsonl())

    @classmethod
    def from_jsonl(cls, text: str, **kwargs: Any) -> Ledger:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
        return cls.restore(rows, **kwargs)

    @classmethod
    def load_jsonl(cls, path: PathLike, **kwargs: Any) -> Ledger:
        return cls.from_jsonl(Path(path).read_text(encoding="utf-8"), **kwargs)


def _validate_entries(entries: Iterable[LedgerEntry]) -> None:
    previous_chain = _GENESIS_CHAIN
    for index, entry in enumerate(entries):
        if entry.seq != index:
            raise LedgerIntegrityError(index, f"sequence gap (found seq {entry.seq})")
        expected_digest = compute_entry_digest(entry.details)
        if expected_digest != entry.digest:
            raise LedgerIntegrityError(entry.seq, "details digest mismatch")
        expected_chain = compute_chain_digest(previous_chain, entry.digest)
        if expected_chain != entry.chain:
            raise LedgerIntegrityError(entry.seq, "chain digest mismatch")
        previous_chain = entry.chain


def _iso8601z(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "Ledger",
    "LedgerAppend",
    "LedgerEntry",
    "LedgerEntryType",
    "LedgerError",
    "LedgerIntegrityError",
    "LedgerListener",
    "compute_chain_digest",
    "compute_entry_digest",
]
