"""
nucleus-orchestrator — decision ledger unit tests.

Purpose
- Validate ordering, digest chaining, tamper detection, listeners, snapshots
  and JSON-lines export.
"""

from __future__ import annotations

import itertools
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from nucleus_orchestrator.knowledge_plane.ledger import (
    Ledger,
    LedgerEntry,
    LedgerEntryType,
    LedgerIntegrityError,
    compute_entry_digest,
)

_FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ledger() -> Ledger:
    counter = itertools.count()
    return Ledger(clock=lambda: _FIXED_NOW, id_factory=lambda: f"led-{next(counter)}")


def _populated() -> Ledger:
    ledger = _ledger()
    ledger.append(LedgerEntryType.PLAN_SELECTED, {"plan_id": "p1"})
    ledger.append(LedgerEntryType.TASK_START, {"task_id": "a", "attempt": 1})
    ledger.append("TASK_END", {"task_id": "a", "output": {"ok": True}})
    return ledger


def test_append_assigns_dense_sequence_and_digests() -> None:
    ledger = _populated()
    entries = ledger.entries()

    assert [entry.seq for entry in entries] == [0, 1, 2]
    assert [entry.id for entry in entries] == ["led-0", "led-1", "led-2"]
    assert entries[2].type is LedgerEntryType.TASK_END
    assert entries[0].ts == "2026-03-01T12:00:00.000Z"
    assert entries[1].digest == compute_entry_digest({"task_id": "a", "attempt": 1})
    assert ledger.head == entries[-1].chain
    ledger.validate()


def test_append_copies_details() -> None:
    ledger = _ledger()
    details = {"task_id": "a", "nested": {"n": 1}}
    ledger.append(LedgerEntryType.TASK_START, details)
    details["nested"]["n"] = 2
    assert ledger.entries()[0].details["nested"]["n"] == 1
    ledger.validate()


def test_validate_detects_mutated_details() -> None:
    ledger = _populated()
    ledger.entries()[1].details["attempt"] = 99

    with pytest.raises(LedgerIntegrityError) as excinfo:
        ledger.validate()
    assert excinfo.value.seq == 1
    assert "digest mismatch" in excinfo.value.reason


def test_restore_detects_reordering_and_deletion() -> None:
    snapshot = _populated().snapshot()

    reordered = [snapshot[0], snapshot[2], snapshot[1]]
    with pytest.raises(LedgerIntegrityError):
        Ledger.restore(reordered)

    renumbered = [dict(snapshot[0]), dict(snapshot[2], seq=1)]
    with pytest.raises(LedgerIntegrityError, match="chain digest mismatch"):
        Ledger.restore(renumbered)


def test_snapshot_restore_roundtrip_continues_chain() -> None:
    original = _populated()
    restored = Ledger.restore(original.snapshot())

    assert restored.snapshot() == original.snapshot()
    entry = restored.append(LedgerEntryType.VERIFICATION, {"task_id": "a", "passed": True})
    assert entry.seq == 3
    restored.validate()


def test_entries_of_type_filters_in_order() -> None:
    ledger = _populated()
    ledger.append(LedgerEntryType.TASK_START, {"task_id": "b", "attempt": 1})
    starts = ledger.entries_of_type(LedgerEntryType.TASK_START)
    assert [entry.details["task_id"] for entry in starts] == ["a", "b"]
    assert len(ledger.entries_of_type("TASK_START", "TASK_END")) == 3


def test_listeners_receive_entries_and_failures_are_contained() -> None:
    ledger = _ledger()
    seen: list[LedgerEntry] = []

    def broken(entry: LedgerEntry) -> None:
        raise RuntimeError("listener bug")

    token = ledger.subscribe(seen.append)
    ledger.subscribe(broken)
    ledger.append(LedgerEntryType.ERROR, {"task_id": "a"})
    assert [entry.type for entry in seen] == [LedgerEntryType.ERROR]

    assert ledger.unsubscribe(token) is True
    assert ledger.unsubscribe(token) is False
    ledger.append(LedgerEntryType.ERROR, {"task_id": "b"})
    assert len(seen) == 1
    assert len(ledger) == 2


def test_jsonl_export_is_ordered_and_reloadable(tmp_path: Path) -> None:
    ledger = _populated()
    path = ledger.export_jsonl(tmp_path / "run.ledger.jsonl")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    first = json.loads(lines[0])
    assert first["type"] == "PLAN_SELECTED"
    assert first["digest"] == compute_entry_digest(first["details"])

    reloaded = Ledger.load_jsonl(path)
    assert reloaded.snapshot() == ledger.snapshot()


def test_jsonl_load_rejects_tampered_line() -> None:
    text = _populated().to_jsonl().replace('"task_id":"a"', '"task_id":"z"', 1)
    with pytest.raises(LedgerIntegrityError):
        Ledger.from_jsonl(text)


def test_unknown_entry_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        _ledger().append("NOT_A_TYPE", {})
    with pytest.raises(ValueError, match="missing required fields"):
        LedgerEntry.from_dict({"seq": 0})
