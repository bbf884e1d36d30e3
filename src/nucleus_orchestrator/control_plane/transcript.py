"""Narrative events derived from ledger appends, for UIs and run logs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from nucleus_orchestrator.knowledge_plane.ledger import Ledger, LedgerEntry, LedgerEntryType


class TranscriptEventType(StrEnum):
    REASONING = "nucleus-reasoning"
    TASK_OUTPUT = "task-completed"
    TOOL_CALL = "tool-call"
    ERROR = "task-error"


@dataclass(frozen=True, slots=True)
class TranscriptEvent:
    type: TranscriptEventType
    seq: int
    task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "seq": self.seq,
            "task_id": self.task_id,
            "payload": dict(self.payload),
        }


TranscriptHandler = Callable[[TranscriptEvent], object]


class ExecutionTranscript:
    """
    Ledger listener that keeps a readable account of a run.

    Pass it as an executor ``ledger_listener`` or ``attach`` it to a ledger;
    entries without a narrative meaning (policy, guards, checkpoints of
    context) are ignored. Tool calls only surface once they complete or fail.
    """

    def __init__(self, on_event: TranscriptHandler | None = None, *, logger: Any | None = None) -> None:
        self._events: list[TranscriptEvent] = []
        self._on_event = on_event
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def __call__(self, entry: LedgerEntry) -> None:
        event = map_ledger_entry(entry)
        if event is None:
            return
        self._events.append(event)
        self._logger.debug("transcript_event", event_type=event.type.value, seq=event.seq)
        if self._on_event is not None:
            self._on_event(event)

    @property
    def events(self) -> tuple[TranscriptEvent, ...]:
        return tuple(self._events)

    def attach(self, ledger: Ledger) -> int:
        return ledger.subscribe(self)

    def replay(self, ledger: Ledger) -> None:
        """Feed every entry already in ``ledger`` through the transcript."""
        for entry in ledger.entries():
            self(entry)

    def render_text(self) -> str:
        lines: list[str] = []
        for event in self._events:
            prefix = f"[{event.task_id}] " if event.task_id else ""
            if event.type is TranscriptEventType.REASONING:
                lines.append(f"{prefix}thinking: {event.payload['reasoning']}")
            elif event.type is TranscriptEventType.TASK_OUTPUT:
                lines.append(f"{prefix}completed")
            elif event.type is TranscriptEventType.TOOL_CALL:
                lines.append(f"{prefix}tool {event.payload['tool']} {event.payload['stage']}")
            else:
                lines.append(f"{prefix}error {event.payload['error_class']}: {event.payload['error']}")
        return "\n".join(lines)


def map_ledger_entry(entry: LedgerEntry) -> TranscriptEvent | None:
    details = entry.details
    if entry.type is LedgerEntryType.NUCLEUS_INFERENCE:
        reasoning = details.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            return None
        nucleus = details.get("nucleus") or {}
        return TranscriptEvent(
            type=TranscriptEventType.REASONING,
            seq=entry.seq,
            task_id=nucleus.get("task_id"),
            payload={
                "reasoning": reasoning.strip(),
                "plan_id": nucleus.get("plan_id"),
                "stage": details.get("stage"),
            },
        )
    if entry.type is LedgerEntryType.TASK_END:
        return TranscriptEvent(
            type=TranscriptEventType.TASK_OUTPUT,
            seq=entry.seq,
            task_id=details.get("task_id"),
            payload={"output": details.get("output"), "reused": bool(details.get("reused"))},
        )
    if entry.type is LedgerEntryType.TOOL_CALL:
        if details.get("stage") == "start":
            return None
        return TranscriptEvent(
            type=TranscriptEventType.TOOL_CALL,
            seq=entry.seq,
            task_id=details.get("task_id"),
            payload={"tool": details.get("tool"), "stage": details.get("stage")},
        )
    if entry.type is LedgerEntryType.ERROR:
        return TranscriptEvent(
            type=TranscriptEventType.ERROR,
            seq=entry.seq,
            task_id=details.get("task_id"),
            payload={"error_class": details.get("error_class"), "error": details.get("error")},
        )
    return None


__all__ = [
    "ExecutionTranscript",
    "TranscriptEvent",
    "TranscriptEventType",
    "map_ledger_entry",
]
