"""Shared scripted model fakes for Nucleus, provider and executor tests."""

from __future__ import annotations

import itertools
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from nucleus_orchestrator.knowledge_plane.context_packet import ContextBuilder, ContextPacket
from nucleus_orchestrator.synthesis_plane.tools import (
    LLMConfig,
    LLMResponse,
    ToolCall,
    ToolDefinition,
)

_CALL_IDS = itertools.count(1)

Script = LLMResponse | Callable[[str, Sequence[ToolDefinition]], LLMResponse]


def tool_call(name: str, **arguments: Any) -> ToolCall:
    return ToolCall(call_id=f"call-{next(_CALL_IDS)}", name=name, arguments=arguments)


def respond(*calls: ToolCall, reasoning: str | None = None, raw: Any = None) -> LLMResponse:
    return LLMResponse(reasoning=reasoning, tool_calls=calls, raw=raw)


@dataclass(slots=True)
class RecordedCall:
    prompt: str
    tool_names: tuple[str, ...]
    config: LLMConfig


@dataclass(slots=True)
class ScriptedLLM:
    """Model fake: returns scripted responses in order, then ``default`` forever."""

    script: list[Script] = field(default_factory=list)
    default: LLMResponse = field(default_factory=lambda: LLMResponse(reasoning="done"))
    calls: list[RecordedCall] = field(default_factory=list)

    async def __call__(
        self, prompt: str, tools: Sequence[ToolDefinition], config: LLMConfig
    ) -> LLMResponse:
        self.calls.append(RecordedCall(prompt, tuple(tool.name for tool in tools), config))
        if not self.script:
            return self.default
        step = self.script.pop(0)
        if callable(step) and not isinstance(step, LLMResponse):
            return step(prompt, tools)
        return step


def order_context(**extra_facts: Any) -> ContextPacket:
    builder = ContextBuilder().add_fact("orderId", "O123").add_source("crm://orders/O123")
    builder.add_facts(extra_facts)
    return builder.build()


__all__ = [
    "RecordedCall",
    "ScriptedLLM",
    "order_context",
    "respond",
    "tool_call",
]
