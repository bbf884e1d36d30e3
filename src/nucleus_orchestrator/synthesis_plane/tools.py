"""
nucleus-orchestrator — tool and model-call contracts

File: src/nucleus_orchestrator/synthesis_plane/tools.py
Last updated: 2026-10-19

Purpose
- Define the tool contract business capabilities implement, and the normalized
  shapes exchanged with a model: tool definitions, tool calls, responses.
- Instrument tool invocations with ``TOOL_CALL`` ledger entries.

Functional requirements
- Every instrumented call writes a ``start`` entry and exactly one of
  ``complete`` or ``error``; errors are re-raised unchanged.
- Model responses given as plain mappings are coerced into ``LLMResponse``
  (``tool_calls`` or ``toolCalls`` keys, ``input`` or ``arguments`` payloads).
"""

from __future__ import annotations

import abc
import copy
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from nucleus_orchestrator.domain.ids import generate_tool_call_id
from nucleus_orchestrator.knowledge_plane.ledger import LedgerAppend, LedgerEntryType
from nucleus_orchestrator.utils.hashing import canonical_json, sha256_text

_ENVELOPE_DIGEST_LENGTH = 32


def _validate_non_empty_str(value: str, field_name: str, *, strip: bool = True) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip() if strip else value
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def payload_digest(payload: Any) -> str:
    """Short digest of a tool payload; strings are hashed verbatim."""
    normalized = payload if isinstance(payload, str) else canonical_json(payload)
    return sha256_text(normalized)[:_ENVELOPE_DIGEST_LENGTH]


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """Tool contract exposed to the model."""

    name: str
    description: str | None = None
    json_schema: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "ToolDefinition.name"))
        object.__setattr__(self, "json_schema", copy.deepcopy(dict(self.json_schema)))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "json_schema": dict(self.json_schema)}
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Normalized tool call emitted by a model; ``output`` is set when the provider ran the tool itself."""

    call_id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    output: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "call_id", _validate_non_empty_str(self.call_id, "ToolCall.call_id")
        )
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "ToolCall.name"))
        if not isinstance(self.arguments, Mapping):
            raise TypeError("ToolCall.arguments must be a mapping")
        object.__setattr__(self, "arguments", copy.deepcopy(dict(self.arguments)))
        object.__setattr__(self, "output", copy.deepcopy(self.output))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "call_id": self.call_id,
            "name": self.name,
            "arguments": dict(self.arguments),
        }
        if self.output is not None:
            payload["output"] = copy.deepcopy(self.output)
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ToolCall:
        arguments = data.get("arguments", data.get("input"))
        return cls(
            call_id=str(data.get("call_id") or data.get("id") or generate_tool_call_id()),
            name=data["name"],
            arguments=arguments if isinstance(arguments, Mapping) else {},
            output=data.get("output"),
        )


@dataclass(frozen=True, slots=True)
class LLMConfig:
    provider: str = "unspecified"
    model: str = "unspecified"
    temperature: float | None = None
    seed: int | None = None
    max_tokens: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "temperature": self.temperature,
            "seed": self.seed,
            "max_tokens": self.max_tokens,
        }


@dataclass(frozen=True, slots=True)
class LLMResponse:
    reasoning: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    raw: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))


LLMCallFn: TypeAlias = Callable[
    [str, Sequence[ToolDefinition], LLMConfig], Awaitable["LLMResponse | Mapping[str, Any]"]
]


def coerce_llm_response(value: LLMResponse | Mapping[str, Any]) -> LLMResponse:
    if isinstance(value, LLMResponse):
        return value
    if not isinstance(value, Mapping):
        raise TypeError(f"model call must return LLMResponse or mapping, got {type(value).__name__}")
    raw_calls = value.get("tool_calls", value.get("toolCalls")) or ()
    calls = tuple(
        item if isinstance(item, ToolCall) else ToolCall.from_mapping(item) for item in raw_calls
    )
    reasoning = value.get("reasoning")
    return LLMResponse(
        reasoning=reasoning if isinstance(reasoning, str) else None,
        tool_calls=calls,
        raw=value.get("raw"),
    )


class Tool(abc.ABC):
    """Business tool reachable from capabilities and the context provider adapter."""

    version: str | None = None

    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def call(self, input: Any) -> Any: ...


class FunctionTool(Tool):
    """Adapt a plain async callable to the ``Tool`` contract."""

    def __init__(
        self,
        name: str,
        fn: Callable[[Any], Awaitable[Any]],
        *,
        version: str | None = None,
    ) -> None:
        self._name = _validate_non_empty_str(name, "FunctionTool.name")
        self._fn = fn
        self.version = version

    def name(self) -> str:
        return self._name

    async def call(self, input: Any) -> Any:
        return await self._fn(input)


class ToolRegistry:
    """Name-keyed tool lookup."""

    def __init__(self, tools: Sequence[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        name = tool.name()
        if name in self._tools:
            raise ValueError(f"tool already registered: {name}")
        self._tools[name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._tools))


async def invoke_tool(
    tool: Tool,
    input: Any,
    *,
    ledger_append: LedgerAppend | None,
    task_id: str | None = None,
    capability: str | None = None,
    call_id: str | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """Call ``tool`` and record its envelope as ``TOOL_CALL`` start/complete/error entries."""
    tool_name = tool.name()
    started = clock()
    envelope: dict[str, Any] = {
        "id": call_id or generate_tool_call_id(),
        "name": tool_name,
        "input": copy.deepcopy(input) if input is not None else {},
        "metadata": {"digest": payload_digest(input if input is not None else {})},
    }
    if tool.version is not None:
        envelope["version"] = tool.version

    def _record(stage: str, body: dict[str, Any]) -> None:
        if ledger_append is None:
            return
        ledger_append(
            LedgerEntryType.TOOL_CALL,
            {
                "stage": stage,
                "task_id": task_id,
                "capability": capability,
                "tool": tool_name,
                "envelope": body,
            },
        )

    _record("start", envelope)
    try:
        result = await tool.call(input)
    except Exception as exc:
        failed = copy.deepcopy(envelope)
        failed["error"] = {"code": type(exc).__name__, "message": str(exc)}
        failed["metadata"]["duration_ms"] = round((clock() - started) * 1000, 3)
        _record("error", failed)
        raise

    completed = copy.deepcopy(envelope)
    completed["output"] = copy.deepcopy(result)
    completed["metadata"]["duration_ms"] = round((clock() - started) * 1000, 3)
    _record("complete", completed)
    return result


class InstrumentedTool(Tool):
    """Wrapper that routes every ``call`` through :func:`invoke_tool`."""

    def __init__(
        self,
        inner: Tool,
        *,
        ledger_append: LedgerAppend | None,
        task_id: str | None = None,
        capability: str | None = None,
    ) -> None:
        self._inner = inner
        self._ledger_append = ledger_append
        self._task_id = task_id
        self._capability = capability
        self.version = inner.version

    def name(self) -> str:
        return self._inner.name()

    async def call(self, input: Any) -> Any:
        return await invoke_tool(
            self._inner,
            input,
            ledger_append=self._ledger_append,
            task_id=self._task_id,
            capability=self._capability,
        )


__all__ = [
    "FunctionTool",
    "InstrumentedTool",
    "LLMCallFn",
    "LLMConfig",
    "LLMResponse",
    "Tool",
    "ToolCall",
    "ToolDefinition",
    "ToolRegistry",
    "coerce_llm_response",
    "invoke_tool",
    "payload_digest",
]
