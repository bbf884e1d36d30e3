"""Task capabilities and the per-task run context handed to them."""

from __future__ import annotations

import abc
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nucleus_orchestrator.synthesis_plane.tools import InstrumentedTool, ToolRegistry

if TYPE_CHECKING:
    from nucleus_orchestrator.domain.models import Goal, TaskSpec
    from nucleus_orchestrator.knowledge_plane.context_packet import ContextPacket
    from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope
    from nucleus_orchestrator.knowledge_plane.ledger import LedgerAppend
    from nucleus_orchestrator.synthesis_plane.nucleus import Nucleus
    from nucleus_orchestrator.utils.concurrency import CancellationToken


class CapabilityNotFoundError(LookupError):
    def __init__(self, capability_ref: str) -> None:
        super().__init__(f"no capability registered for {capability_ref!r}")
        self.capability_ref = capability_ref


@dataclass(frozen=True, slots=True)
class RunContext:
    """What a capability may see and use while executing one task attempt."""

    run_id: str
    goal: Goal
    context: ContextPacket
    task: TaskSpec
    outputs: Mapping[str, Any]
    ledger_append: LedgerAppend
    attempt: int = 1
    nucleus: Nucleus | None = None
    scope: InternalContextScope | None = None
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    cancel_token: CancellationToken | None = None

    @property
    def task_id(self) -> str:
        return self.task.id

    def get_tool(self, name: str) -> InstrumentedTool:
        """Registered tool wrapped so every call writes ``TOOL_CALL`` entries."""
        tool = self.tools.get(name)
        if tool is None:
            raise KeyError(f"tool {name!r} is not registered")
        return InstrumentedTool(
            tool,
            ledger_append=self.ledger_append,
            task_id=self.task.id,
            capability=self.task.capability_ref,
        )


class Capability(abc.ABC):
    """A task body: ``capability_ref`` in a plan resolves to one of these."""

    @abc.abstractmethod
    async def execute(self, ctx: RunContext, input: Any) -> Any: ...


CapabilityFn = Callable[[RunContext, Any], Awaitable[Any]]


class FunctionCapability(Capability):
    def __init__(self, fn: CapabilityFn) -> None:
        self._fn = fn

    async def execute(self, ctx: RunContext, input: Any) -> Any:
        return await self._fn(ctx, input)


class CapabilityRegistry:
    def __init__(self, capabilities: Mapping[str, Capability | CapabilityFn] | None = None) -> None:
        self._capabilities: dict[str, Capability] = {}
        for name, capability in (capabilities or {}).items():
            self.register(name, capability)

    def register(self, name: str, capability: Capability | CapabilityFn) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("capability name must be a non-empty string")
        if name in self._capabilities:
            raise ValueError(f"capability already registered: {name}")
        if not isinstance(capability, Capability):
            if not callable(capability):
                raise TypeError(f"capability {name!r} must be a Capability or async callable")
            capability = FunctionCapability(capability)
        self._capabilities[name] = capability

    def get(self, name: str) -> Capability:
        try:
            return self._capabilities[name]
        except KeyError:
            raise CapabilityNotFoundError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._capabilities))

    def missing(self, refs: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted({ref for ref in refs if ref not in self._capabilities}))


__all__ = [
    "Capability",
    "CapabilityFn",
    "CapabilityNotFoundError",
    "CapabilityRegistry",
    "FunctionCapability",
    "RunContext",
]
