from __future__ import annotations

from typing import Any

import pytest

from nucleus_orchestrator.control_plane.capabilities import (
    Capability,
    CapabilityNotFoundError,
    CapabilityRegistry,
    RunContext,
)
from nucleus_orchestrator.domain.models import Goal, TaskSpec
from nucleus_orchestrator.knowledge_plane.context_packet import ContextBuilder
from nucleus_orchestrator.knowledge_plane.ledger import Ledger, LedgerEntryType
from nucleus_orchestrator.synthesis_plane.tools import FunctionTool, ToolRegistry


class Doubler(Capability):
    async def execute(self, ctx: RunContext, input: Any) -> Any:
        return input * 2


async def _echo(ctx: RunContext, input: Any) -> Any:
    return {"task": ctx.task_id, "input": input}


def test_registry_registration_rules() -> None:
    registry = CapabilityRegistry({"double": Doubler(), "echo": _echo})

    assert registry.names() == ("double", "echo")
    assert "echo" in registry
    assert registry.missing(["echo", "refund", "audit", "refund"]) == ("audit", "refund")
    with pytest.raises(ValueError, match="already registered: echo"):
        registry.register("echo", _echo)
    with pytest.raises(ValueError, match="non-empty"):
        registry.register(" ", _echo)
    with pytest.raises(TypeError, match="must be a Capability or async callable"):
        registry.register("broken", 42)  # type: ignore[arg-type]
    with pytest.raises(CapabilityNotFoundError) as excinfo:
        registry.get("refund")
    assert excinfo.value.capability_ref == "refund"


async def test_function_capabilities_receive_the_run_context() -> None:
    ledger = Ledger()
    ctx = RunContext(
        run_id="run-1",
        goal=Goal(id="g", intent="demo"),
        context=ContextBuilder().build(),
        task=TaskSpec(id="t1", capability_ref="echo"),
        outputs={},
        ledger_append=ledger.append,
    )
    registry = CapabilityRegistry({"echo": _echo, "double": Doubler()})

    assert await registry.get("echo").execute(ctx, 3) == {"task": "t1", "input": 3}
    assert await registry.get("double").execute(ctx, 3) == 6


async def test_run_context_tools_are_instrumented() -> None:
    async def lookup(payload: Any) -> Any:
        return {"found": payload}

    ledger = Ledger()
    ctx = RunContext(
        run_id="run-1",
        goal=Goal(id="g", intent="demo"),
        context=ContextBuilder().build(),
        task=TaskSpec(id="t1", capability_ref="crm.fetch"),
        outputs={},
        ledger_append=ledger.append,
        tools=ToolRegistry([FunctionTool("crm", lookup)]),
    )

    assert await ctx.get_tool("crm").call("O1") == {"found": "O1"}
    entries = ledger.entries_of_type(LedgerEntryType.TOOL_CALL)
    assert [entry.details["stage"] for entry in entries] == ["start", "complete"]
    assert entries[0].details["capability"] == "crm.fetch"
    assert entries[0].details["task_id"] == "t1"
    with pytest.raises(KeyError, match="not registered"):
        ctx.get_tool("missing")
