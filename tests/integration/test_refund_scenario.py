"""
nucleus-orchestrator — end-to-end refund scenario

File: tests/integration/test_refund_scenario.py
Last updated: 2026-10-19

Purpose
- Load a YAML plan document, bind one task to a Nucleus whose preflight asks
  an external provider for order history, let the model read the retrieved
  artifact, verify and postcheck the decision, and follow guarded edges.
- Route a compensable failure through its compensation and error branch.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from nucleus_orchestrator.config.schema import NucleusSettings
from nucleus_orchestrator.control_plane.capabilities import RunContext
from nucleus_orchestrator.control_plane.executor import ResumableExecutor
from nucleus_orchestrator.control_plane.retry import TaskExecutionError
from nucleus_orchestrator.control_plane.transcript import ExecutionTranscript
from nucleus_orchestrator.domain.models import ErrorClass
from nucleus_orchestrator.knowledge_plane.ledger import Ledger, LedgerEntryType
from nucleus_orchestrator.persistence.checkpoint_store import MemoryCheckpointStore
from nucleus_orchestrator.planning.plan_loader import load_plan_document
from nucleus_orchestrator.synthesis_plane.context_provider import ExternalContextProviderAdapter
from nucleus_orchestrator.synthesis_plane.tools import FunctionTool

from ..unit.synthesis_plane import ScriptedLLM, respond, tool_call

pytestmark = pytest.mark.integration

DECISION_DOCUMENT = """
goal:
  id: goal-refund
  intent: Decide whether order O123 qualifies for a refund
context:
  sources: [crm://orders/O123]
  facts:
    orderId: O123
    amount: 40
plan:
  id: plan-refund-decision
  capabilityMapVersion: "2"
  tasks:
    - id: decide
      capabilityRef: refund.decide
      nucleusRef: default
      input: {orderId: O123}
      verification: "output.approved === true"
    - id: notify
      capabilityRef: customer.notify
  edges:
    - from: decide
      to: notify
      guard: "outputs.decide.approved === true"
"""

CHARGE_DOCUMENT = """
goal:
  id: goal-charge
  intent: Charge the replacement order
context:
  facts:
    orderId: O124
plan:
  id: plan-charge
  capabilityMapVersion: "2"
  tasks:
    - id: charge
      capabilityRef: payments.charge
      input: {amount: 40}
      compensation: payments.void
    - id: receipt
      capabilityRef: customer.notify
    - id: apologize
      capabilityRef: customer.notify
  edges:
    - from: charge
      to: receipt
    - from: charge
      to: apologize
      onError: COMPENSATION_REQUIRED
"""


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


async def test_nucleus_decision_with_external_context(tmp_path: Path) -> None:
    document = load_plan_document(_write(tmp_path, "decision.yaml", DECISION_DOCUMENT))
    assert document.goal is not None and document.context is not None

    history_requests: list[Any] = []

    async def crm(payload: Any) -> Any:
        history_requests.append(payload)
        return {"type": "order_history", "content": {"orders": 2, "refunds": 0}}

    seen: dict[str, str] = {}

    def read_history(prompt: str, tools: Any) -> Any:
        return respond(tool_call("query_context", action="read_artifact", artifact_id=seen["artifact_id"]))

    llm = ScriptedLLM(
        [
            respond(tool_call("request_context_retrieval", directive="crm: order history for O123")),
            respond(reasoning="history is now in scope"),
            read_history,
            respond(reasoning="approve: first refund on a repeat customer"),
            respond(reasoning="decision is complete"),
        ]
    )

    async def decide(ctx: RunContext, input: Any) -> Any:
        assert ctx.nucleus is not None and ctx.scope is not None
        seen["artifact_id"] = ctx.scope.artifacts[0].id
        result = await ctx.nucleus.invoke({"input": input})
        return {"approved": True, "reason": result.reasoning}

    notified: list[Any] = []

    async def notify(ctx: RunContext, input: Any) -> Any:
        notified.append(ctx.outputs["decide"]["reason"])
        return {"sent": True}

    transcript = ExecutionTranscript()
    executor = ResumableExecutor(
        {"refund.decide": decide, "customer.notify": notify},
        llm_call=llm,
        nucleus_profiles={
            "default": NucleusSettings(max_query_rounds=4, max_retrieval_rounds=1, postcheck=True)
        },
        context_provider=ExternalContextProviderAdapter().register(FunctionTool("crm", crm)),
        checkpoint_store=MemoryCheckpointStore(),
        ledger_listeners=[transcript],
    )

    result = await executor.execute(document.goal, document.plan, document.context, run_id="run-e2e")

    assert result.executed_task_ids == ("decide", "notify")
    assert result.outputs_by_task["decide"] == {
        "approved": True,
        "reason": "approve: first refund on a repeat customer",
    }
    assert notified == ["approve: first refund on a repeat customer"]
    assert len(history_requests) == 1
    assert len(llm.calls) == 5
    assert '"refunds": 0' in llm.calls[3].prompt

    # Retrieved artifacts are promoted into the run's augmentations; the packet is untouched.
    (augmentation,) = result.augmentations["decide"]
    assert augmentation["type"] == "order_history"
    assert augmentation["content"] == {"orders": 2, "refunds": 0}
    assert document.context.augmentations == ()

    inferences = result.ledger.entries_of_type(LedgerEntryType.NUCLEUS_INFERENCE)
    assert [entry.details["stage"] for entry in inferences] == [
        "preflight",
        "preflight",
        "invoke",
        "invoke",
        "postcheck",
    ]
    (verification,) = result.ledger.entries_of_type(LedgerEntryType.VERIFICATION)
    assert verification.details["result"] is True
    (guard,) = result.ledger.entries_of_type(LedgerEntryType.GUARD_EVAL)
    assert guard.details["result"] is True
    # Preflight and postcheck rounds; invoke rounds belong to the capability.
    assert result.metrics["nucleus_rounds"] == 3

    exported = result.ledger.export_jsonl(tmp_path / "run.ledger.jsonl")
    reloaded = Ledger.load_jsonl(exported)
    assert reloaded.head == result.ledger.head
    assert len(reloaded) == len(result.ledger)

    lines = transcript.render_text().splitlines()
    assert "[decide] thinking: approve: first refund on a repeat customer" in lines
    assert lines.index("[decide] completed") < lines.index("[decide] thinking: decision is complete")
    assert lines[-1] == "[notify] completed"


async def test_compensated_failure_takes_the_error_branch(tmp_path: Path) -> None:
    document = load_plan_document(_write(tmp_path, "charge.yaml", CHARGE_DOCUMENT))
    assert document.goal is not None and document.context is not None

    voided: list[Any] = []
    messages: list[str] = []

    async def charge(ctx: RunContext, input: Any) -> Any:
        raise TaskExecutionError("card declined after capture", error_class=ErrorClass.COMPENSATION_REQUIRED)

    async def void(ctx: RunContext, input: Any) -> Any:
        voided.append(input)
        return {"voided": True}

    async def notify(ctx: RunContext, input: Any) -> Any:
        messages.append(ctx.task_id)
        return {"sent": ctx.task_id}

    executor = ResumableExecutor(
        {"payments.charge": charge, "payments.void": void, "customer.notify": notify}
    )

    result = await executor.execute(document.goal, document.plan, document.context)

    assert result.executed_task_ids == ("apologize",)
    assert messages == ["apologize"]
    assert result.failed_tasks["charge"]["error_class"] == "COMPENSATION_REQUIRED"
    assert "halted" not in result.failed_tasks["charge"]
    assert voided == [
        {"task_id": "charge", "input": {"amount": 40}, "error": "card declined after capture"}
    ]

    types = [entry.type for entry in result.ledger]
    error_at = types.index(LedgerEntryType.ERROR)
    assert types[error_at + 1 : error_at + 3] == [
        LedgerEntryType.COMPENSATION,
        LedgerEntryType.BRANCH_TAKEN,
    ]
    (branch,) = result.ledger.entries_of_type(LedgerEntryType.BRANCH_TAKEN)
    assert (branch.details["from"], branch.details["to"]) == ("charge", "apologize")
    result.ledger.validate()
