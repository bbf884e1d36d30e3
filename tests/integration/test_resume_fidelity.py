"""
nucleus-orchestrator — resume fidelity across a simulated restart

File: tests/integration/test_resume_fidelity.py
Last updated: 2026-10-19

Purpose
- Cancel a run midway, reopen the durable store from disk with a fresh
  executor, resume, and compare against a run that was never interrupted.

What this test file should cover
- Outputs and executed order are identical.
- Ledger entry types and task attribution are identical, and the resumed
  ledger still validates as one digest chain.
- Completed tasks never run twice.
- A run cancelled inside a task checkpoints only settled progress.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from nucleus_orchestrator.config.schema import ExecutorSettings
from nucleus_orchestrator.control_plane.capabilities import RunContext
from nucleus_orchestrator.control_plane.executor import ResumableExecutor
from nucleus_orchestrator.domain.models import Goal, Plan, PlanEdge, TaskSpec
from nucleus_orchestrator.knowledge_plane.context_packet import ContextBuilder
from nucleus_orchestrator.persistence.checkpoint_store import CheckpointStore, FileCheckpointStore
from nucleus_orchestrator.persistence.sqlite_store import SQLiteCheckpointStore
from nucleus_orchestrator.utils.concurrency import CancellationToken

CONTEXT = ContextBuilder().add_fact("orderId", "O123").build()
GOAL = Goal(id="goal-resume", intent="Settle order O123")
RUN_ID = "run-fidelity"

pytestmark = pytest.mark.integration

PLAN = Plan(
    id="plan-settle",
    context_ref=CONTEXT.id,
    capability_map_version="1",
    tasks=tuple(TaskSpec(id=task_id, capability_ref="step", input={"n": n}) for n, task_id in enumerate("abcd", 1)),
    edges=(
        PlanEdge(source="a", target="b"),
        PlanEdge(source="b", target="c", guard="outputs.b.total >= 3"),
        PlanEdge(source="c", target="d"),
    ),
)

STORES: dict[str, Callable[[Path], CheckpointStore]] = {
    "file": lambda root: FileCheckpointStore(root / "checkpoints"),
    "sqlite": lambda root: SQLiteCheckpointStore(root / "checkpoints.sqlite3"),
}


class Steps:
    """Running-total capability; optionally cancels the run right after one task."""

    def __init__(self, cancel_after: str | None = None, token: CancellationToken | None = None) -> None:
        self.calls: list[str] = []
        self._cancel_after = cancel_after
        self._token = token

    async def step(self, ctx: RunContext, input: Any) -> Any:
        self.calls.append(ctx.task_id)
        total = input["n"] + sum(output["total"] for output in ctx.outputs.values())
        if ctx.task_id == self._cancel_after and self._token is not None:
            self._token.cancel()
        return {"task": ctx.task_id, "total": total}


class BlockingSteps(Steps):
    """Holds one task's body open until the run is cancelled."""

    def __init__(self, block_on: str) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self._block_on = block_on

    async def step(self, ctx: RunContext, input: Any) -> Any:
        if ctx.task_id != self._block_on:
            return await super().step(ctx, input)
        self.calls.append(ctx.task_id)
        self.entered.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


def _shape(ledger: Any) -> list[tuple[str, Any]]:
    return [(entry.type.value, entry.details.get("task_id")) for entry in ledger]


@pytest.mark.parametrize("backend", sorted(STORES))
@pytest.mark.parametrize("interval", [1, 3])
async def test_cancelled_run_resumes_to_the_uninterrupted_result(
    tmp_path: Path, backend: str, interval: int
) -> None:
    settings = ExecutorSettings(checkpoint_interval=interval)

    baseline_steps = Steps()
    baseline = await ResumableExecutor(
        {"step": baseline_steps.step},
        checkpoint_store=STORES[backend](tmp_path / "baseline"),
        settings=settings,
    ).execute(GOAL, PLAN, CONTEXT, run_id=RUN_ID)

    token = CancellationToken()
    first_steps = Steps(cancel_after="b", token=token)
    with pytest.raises(asyncio.CancelledError):
        await ResumableExecutor(
            {"step": first_steps.step},
            checkpoint_store=STORES[backend](tmp_path / "interrupted"),
            settings=settings,
            cancel_token=token,
        ).execute(GOAL, PLAN, CONTEXT, run_id=RUN_ID)
    assert first_steps.calls == ["a", "b"]

    # Fresh store object over the same location: nothing survives in memory.
    reopened = STORES[backend](tmp_path / "interrupted")
    second_steps = Steps()
    resumed = await ResumableExecutor(
        {"step": second_steps.step},
        checkpoint_store=reopened,
        settings=settings,
    ).resume(RUN_ID)

    assert second_steps.calls == ["c", "d"]
    assert resumed.executed_task_ids == baseline.executed_task_ids == ("a", "b", "c", "d")
    assert resumed.outputs_by_task == baseline.outputs_by_task
    assert resumed.outputs_by_task["d"] == {"task": "d", "total": 15}
    assert _shape(resumed.ledger) == _shape(baseline.ledger)
    resumed.ledger.validate()

    reasons = [checkpoint.metadata.reason for checkpoint in await reopened.list(RUN_ID)]
    if interval == 1:
        assert reasons == ["task_settled"] * 4
    else:
        assert reasons == ["cancelled", "final"]


async def test_resume_from_an_earlier_checkpoint_replays_later_tasks(tmp_path: Path) -> None:
    store = FileCheckpointStore(tmp_path)
    steps = Steps()
    executor = ResumableExecutor({"step": steps.step}, checkpoint_store=store)
    first = await executor.execute(GOAL, PLAN, CONTEXT, run_id=RUN_ID)

    checkpoints = await executor.list_checkpoints(RUN_ID)
    after_b = checkpoints[1]
    assert after_b.state["executed_task_ids"] == ["a", "b"]

    replay_steps = Steps()
    replayed = await ResumableExecutor({"step": replay_steps.step}, checkpoint_store=store).resume(
        RUN_ID, checkpoint_id=after_b.id
    )

    assert replay_steps.calls == ["c", "d"]
    assert replayed.outputs_by_task == first.outputs_by_task
    sequences = [checkpoint.sequence for checkpoint in await store.list(RUN_ID)]
    assert sequences == list(range(len(sequences)))


@pytest.mark.parametrize("backend", sorted(STORES))
async def test_cancel_inside_a_task_checkpoints_only_settled_progress(tmp_path: Path, backend: str) -> None:
    settings = ExecutorSettings(checkpoint_interval=2)
    baseline = await ResumableExecutor(
        {"step": Steps().step},
        checkpoint_store=STORES[backend](tmp_path / "baseline"),
        settings=settings,
    ).execute(GOAL, PLAN, CONTEXT, run_id=RUN_ID)

    blocking = BlockingSteps(block_on="b")
    run = asyncio.create_task(
        ResumableExecutor(
            {"step": blocking.step},
            checkpoint_store=STORES[backend](tmp_path / "interrupted"),
            settings=settings,
        ).execute(GOAL, PLAN, CONTEXT, run_id=RUN_ID)
    )
    await blocking.entered.wait()
    run.cancel()
    with pytest.raises(asyncio.CancelledError):
        await run

    reopened = STORES[backend](tmp_path / "interrupted")
    (cancelled,) = await reopened.list(RUN_ID)
    assert cancelled.metadata.reason == "cancelled"
    assert cancelled.state["executed_task_ids"] == ["a"]
    assert sorted(cancelled.state["policy_decisions"]) == ["a"]
    assert {entry["details"].get("task_id") for entry in cancelled.state["ledger"]} == {None, "a"}

    second_steps = Steps()
    resumed = await ResumableExecutor(
        {"step": second_steps.step},
        checkpoint_store=reopened,
        settings=settings,
    ).resume(RUN_ID)

    assert blocking.calls == ["a", "b"]
    assert second_steps.calls == ["b", "c", "d"]
    assert resumed.outputs_by_task == baseline.outputs_by_task
    assert _shape(resumed.ledger) == _shape(baseline.ledger)
    assert resumed.metrics["attempts"] == baseline.metrics["attempts"]
    resumed.ledger.validate()
