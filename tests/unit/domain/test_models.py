"""Unit tests for plan domain models: validation messages and canonical serialization."""

from __future__ import annotations

import pytest

from nucleus_orchestrator.domain.models import (
    CompensationSpec,
    ErrorClass,
    Goal,
    Plan,
    PlanEdge,
    RetryPolicy,
    TaskSpec,
    compute_idem_key,
)

CONTEXT_REF = "sha256-" + "a" * 64


def _plan(**overrides: object) -> Plan:
    payload: dict[str, object] = {
        "id": "plan-1",
        "context_ref": CONTEXT_REF,
        "capability_map_version": "v1",
        "tasks": (
            TaskSpec(id="fetch", capability_ref="fetch_order"),
            TaskSpec(
                id="refund",
                capability_ref="issue_refund",
                input={"amount": 10},
                retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=(0.1, 0.2)),
                compensation=CompensationSpec(capability_ref="void_refund"),
            ),
        ),
        "edges": (PlanEdge(source="fetch", target="refund", guard="outputs.fetch.ok"),),
    }
    payload.update(overrides)
    return Plan(**payload)  # type: ignore[arg-type]


def test_idem_key_is_stable_and_truncated() -> None:
    key = compute_idem_key("goal-1", CONTEXT_REF, "fetch")
    assert key == compute_idem_key("goal-1", CONTEXT_REF, "fetch")
    assert len(key) == 32
    assert key != compute_idem_key("goal-2", CONTEXT_REF, "fetch")

    task = TaskSpec(id="fetch", capability_ref="fetch_order")
    assert task.resolve_idem_key("goal-1", CONTEXT_REF) == key
    pinned = TaskSpec(id="fetch", capability_ref="fetch_order", idem_key="explicit")
    assert pinned.resolve_idem_key("goal-1", CONTEXT_REF) == "explicit"


def test_retry_policy_delay_schedule_repeats_last_entry() -> None:
    policy = RetryPolicy(max_attempts=5, backoff_seconds=(0.5, 2.0))
    assert policy.delay_for(1) == 0.0
    assert policy.delay_for(2) == 0.5
    assert policy.delay_for(3) == 2.0
    assert policy.delay_for(5) == 2.0
    assert RetryPolicy().delay_for(4) == 0.0


def test_retry_policy_rejects_invalid_values_with_field_paths() -> None:
    with pytest.raises(ValueError, match=r"^RetryPolicy.max_attempts: must be >= 1"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match=r"RetryPolicy.backoff_seconds\[0\]"):
        RetryPolicy(backoff_seconds=(-1.0,))


def test_plan_roundtrip_preserves_edges_and_compensation() -> None:
    plan = _plan(rationale="refund flow")
    restored = Plan.from_dict(plan.to_dict())

    assert restored == plan
    assert restored.to_json() == plan.to_json()
    edge = restored.to_dict()["edges"][0]
    assert edge == {"from": "fetch", "to": "refund", "guard": "outputs.fetch.ok"}
    assert restored.get_task("refund").compensation == CompensationSpec(capability_ref="void_refund")


def test_plan_rejects_duplicate_tasks_unknown_edges_and_self_loops() -> None:
    with pytest.raises(ValueError, match="duplicate task id"):
        _plan(tasks=(TaskSpec(id="a", capability_ref="x"), TaskSpec(id="a", capability_ref="y")))
    with pytest.raises(ValueError, match="unknown task id 'ghost'"):
        _plan(edges=(PlanEdge(source="fetch", target="ghost"),))
    with pytest.raises(ValueError, match="self-dependency"):
        _plan(edges=(PlanEdge(source="fetch", target="fetch"),))
    with pytest.raises(ValueError, match="Plan.tasks: must not be empty"):
        _plan(tasks=())


def test_plan_edge_error_class_and_guard_are_exclusive() -> None:
    edge = PlanEdge(source="a", target="b", on_error="FATAL_ERROR")  # type: ignore[arg-type]
    assert edge.on_error is ErrorClass.FATAL_ERROR
    assert edge.label == "a->b"
    with pytest.raises(ValueError, match="cannot also carry a guard"):
        PlanEdge(source="a", target="b", guard="true", on_error=ErrorClass.FATAL_ERROR)
    with pytest.raises(ValueError, match="PlanEdge.on_error: invalid value"):
        PlanEdge.from_dict({"from": "a", "to": "b", "on_error": "OOPS"})


def test_plan_navigation_helpers() -> None:
    plan = _plan()
    assert plan.task_ids == ("fetch", "refund")
    assert [edge.label for edge in plan.outgoing("fetch")] == ["fetch->refund"]
    assert [edge.label for edge in plan.incoming("refund")] == ["fetch->refund"]
    with pytest.raises(KeyError):
        plan.get_task("missing")


def test_goal_from_dict_rejects_unknown_fields() -> None:
    goal = Goal.from_dict({"id": "g1", "intent": "refund order", "constraints": {"max": 5}})
    assert goal.constraints == {"max": 5}
    with pytest.raises(ValueError, match="unexpected fields"):
        Goal.from_dict({"id": "g1", "intent": "x", "extra": True})
    with pytest.raises(ValueError, match="Goal.intent"):
        Goal(id="g1", intent="  ")


def test_task_input_must_be_json() -> None:
    with pytest.raises(ValueError, match="TaskSpec.input"):
        TaskSpec(id="t", capability_ref="c", input={"when": object()})
