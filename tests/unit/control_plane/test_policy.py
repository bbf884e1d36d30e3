from __future__ import annotations

from typing import Any

import pytest

from nucleus_orchestrator.control_plane.policy import (
    AllowAllPolicy,
    CapabilityPolicy,
    PolicyAction,
    PolicyDecision,
    PolicyLimits,
    evaluate_policy,
)


def test_limits_validation() -> None:
    with pytest.raises(ValueError, match="timeout_ms"):
        PolicyLimits(timeout_ms=0)
    with pytest.raises(ValueError, match="retries"):
        PolicyLimits(retries=-1)
    assert PolicyLimits(timeout_ms=50, retries=0).to_dict() == {"timeout_ms": 50, "retries": 0}


def test_decision_coercion() -> None:
    assert PolicyDecision.coerce(True) == PolicyDecision(allow=True)
    decision = PolicyDecision.coerce({"allow": 1, "limits": {"timeoutMs": 100, "retries": 2}, "reason": "ok"})
    assert decision == PolicyDecision(allow=True, limits=PolicyLimits(timeout_ms=100, retries=2), reason="ok")
    assert PolicyDecision.coerce({}).allow is False
    with pytest.raises(TypeError, match="policy must return"):
        PolicyDecision.coerce("yes")  # type: ignore[arg-type]


def test_decision_to_dict() -> None:
    assert PolicyDecision(allow=False, reason="no").to_dict() == {
        "allow": False,
        "limits": None,
        "reason": "no",
    }


def test_capability_policy() -> None:
    policy = CapabilityPolicy(
        deny=["payments.refund"],
        limits={"crm.lookup": PolicyLimits(timeout_ms=500)},
        deny_plans=["plan-blocked"],
    )

    assert policy.evaluate("plan.admit", {"plan_id": "plan-blocked"}).allow is False
    assert policy.evaluate("plan.admit", {"plan_id": "plan-1"}).allow is True

    denied = policy.evaluate("task.pre", {"capability": "payments.refund"})
    assert denied.allow is False
    assert denied.reason == "capability 'payments.refund' is denied"

    limited = policy.evaluate("task.pre", {"capability": "crm.lookup"})
    assert limited.limits == PolicyLimits(timeout_ms=500)
    assert policy.evaluate("task.post", {"capability": "crm.lookup"}).limits is None


async def test_evaluate_policy_awaits_async_engines() -> None:
    class AsyncPolicy:
        def __init__(self) -> None:
            self.seen: list[tuple[str, Any]] = []

        async def evaluate(self, action: str, payload: Any) -> dict[str, Any]:
            self.seen.append((action, payload))
            return {"allow": False, "reason": "maintenance"}

    engine = AsyncPolicy()
    decision = await evaluate_policy(engine, PolicyAction.TASK_PRE, {"task_id": "a"})

    assert decision == PolicyDecision(allow=False, reason="maintenance")
    assert engine.seen == [("task.pre", {"task_id": "a"})]
    assert (await evaluate_policy(AllowAllPolicy(), "plan.admit", {})).allow is True
