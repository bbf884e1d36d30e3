"""
nucleus-orchestrator — policy engine contract

File: src/nucleus_orchestrator/control_plane/policy.py
Last updated: 2026-10-19

Purpose
- Gate plan admission and each task's pre/post hooks with allow/deny
  decisions, optionally tightening a task's timeout and retry limits.

Functional requirements
- ``evaluate(action, payload)`` may be sync or async; the executor awaits both.
- Actions are ``plan.admit``, ``task.pre`` and ``task.post``.
- ``CapabilityPolicy`` denies listed capabilities and applies per-capability limits.
"""

from __future__ import annotations

from collections.abc import Awaitable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from nucleus_orchestrator.utils.concurrency import maybe_await


class PolicyAction(StrEnum):
    PLAN_ADMIT = "plan.admit"
    TASK_PRE = "task.pre"
    TASK_POST = "task.post"


@dataclass(frozen=True, slots=True)
class PolicyLimits:
    timeout_ms: int | None = None
    retries: int | None = None

    def __post_init__(self) -> None:
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError("PolicyLimits.timeout_ms: must be > 0")
        if self.retries is not None and self.retries < 0:
            raise ValueError("PolicyLimits.retries: must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {"timeout_ms": self.timeout_ms, "retries": self.retries}


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    allow: bool
    limits: PolicyLimits | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allow": self.allow,
            "limits": self.limits.to_dict() if self.limits is not None else None,
            "reason": self.reason,
        }

    @classmethod
    def coerce(cls, value: PolicyDecision | Mapping[str, Any] | bool) -> PolicyDecision:
        if isinstance(value, PolicyDecision):
            return value
        if isinstance(value, bool):
            return cls(allow=value)
        if isinstance(value, Mapping):
            raw_limits = value.get("limits")
            limits = None
            if isinstance(raw_limits, Mapping):
                limits = PolicyLimits(
                    timeout_ms=raw_limits.get("timeout_ms", raw_limits.get("timeoutMs")),
                    retries=raw_limits.get("retries"),
                )
            reason = value.get("reason")
            return cls(allow=bool(value.get("allow")), limits=limits, reason=reason)
        raise TypeError(f"policy must return PolicyDecision, mapping or bool, got {type(value).__name__}")


class PolicyEngine(Protocol):
    def evaluate(
        self, action: str, payload: Mapping[str, Any]
    ) -> PolicyDecision | Awaitable[PolicyDecision]: ...


async def evaluate_policy(
    engine: PolicyEngine, action: PolicyAction | str, payload: Mapping[str, Any]
) -> PolicyDecision:
    return PolicyDecision.coerce(await maybe_await(engine.evaluate(str(action), payload)))


class AllowAllPolicy:
    """Admits every plan and task."""

    def evaluate(self, action: str, payload: Mapping[str, Any]) -> PolicyDecision:
        return PolicyDecision(allow=True)


class CapabilityPolicy:
    """Static policy: capability deny list plus per-capability limits."""

    def __init__(
        self,
        *,
        deny: Iterable[str] = (),
        limits: Mapping[str, PolicyLimits] | None = None,
        deny_plans: Iterable[str] = (),
    ) -> None:
        self._deny = frozenset(deny)
        self._limits = dict(limits or {})
        self._deny_plans = frozenset(deny_plans)

    def evaluate(self, action: str, payload: Mapping[str, Any]) -> PolicyDecision:
        if action == PolicyAction.PLAN_ADMIT:
            plan_id = payload.get("plan_id")
            if plan_id in self._deny_plans:
                return PolicyDecision(allow=False, reason=f"plan {plan_id!r} is denied")
            return PolicyDecision(allow=True)

        capability = payload.get("capability")
        if capability in self._deny:
            return PolicyDecision(allow=False, reason=f"capability {capability!r} is denied")
        limits = self._limits.get(capability) if action == PolicyAction.TASK_PRE else None
        return PolicyDecision(allow=True, limits=limits)


__all__ = [
    "AllowAllPolicy",
    "CapabilityPolicy",
    "PolicyAction",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyLimits",
    "evaluate_policy",
]
