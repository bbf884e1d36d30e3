"""
nucleus-orchestrator — domain layer

File: src/nucleus_orchestrator/domain/__init__.py
Last updated: 2026-10-19

Purpose
- Domain types shared across planes: Goal, Plan, TaskSpec, PlanEdge, RetryPolicy, ErrorClass.

Functional requirements
- Domain objects must be serializable to canonical JSON and validated on construction.

Non-functional requirements
- Domain layer stays free of IO side effects.
"""

from nucleus_orchestrator.domain.models import (
    CanonicalModel,
    CompensationSpec,
    ErrorClass,
    Goal,
    JSONValue,
    Plan,
    PlanEdge,
    RetryPolicy,
    TaskSpec,
    compute_idem_key,
)

__all__ = [
    "CanonicalModel",
    "CompensationSpec",
    "ErrorClass",
    "Goal",
    "JSONValue",
    "Plan",
    "PlanEdge",
    "RetryPolicy",
    "TaskSpec",
    "compute_idem_key",
]
