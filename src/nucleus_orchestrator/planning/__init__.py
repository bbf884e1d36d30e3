"""Planning public API: task graph and plan document loading."""

from nucleus_orchestrator.planning.plan_loader import (
    PlanDocument,
    PlanLoadError,
    document_from_dict,
    load_plan,
    load_plan_document,
    plan_from_dict,
    validate_plan,
)
from nucleus_orchestrator.planning.task_graph import CycleError, TaskGraph

__all__ = [
    "CycleError",
    "PlanDocument",
    "PlanLoadError",
    "TaskGraph",
    "document_from_dict",
    "load_plan",
    "load_plan_document",
    "plan_from_dict",
    "validate_plan",
]
