"""
nucleus-orchestrator — plan document loading

File: src/nucleus_orchestrator/planning/plan_loader.py
Last updated: 2026-10-19

Purpose
- Parse plan documents (YAML or JSON) into validated ``Plan`` objects, with an
  optional goal and context section alongside the plan.

Functional requirements
- Structural keys may be camelCase (``contextRef``, ``capabilityRef``,
  ``retryPolicy``, ``onError``...); user payloads (``input``, ``facts``,
  ``constraints``) are never rewritten.
- A loaded plan is acyclic and every guard parses; failures are
  ``PlanLoadError`` with the offending path in the message.
- When the document carries a context section and the plan omits
  ``context_ref``, the plan is bound to the built packet's id.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import yaml

from nucleus_orchestrator.control_plane.guards import GuardError, validate_guard
from nucleus_orchestrator.domain.models import Goal, Plan
from nucleus_orchestrator.knowledge_plane.context_packet import ContextBuilder, ContextPacket
from nucleus_orchestrator.planning.task_graph import CycleError, TaskGraph

PathLike = str | os.PathLike[str]

_PLAN_KEYS: Final[dict[str, str]] = {
    "contextRef": "context_ref",
    "capabilityMapVersion": "capability_map_version",
}
_TASK_KEYS: Final[dict[str, str]] = {
    "capabilityRef": "capability_ref",
    "capability": "capability_ref",
    "idemKey": "idem_key",
    "retryPolicy": "retry_policy",
    "retry": "retry_policy",
    "verificationRefs": "verification_refs",
    "verification": "verification_refs",
    "nucleusRef": "nucleus_ref",
}
_RETRY_KEYS: Final[dict[str, str]] = {
    "maxAttempts": "max_attempts",
    "attempts": "max_attempts",
    "backoffSeconds": "backoff_seconds",
    "retryOn": "retry_on",
}
_EDGE_KEYS: Final[dict[str, str]] = {"onError": "on_error"}
_COMPENSATION_KEYS: Final[dict[str, str]] = {"capabilityRef": "capability_ref"}


class PlanLoadError(ValueError):
    """Raised when a plan document cannot be parsed or fails validation."""


@dataclass(frozen=True, slots=True)
class PlanDocument:
    plan: Plan
    goal: Goal | None = None
    context: ContextPacket | None = None


def _rename(data: Mapping[str, Any], aliases: Mapping[str, str], path: str) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        target = aliases.get(key, key)
        if target in out:
            raise PlanLoadError(f"{path}: field {target!r} given more than once")
        out[target] = value
    return out


def _backoff_from_ms(retry: dict[str, Any]) -> dict[str, Any]:
    backoff_ms = retry.pop("backoffMs", retry.pop("backoff_ms", None))
    if backoff_ms is None:
        return retry
    if "backoff_seconds" in retry:
        raise PlanLoadError("retry_policy: give backoff_seconds or backoff_ms, not both")
    values = backoff_ms if isinstance(backoff_ms, list) else [backoff_ms]
    retry["backoff_seconds"] = [float(item) / 1000.0 for item in values]
    return retry


def normalize_plan_dict(data: Mapping[str, Any]) -> dict[str, Any]:
    """Structural camelCase keys to the canonical snake_case form."""
    if not isinstance(data, Mapping):
        raise PlanLoadError(f"plan: expected object, got {type(data).__name__}")
    plan = _rename(data, _PLAN_KEYS, "plan")

    tasks = plan.get("tasks")
    if isinstance(tasks, list):
        normalized_tasks = []
        for index, raw_task in enumerate(tasks):
            if not isinstance(raw_task, Mapping):
                raise PlanLoadError(f"plan.tasks[{index}]: expected object")
            task = _rename(raw_task, _TASK_KEYS, f"plan.tasks[{index}]")
            retry = task.get("retry_policy")
            if isinstance(retry, Mapping):
                task["retry_policy"] = _backoff_from_ms(
                    _rename(retry, _RETRY_KEYS, f"plan.tasks[{index}].retry_policy")
                )
            compensation = task.get("compensation")
            if isinstance(compensation, str):
                task["compensation"] = {"capability_ref": compensation}
            elif isinstance(compensation, Mapping):
                task["compensation"] = _rename(
                    compensation, _COMPENSATION_KEYS, f"plan.tasks[{index}].compensation"
                )
            if isinstance(task.get("verification_refs"), str):
                task["verification_refs"] = [task["verification_refs"]]
            normalized_tasks.append(task)
        plan["tasks"] = normalized_tasks

    edges = plan.get("edges")
    if isinstance(edges, list):
        plan["edges"] = [
            _rename(edge, _EDGE_KEYS, f"plan.edges[{index}]") if isinstance(edge, Mapping) else edge
            for index, edge in enumerate(edges)
        ]
    return plan


def validate_plan(plan: Plan) -> TaskGraph:
    """Acyclicity and guard syntax checks; returns the plan's task graph."""
    graph = TaskGraph.from_plan(plan)
    try:
        graph.topological_sort()
    except CycleError as exc:
        raise PlanLoadError(f"plan {plan.id}: {exc}") from exc
    for index, edge in enumerate(plan.edges):
        if edge.guard is None:
            continue
        try:
            validate_guard(edge.guard)
        except GuardError as exc:
            raise PlanLoadError(f"plan.edges[{index}] ({edge.label}): {exc}") from exc
    return graph


def plan_from_dict(data: Mapping[str, Any]) -> Plan:
    try:
        plan = Plan.from_dict(normalize_plan_dict(data))
    except PlanLoadError:
        raise
    except (TypeError, ValueError) as exc:
        raise PlanLoadError(str(exc)) from exc
    validate_plan(plan)
    return plan


def _context_from_dict(data: Mapping[str, Any]) -> ContextPacket:
    if not isinstance(data, Mapping):
        raise PlanLoadError("context: expected object")
    builder = ContextBuilder()
    for index, source in enumerate(data.get("sources") or ()):
        if isinstance(source, str):
            builder.add_source(source)
        elif isinstance(source, Mapping) and isinstance(source.get("uri"), str):
            builder.add_source(source["uri"], digest=source.get("digest"), type=source.get("type"))
        else:
            raise PlanLoadError(f"context.sources[{index}]: expected uri string or object")
    facts = data.get("facts") or {}
    if not isinstance(facts, Mapping):
        raise PlanLoadError("context.facts: expected object")
    builder.add_facts(facts)
    for assumption in data.get("assumptions") or ():
        builder.add_assumption(assumption)
    for index, item in enumerate(data.get("augmentations") or ()):
        if not isinstance(item, Mapping) or not isinstance(item.get("type"), str):
            raise PlanLoadError(f"context.augmentations[{index}]: expected {{type, artifact}}")
        builder.add_augmentation(item["type"], item.get("artifact"))
    provenance = data.get("provenance")
    if isinstance(provenance, Mapping):
        builder.set_provenance(provenance)
    return builder.build(version=str(data.get("version", "1")))


def document_from_dict(data: Mapping[str, Any]) -> PlanDocument:
    """
    Build a ``PlanDocument`` from parsed data.

    Accepts either a bare plan, or ``{"plan": ..., "goal": ..., "context": ...}``.
    """

    if not isinstance(data, Mapping):
        raise PlanLoadError(f"document: expected object, got {type(data).__name__}")
    if "plan" not in data:
        return PlanDocument(plan=plan_from_dict(data))

    context = None
    if data.get("context") is not None:
        try:
            context = _context_from_dict(data["context"])
        except (TypeError, ValueError) as exc:
            if isinstance(exc, PlanLoadError):
                raise
            raise PlanLoadError(f"context: {exc}") from exc

    raw_plan = data["plan"]
    if not isinstance(raw_plan, Mapping):
        raise PlanLoadError("plan: expected object")
    raw_plan = dict(raw_plan)
    if context is not None and "context_ref" not in raw_plan and "contextRef" not in raw_plan:
        raw_plan["context_ref"] = context.id
    plan = plan_from_dict(raw_plan)
    if context is not None and plan.context_ref != context.id:
        raise PlanLoadError(
            f"plan {plan.id}: context_ref {plan.context_ref} does not match context {context.id}"
        )

    goal = None
    if data.get("goal") is not None:
        try:
            goal = Goal.from_dict(data["goal"])
        except (TypeError, ValueError) as exc:
            raise PlanLoadError(str(exc)) from exc
    return PlanDocument(plan=plan, goal=goal, context=context)


def parse_document_text(text: str, *, fmt: str = "yaml") -> Any:
    try:
        if fmt == "json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PlanLoadError(f"cannot parse plan document as {fmt}: {exc}") from exc


def load_plan_document(path: PathLike) -> PlanDocument:
    target = Path(path)
    try:
        text = target.read_text(encoding="utf-8")
    except OSError as exc:
        raise PlanLoadError(f"cannot read plan document {target}: {exc}") from exc
    fmt = "json" if target.suffix.lower() == ".json" else "yaml"
    return document_from_dict(parse_document_text(text, fmt=fmt))


def load_plan(path: PathLike) -> Plan:
    return load_plan_document(path).plan


__all__ = [
    "PlanDocument",
    "PlanLoadError",
    "document_from_dict",
    "load_plan",
    "load_plan_document",
    "normalize_plan_dict",
    "parse_document_text",
    "plan_from_dict",
    "validate_plan",
]
