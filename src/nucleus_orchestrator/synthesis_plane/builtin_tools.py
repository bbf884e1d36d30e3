"""
nucleus-orchestrator — built-in context tools

File: src/nucleus_orchestrator/synthesis_plane/builtin_tools.py
Last updated: 2026-10-19

Purpose
- Define ``query_context`` (read data already in scope) and
  ``request_context_retrieval`` (ask for data not in scope).
- Execute ``query_context`` actions against a context packet and an optional
  internal context scope.
- Describe context as a catalog of keys, types and sizes, never raw values.

Functional requirements
- Unknown actions, missing keys, out-of-range indices and missing artifacts
  return a structured ``{"error": ...}`` result instead of raising.
- ``read_assumptions`` on a packet without assumptions returns ``[]``.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

from nucleus_orchestrator.knowledge_plane.internal_scope import ArtifactNotFoundError
from nucleus_orchestrator.synthesis_plane.tools import ToolCall, ToolDefinition

if TYPE_CHECKING:
    from nucleus_orchestrator.knowledge_plane.context_packet import ContextPacket
    from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope


class BuiltinTool(StrEnum):
    QUERY_CONTEXT = "query_context"
    REQUEST_CONTEXT_RETRIEVAL = "request_context_retrieval"


class QueryAction(StrEnum):
    LIST = "list"
    READ_FACT = "read_fact"
    READ_AUGMENTATION = "read_augmentation"
    READ_ASSUMPTIONS = "read_assumptions"
    READ_ARTIFACT = "read_artifact"


BUILTIN_TOOL_NAMES: Final[frozenset[str]] = frozenset(item.value for item in BuiltinTool)

QUERY_RESULTS_HEADER: Final[str] = "## Context Query Results"
RETRIEVAL_HEADER: Final[str] = "## External Context Retrieved"

QUERY_CONTEXT_TOOL: Final[ToolDefinition] = ToolDefinition(
    name=BuiltinTool.QUERY_CONTEXT.value,
    description=(
        "Read context data that is ALREADY in your scope. Use action 'list' to see the "
        "catalog, then read_fact(key), read_augmentation(index), read_assumptions(), or "
        "read_artifact(artifact_id) to read individual entries."
    ),
    json_schema={
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": [item.value for item in QueryAction]},
            "key": {"type": "string", "description": "Fact key for read_fact."},
            "index": {"type": "integer", "description": "Augmentation index for read_augmentation."},
            "artifact_id": {"type": "string", "description": "Artifact id for read_artifact."},
        },
        "required": ["action"],
    },
)

REQUEST_CONTEXT_RETRIEVAL_TOOL: Final[ToolDefinition] = ToolDefinition(
    name=BuiltinTool.REQUEST_CONTEXT_RETRIEVAL.value,
    description=(
        "Request data that is NOT in your scope from an external provider. Describe what "
        "you need in 'directive'; never guess missing data."
    ),
    json_schema={
        "type": "object",
        "properties": {"directive": {"type": "string"}},
        "required": ["directive"],
    },
)


def describe_value_type(value: Any) -> str:
    """Short type descriptor used in catalogs: ``string``, ``Array(3)``, ``object(2 keys)``..."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return f"Array({len(value)})"
    if isinstance(value, Mapping):
        return f"object({len(value)} keys)"
    return type(value).__name__


def value_size_chars(value: Any) -> int:
    if isinstance(value, str):
        return len(value)
    return len(json.dumps(value, ensure_ascii=False, default=str))


def build_catalog(
    context: ContextPacket | None,
    scope: InternalContextScope | None,
) -> dict[str, Any]:
    """Catalog returned by ``query_context(action="list")``."""
    facts: list[dict[str, Any]] = []
    assumptions = 0
    augmentations: list[dict[str, Any]] = []
    if context is not None:
        for key, value in context.facts.items():
            facts.append(
                {"key": key, "type": describe_value_type(value), "size_chars": value_size_chars(value)}
            )
        assumptions = len(context.assumptions)
        augmentations = [
            {"index": index, "type": item.type} for index, item in enumerate(context.augmentations)
        ]
    artifacts = scope.catalog() if scope is not None else []
    return {
        "facts": facts,
        "assumptions": assumptions,
        "augmentations": augmentations,
        "internal_artifacts": artifacts,
    }


def execute_query_context(
    arguments: Mapping[str, Any],
    context: ContextPacket | None,
    scope: InternalContextScope | None,
) -> Any:
    """Run one ``query_context`` action; failures come back as ``{"error": ...}``."""
    raw_action = arguments.get("action")
    try:
        action = QueryAction(raw_action)
    except ValueError:
        allowed = ", ".join(item.value for item in QueryAction)
        return {"error": f"Unknown action {raw_action!r}; expected one of: {allowed}"}

    match action:
        case QueryAction.LIST:
            return build_catalog(context, scope)
        case QueryAction.READ_FACT:
            key = arguments.get("key")
            if context is None or not isinstance(key, str) or key not in context.facts:
                return {"error": f"Fact key {key!r} not found"}
            return {"key": key, "value": context.facts[key]}
        case QueryAction.READ_AUGMENTATION:
            index = arguments.get("index")
            count = len(context.augmentations) if context is not None else 0
            if (
                context is None
                or isinstance(index, bool)
                or not isinstance(index, int)
                or not 0 <= index < count
            ):
                return {"error": f"Augmentation index {index!r} out of range (0..{count - 1})"}
            return {"index": index, **context.augmentations[index].to_dict()}
        case QueryAction.READ_ASSUMPTIONS:
            if context is None:
                return []
            return list(context.assumptions)
        case QueryAction.READ_ARTIFACT:
            if scope is None:
                return {"error": "No internal context scope is attached"}
            artifact_id = arguments.get("artifact_id")
            try:
                artifact = scope.get(str(artifact_id))
            except ArtifactNotFoundError:
                return {"error": f"Artifact {artifact_id!r} not found"}
            return {"artifact_id": artifact.id, "type": artifact.type, "content": artifact.content}


def format_query_results(results: Sequence[tuple[ToolCall, Any]]) -> str:
    """Render executed queries as the block appended to the next prompt."""
    lines = [QUERY_RESULTS_HEADER]
    for call, result in results:
        arguments = json.dumps(dict(call.arguments), sort_keys=True, ensure_ascii=False)
        lines.append(f"### query_context {arguments}")
        lines.append(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return "\n".join(lines)


def format_retrieval_marker(directives: Sequence[str], artifact_ids: Sequence[str]) -> str:
    lines = [RETRIEVAL_HEADER]
    for directive in directives:
        lines.append(f"- directive: {directive}")
    lines.append(
        f"{len(artifact_ids)} artifact(s) were added to your internal scope: "
        + (", ".join(artifact_ids) if artifact_ids else "none")
    )
    lines.append("Use query_context with action 'read_artifact' to read them.")
    return "\n".join(lines)


__all__ = [
    "BUILTIN_TOOL_NAMES",
    "QUERY_CONTEXT_TOOL",
    "QUERY_RESULTS_HEADER",
    "REQUEST_CONTEXT_RETRIEVAL_TOOL",
    "RETRIEVAL_HEADER",
    "BuiltinTool",
    "QueryAction",
    "build_catalog",
    "describe_value_type",
    "execute_query_context",
    "format_query_results",
    "format_retrieval_marker",
    "value_size_chars",
]
