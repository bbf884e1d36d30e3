"""
nucleus-orchestrator — external context provider adapter

File: src/nucleus_orchestrator/synthesis_plane/context_provider.py
Last updated: 2026-10-19

Purpose
- Resolve retrieval directives emitted by a Nucleus into tool calls, and fold
  the returned artifacts into the task's internal context scope.

Functional requirements
- Every directive must match a binding before any tool runs; unmatched
  directives are reported together and nothing is resolved.
- Tool calls go through the instrumented envelope (``TOOL_CALL`` entries).
- Each call may return nothing, one artifact, or a list of artifacts; more
  than ``max_artifacts`` in one call is a hard failure.
- Bindings may auto-promote the artifacts they add.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from nucleus_orchestrator.constants import DEFAULT_MAX_ARTIFACTS_PER_CALL
from nucleus_orchestrator.synthesis_plane.tools import Tool, invoke_tool

if TYPE_CHECKING:
    from nucleus_orchestrator.knowledge_plane.context_packet import ContextPacket
    from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope
    from nucleus_orchestrator.knowledge_plane.ledger import LedgerAppend

_PREFIX_SEPARATORS = ("::", ":")
_ARTIFACT_KEYS = frozenset({"type", "content", "provenance", "promote"})


class ContextProviderError(RuntimeError):
    """Base error for context provider failures."""


class UnresolvedDirectivesError(ContextProviderError):
    """Raised when one or more directives match no registered binding."""

    def __init__(self, directives: Sequence[str]) -> None:
        self.directives = tuple(directives)
        super().__init__("no context provider binding for directive(s): " + ", ".join(self.directives))


class ArtifactLimitExceededError(ContextProviderError):
    """Raised when a single provider call returns more artifacts than allowed."""


class InvalidArtifactError(ContextProviderError):
    """Raised when a provider returns something that is not an artifact."""


DirectiveMatcher = Callable[[str], bool]
InputBuilder = Callable[[str, "RetrievalRequest"], Any]


@dataclass(frozen=True, slots=True)
class RetrievalRequest:
    directives: tuple[str, ...]
    scope: InternalContextScope
    goal_id: str | None = None
    task_id: str | None = None
    context: ContextPacket | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "directives", tuple(self.directives))


@dataclass(frozen=True, slots=True)
class RetrievalOutcome:
    artifact_ids: tuple[str, ...]
    by_directive: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    promoted_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ProviderBinding:
    tool: Tool
    match: DirectiveMatcher
    build_input: InputBuilder
    auto_promote: bool = True
    max_artifacts: int = DEFAULT_MAX_ARTIFACTS_PER_CALL
    describe: str | None = None

    @property
    def name(self) -> str:
        return self.tool.name()


def directive_payload(tool_name: str, directive: str) -> str:
    """Text after ``<tool>::`` or ``<tool>:``; the whole directive otherwise."""
    stripped = directive.strip()
    for separator in _PREFIX_SEPARATORS:
        prefix = f"{tool_name}{separator}"
        if stripped.startswith(prefix):
            return stripped[len(prefix) :].strip()
    return stripped


def default_matcher(tool_name: str) -> DirectiveMatcher:
    def _match(directive: str) -> bool:
        stripped = directive.strip()
        if stripped == tool_name:
            return True
        return any(stripped.startswith(f"{tool_name}{separator}") for separator in _PREFIX_SEPARATORS)

    return _match


def default_input_builder(tool_name: str) -> InputBuilder:
    def _build(directive: str, request: RetrievalRequest) -> dict[str, Any]:
        return {"directive": directive, "payload": directive_payload(tool_name, directive)}

    return _build


class ExternalContextProviderAdapter:
    """Ordered directive-to-tool bindings; the first matching binding wins."""

    def __init__(
        self,
        *,
        ledger_append: LedgerAppend | None = None,
        logger: Any | None = None,
    ) -> None:
        self._bindings: list[ProviderBinding] = []
        self._ledger_append = ledger_append
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def bindings(self) -> tuple[ProviderBinding, ...]:
        return tuple(self._bindings)

    def bind_ledger(self, ledger_append: LedgerAppend | None) -> None:
        self._ledger_append = ledger_append

    def register(
        self,
        tool: Tool,
        *,
        match: DirectiveMatcher | None = None,
        build_input: InputBuilder | None = None,
        auto_promote: bool = True,
        max_artifacts: int = DEFAULT_MAX_ARTIFACTS_PER_CALL,
        describe: str | None = None,
    ) -> ExternalContextProviderAdapter:
        if max_artifacts <= 0:
            raise ValueError("max_artifacts must be > 0")
        name = tool.name()
        self._bindings.append(
            ProviderBinding(
                tool=tool,
                match=match or default_matcher(name),
                build_input=build_input or default_input_builder(name),
                auto_promote=auto_promote,
                max_artifacts=max_artifacts,
                describe=describe,
            )
        )
        return self

    def resolve(self, directive: str) -> ProviderBinding | None:
        for binding in self._bindings:
            if binding.match(directive):
                return binding
        return None

    async def fulfill(self, request: RetrievalRequest) -> RetrievalOutcome:
        resolved: list[tuple[str, ProviderBinding]] = []
        unresolved: list[str] = []
        for directive in request.directives:
            binding = self.resolve(directive)
            if binding is None:
                unresolved.append(directive)
            else:
                resolved.append((directive, binding))
        if unresolved:
            raise UnresolvedDirectivesError(unresolved)

        all_ids: list[str] = []
        promoted: list[str] = []
        by_directive: dict[str, tuple[str, ...]] = {}
        for directive, binding in resolved:
            result = await invoke_tool(
                binding.tool,
                binding.build_input(directive, request),
                ledger_append=self._ledger_append,
                task_id=request.task_id,
                capability="context_provider",
            )
            artifacts = _normalize_artifacts(result, binding.name)
            if len(artifacts) > binding.max_artifacts:
                raise ArtifactLimitExceededError(
                    f"provider {binding.name!r} returned {len(artifacts)} artifacts "
                    f"(limit {binding.max_artifacts}) for directive {directive!r}"
                )

            added: list[str] = []
            for artifact in artifacts:
                provenance = {"tool": binding.name, "directive": directive}
                provenance.update(artifact.get("provenance") or {})
                artifact_id = request.scope.add_artifact(
                    artifact["type"], artifact["content"], provenance
                )
                added.append(artifact_id)
                promote = artifact.get("promote")
                if promote is None:
                    promote = binding.auto_promote
                if promote:
                    request.scope.promote(artifact_id)
                    promoted.append(artifact_id)
            by_directive[directive] = by_directive.get(directive, ()) + tuple(added)
            all_ids.extend(added)

        self._logger.info(
            "context_provider_fulfilled",
            task_id=request.task_id,
            directives=list(request.directives),
            artifact_count=len(all_ids),
            promoted_count=len(promoted),
        )
        return RetrievalOutcome(
            artifact_ids=tuple(all_ids),
            by_directive=by_directive,
            promoted_ids=tuple(promoted),
        )


def _normalize_artifacts(result: Any, tool_name: str) -> list[Mapping[str, Any]]:
    if result is None:
        return []
    items: Sequence[Any]
    if isinstance(result, Mapping):
        items = [result]
    elif isinstance(result, (list, tuple)):
        items = result
    else:
        raise InvalidArtifactError(
            f"provider {tool_name!r} returned {type(result).__name__}; expected artifact(s)"
        )

    normalized: list[Mapping[str, Any]] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            raise InvalidArtifactError(f"provider {tool_name!r} artifact[{index}] is not an object")
        unknown = sorted(set(item) - _ARTIFACT_KEYS)
        if unknown:
            raise InvalidArtifactError(
                f"provider {tool_name!r} artifact[{index}] has unexpected fields: {unknown}"
            )
        artifact_type = item.get("type")
        if not isinstance(artifact_type, str) or not artifact_type.strip():
            raise InvalidArtifactError(f"provider {tool_name!r} artifact[{index}] needs a type")
        if "content" not in item:
            raise InvalidArtifactError(f"provider {tool_name!r} artifact[{index}] needs content")
        provenance = item.get("provenance")
        if provenance is not None and not isinstance(provenance, Mapping):
            raise InvalidArtifactError(
                f"provider {tool_name!r} artifact[{index}] provenance must be an object"
            )
        promote = item.get("promote")
        if promote is not None and not isinstance(promote, bool):
            raise InvalidArtifactError(
                f"provider {tool_name!r} artifact[{index}] promote must be a boolean"
            )
        normalized.append(item)
    return normalized


__all__ = [
    "ArtifactLimitExceededError",
    "ContextProviderError",
    "ExternalContextProviderAdapter",
    "InvalidArtifactError",
    "ProviderBinding",
    "RetrievalOutcome",
    "RetrievalRequest",
    "UnresolvedDirectivesError",
    "default_input_builder",
    "default_matcher",
    "directive_payload",
]
