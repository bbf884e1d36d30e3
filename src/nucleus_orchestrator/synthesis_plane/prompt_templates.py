"""
nucleus-orchestrator — Nucleus prompt templates

File: src/nucleus_orchestrator/synthesis_plane/prompt_templates.py
Last updated: 2026-10-19

Purpose
- Load and render the preflight, invoke, postcheck and context snapshot
  templates shipped in ``synthesis_plane/templates`` with strict placeholders.

Functional requirements
- Rendering is deterministic for the same inputs.
- Missing or unexpected variables are errors, never silently blank.
- Every rendered prompt carries a SHA-256 digest for the ledger.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from importlib import resources
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, StrictUndefined, meta

from nucleus_orchestrator.synthesis_plane.builtin_tools import build_catalog
from nucleus_orchestrator.utils.hashing import sha256_text

if TYPE_CHECKING:
    from collections.abc import Mapping

    from nucleus_orchestrator.knowledge_plane.context_packet import ContextPacket
    from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope

_TEMPLATE_PACKAGE = "nucleus_orchestrator.synthesis_plane"
_TEMPLATE_DIR = "templates"


class PromptTemplateError(RuntimeError):
    """Base error for prompt template loading and rendering."""


class PromptTemplateNotFoundError(PromptTemplateError, FileNotFoundError):
    """Raised when a template file does not exist."""


class PromptTemplateVariableError(PromptTemplateError, ValueError):
    """Raised for missing or unexpected template variables."""


class PromptStage(StrEnum):
    PREFLIGHT = "preflight"
    INVOKE = "invoke"
    POSTCHECK = "postcheck"
    CONTEXT_SNAPSHOT = "context_snapshot"


@dataclass(frozen=True, slots=True)
class RenderedPrompt:
    """Rendered prompt and deterministic hashes for ledger entries."""

    stage: PromptStage
    prompt: str
    prompt_hash: str
    template_hash: str


class PromptTemplateEngine:
    """Deterministic loader and renderer for the packaged Nucleus templates."""

    def __init__(self) -> None:
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )
        self._sources: dict[PromptStage, str] = {}

    def source(self, stage: PromptStage | str) -> str:
        normalized = PromptStage(stage)
        cached = self._sources.get(normalized)
        if cached is not None:
            return cached
        resource = resources.files(_TEMPLATE_PACKAGE).joinpath(_TEMPLATE_DIR, f"{normalized.value}.md.j2")
        if not resource.is_file():
            raise PromptTemplateNotFoundError(f"template not found: {normalized.value}")
        text = resource.read_text(encoding="utf-8").replace("\r\n", "\n")
        self._sources[normalized] = text
        return text

    def render(self, stage: PromptStage | str, variables: Mapping[str, Any]) -> RenderedPrompt:
        normalized = PromptStage(stage)
        template_source = self.source(normalized)
        declared = meta.find_undeclared_variables(self._environment.parse(template_source))

        missing = sorted(declared - set(variables))
        if missing:
            raise PromptTemplateVariableError(
                f"{normalized.value}: missing required template variables: " + ", ".join(missing)
            )
        unexpected = sorted(set(variables) - declared)
        if unexpected:
            raise PromptTemplateVariableError(
                f"{normalized.value}: unexpected variables were provided: " + ", ".join(unexpected)
            )

        prompt = self._environment.from_string(template_source).render(**variables)
        return RenderedPrompt(
            stage=normalized,
            prompt=prompt,
            prompt_hash=sha256_text(prompt),
            template_hash=sha256_text(template_source),
        )


_DEFAULT_ENGINE: PromptTemplateEngine | None = None


def default_engine() -> PromptTemplateEngine:
    global _DEFAULT_ENGINE
    if _DEFAULT_ENGINE is None:
        _DEFAULT_ENGINE = PromptTemplateEngine()
    return _DEFAULT_ENGINE


def render_context_snapshot(
    context: ContextPacket | None,
    scope: InternalContextScope | None,
    *,
    engine: PromptTemplateEngine | None = None,
) -> str:
    """Catalog view of the context: keys, types and sizes, never fact values."""
    catalog = build_catalog(context, scope)
    augmentation_types = sorted({item["type"] for item in catalog["augmentations"]})
    has_context = bool(
        catalog["facts"]
        or catalog["assumptions"]
        or catalog["augmentations"]
        or catalog["internal_artifacts"]
    )
    rendered = (engine or default_engine()).render(
        PromptStage.CONTEXT_SNAPSHOT,
        {
            "has_context": has_context,
            "context_ref": context.id if context is not None else "none",
            "facts": catalog["facts"],
            "assumption_count": catalog["assumptions"],
            "augmentation_count": len(catalog["augmentations"]),
            "augmentation_types": augmentation_types,
            "artifacts": catalog["internal_artifacts"],
        },
    )
    return rendered.prompt


def to_prompt_json(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False, default=str)


__all__ = [
    "PromptStage",
    "PromptTemplateEngine",
    "PromptTemplateError",
    "PromptTemplateNotFoundError",
    "PromptTemplateVariableError",
    "RenderedPrompt",
    "default_engine",
    "render_context_snapshot",
    "to_prompt_json",
]
