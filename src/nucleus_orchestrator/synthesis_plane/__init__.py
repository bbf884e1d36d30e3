"""
nucleus-orchestrator — synthesis plane

File: src/nucleus_orchestrator/synthesis_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Synthesis plane: the Nucleus reasoning loop, its built-in context tools,
  prompt templates, tool envelopes and the external context provider adapter.

Functional requirements
- Must stay provider-agnostic: model access is a single injected async callable.

Non-functional requirements
- Prompts describe context by catalog; values are read only through tools.
"""

from nucleus_orchestrator.synthesis_plane.builtin_tools import (
    BUILTIN_TOOL_NAMES,
    QUERY_CONTEXT_TOOL,
    REQUEST_CONTEXT_RETRIEVAL_TOOL,
    BuiltinTool,
    QueryAction,
    build_catalog,
    execute_query_context,
)
from nucleus_orchestrator.synthesis_plane.context_provider import (
    ArtifactLimitExceededError,
    ContextProviderError,
    ExternalContextProviderAdapter,
    InvalidArtifactError,
    ProviderBinding,
    RetrievalOutcome,
    RetrievalRequest,
    UnresolvedDirectivesError,
)
from nucleus_orchestrator.synthesis_plane.nucleus import (
    InvokeRequest,
    Nucleus,
    NucleusBusyError,
    NucleusConfig,
    NucleusConfigError,
    NucleusError,
    NucleusHooks,
    NucleusInvokeResult,
    NucleusMetrics,
    PostcheckResult,
    PostcheckStatus,
    PreflightResult,
    PreflightStatus,
)
from nucleus_orchestrator.synthesis_plane.prompt_templates import (
    PromptStage,
    PromptTemplateEngine,
    PromptTemplateError,
    render_context_snapshot,
)
from nucleus_orchestrator.synthesis_plane.token_estimator import estimate_tokens
from nucleus_orchestrator.synthesis_plane.tools import (
    FunctionTool,
    InstrumentedTool,
    LLMCallFn,
    LLMConfig,
    LLMResponse,
    Tool,
    ToolCall,
    ToolDefinition,
    ToolRegistry,
    invoke_tool,
)

__all__ = [
    "BUILTIN_TOOL_NAMES",
    "QUERY_CONTEXT_TOOL",
    "REQUEST_CONTEXT_RETRIEVAL_TOOL",
    "ArtifactLimitExceededError",
    "BuiltinTool",
    "ContextProviderError",
    "ExternalContextProviderAdapter",
    "FunctionTool",
    "InstrumentedTool",
    "InvalidArtifactError",
    "InvokeRequest",
    "LLMCallFn",
    "LLMConfig",
    "LLMResponse",
    "Nucleus",
    "NucleusBusyError",
    "NucleusConfig",
    "NucleusConfigError",
    "NucleusError",
    "NucleusHooks",
    "NucleusInvokeResult",
    "NucleusMetrics",
    "PostcheckResult",
    "PostcheckStatus",
    "PreflightResult",
    "PreflightStatus",
    "PromptStage",
    "PromptTemplateEngine",
    "PromptTemplateError",
    "ProviderBinding",
    "QueryAction",
    "RetrievalOutcome",
    "RetrievalRequest",
    "Tool",
    "ToolCall",
    "ToolDefinition",
    "ToolRegistry",
    "UnresolvedDirectivesError",
    "build_catalog",
    "estimate_tokens",
    "execute_query_context",
    "invoke_tool",
    "render_context_snapshot",
]
