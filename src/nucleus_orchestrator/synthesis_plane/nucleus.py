"""
nucleus-orchestrator — Nucleus bounded reasoning loop

File: src/nucleus_orchestrator/synthesis_plane/nucleus.py
Last updated: 2026-10-19

Purpose
- Mediate every model call a task makes: render the stage prompt, inject the
  built-in context tools, run a bounded multi-round loop in which the model
  may read context already in scope or ask for more, and record each call.

Functional requirements
- The loop makes at most ``max_query_rounds`` calls, or exactly one when
  ``max_query_rounds`` is 0.
- The last allowed round, and any round after the cumulative prompt estimate
  reaches ``budget_threshold`` of ``max_context_tokens``, offers no built-ins.
- ``request_context_retrieval`` is fulfilled in-loop only when a provider and
  an internal scope are attached, at most ``max_retrieval_rounds`` times;
  otherwise retrieval calls surface to the caller.
- Every model call appends one ``NUCLEUS_INFERENCE`` ledger entry.

Non-functional requirements
- One invocation at a time per instance; cancellation is checked between rounds.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from nucleus_orchestrator.constants import (
    DEFAULT_BUDGET_THRESHOLD,
    DEFAULT_MAX_QUERY_ROUNDS,
    DEFAULT_MAX_RETRIEVAL_ROUNDS,
)
from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope
from nucleus_orchestrator.knowledge_plane.ledger import Ledger, LedgerAppend, LedgerEntryType
from nucleus_orchestrator.synthesis_plane.builtin_tools import (
    BUILTIN_TOOL_NAMES,
    QUERY_CONTEXT_TOOL,
    REQUEST_CONTEXT_RETRIEVAL_TOOL,
    BuiltinTool,
    execute_query_context,
    format_query_results,
    format_retrieval_marker,
)
from nucleus_orchestrator.synthesis_plane.context_provider import RetrievalRequest
from nucleus_orchestrator.synthesis_plane.prompt_templates import (
    PromptStage,
    PromptTemplateEngine,
    default_engine,
    render_context_snapshot,
    to_prompt_json,
)
from nucleus_orchestrator.synthesis_plane.token_estimator import estimate_tokens
from nucleus_orchestrator.synthesis_plane.tools import (
    LLMCallFn,
    LLMConfig,
    LLMResponse,
    ToolCall,
    ToolDefinition,
    coerce_llm_response,
    payload_digest,
)
from nucleus_orchestrator.utils.hashing import sha256_text

if TYPE_CHECKING:
    from nucleus_orchestrator.knowledge_plane.context_packet import ContextPacket
    from nucleus_orchestrator.synthesis_plane.context_provider import (
        ExternalContextProviderAdapter,
    )
    from nucleus_orchestrator.utils.concurrency import CancellationToken


class NucleusError(RuntimeError):
    """Base error for Nucleus failures."""


class NucleusConfigError(NucleusError, ValueError):
    """Raised for invalid Nucleus configuration."""


class NucleusBusyError(NucleusError):
    """Raised when an instance is re-entered while a call is in flight."""


class PreflightStatus(StrEnum):
    OK = "OK"
    NEEDS_CONTEXT = "NEEDS_CONTEXT"


class PostcheckStatus(StrEnum):
    COMPLETE = "COMPLETE"
    NEEDS_COMPENSATION = "NEEDS_COMPENSATION"
    ESCALATE = "ESCALATE"


REQUEST_COMPENSATION: Final[str] = "request_compensation"
ESCALATE_ISSUE: Final[str] = "escalate_issue"

_REASON_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {"reason": {"type": "string"}},
    "required": ["reason"],
}
REQUEST_COMPENSATION_TOOL: Final[ToolDefinition] = ToolDefinition(
    name=REQUEST_COMPENSATION,
    description="The output is wrong or unsafe and its effects must be compensated.",
    json_schema=_REASON_SCHEMA,
)
ESCALATE_ISSUE_TOOL: Final[ToolDefinition] = ToolDefinition(
    name=ESCALATE_ISSUE,
    description="The output needs a human decision before the plan continues.",
    json_schema=_REASON_SCHEMA,
)


@dataclass(frozen=True, slots=True)
class NucleusHooks:
    preflight: bool = True
    postcheck: bool = False


@dataclass(frozen=True, slots=True)
class NucleusConfig:
    goal_id: str
    goal_intent: str
    context: ContextPacket | None = None
    context_ref: str | None = None
    task_id: str | None = None
    plan_id: str | None = None
    llm: LLMConfig = field(default_factory=LLMConfig)
    hooks: NucleusHooks = field(default_factory=NucleusHooks)
    max_query_rounds: int = DEFAULT_MAX_QUERY_ROUNDS
    max_retrieval_rounds: int = DEFAULT_MAX_RETRIEVAL_ROUNDS
    max_context_tokens: int | None = None
    budget_threshold: float = DEFAULT_BUDGET_THRESHOLD
    context_provider: ExternalContextProviderAdapter | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.goal_id, str) or not self.goal_id.strip():
            raise NucleusConfigError("NucleusConfig.goal_id: must be a non-empty string")
        if not isinstance(self.goal_intent, str) or not self.goal_intent.strip():
            raise NucleusConfigError("NucleusConfig.goal_intent: must be a non-empty string")
        for name in ("max_query_rounds", "max_retrieval_rounds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise NucleusConfigError(f"NucleusConfig.{name}: must be an integer >= 0")
        if self.max_context_tokens is not None and (
            isinstance(self.max_context_tokens, bool)
            or not isinstance(self.max_context_tokens, int)
            or self.max_context_tokens <= 0
        ):
            raise NucleusConfigError("NucleusConfig.max_context_tokens: must be a positive integer")
        if not 0.0 < self.budget_threshold <= 1.0:
            raise NucleusConfigError("NucleusConfig.budget_threshold: must be in (0, 1]")
        if self.context_ref is None and self.context is not None:
            object.__setattr__(self, "context_ref", self.context.id)


@dataclass(frozen=True, slots=True)
class NucleusMetrics:
    rounds: int
    estimated_prompt_tokens: int
    budget_exhausted: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "rounds": self.rounds,
            "estimated_prompt_tokens": self.estimated_prompt_tokens,
            "budget_exhausted": self.budget_exhausted,
        }


@dataclass(frozen=True, slots=True)
class PreflightResult:
    status: PreflightStatus
    directives: tuple[str, ...] = ()
    metrics: NucleusMetrics | None = None


@dataclass(frozen=True, slots=True)
class PostcheckResult:
    status: PostcheckStatus
    reason: str | None = None
    metrics: NucleusMetrics | None = None


@dataclass(frozen=True, slots=True)
class InvokeRequest:
    input: Any = None
    prompt: str | None = None
    tools: tuple[ToolDefinition, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "tools", tuple(self.tools))


@dataclass(frozen=True, slots=True)
class NucleusInvokeResult:
    reasoning: str | None
    tool_calls: tuple[ToolCall, ...]
    raw: Any
    metrics: NucleusMetrics


@dataclass(slots=True)
class _LoopState:
    prompt: str
    rounds: int = 0
    estimated_tokens: int = 0
    budget_exhausted: bool = False
    retrievals: int = 0
    retrieval_withdrawn: bool = False

    def metrics(self) -> NucleusMetrics:
        return NucleusMetrics(
            rounds=self.rounds,
            estimated_prompt_tokens=self.estimated_tokens,
            budget_exhausted=self.budget_exhausted,
        )


@dataclass(frozen=True, slots=True)
class _LoopOutcome:
    response: LLMResponse
    metrics: NucleusMetrics
    prompt: str


class Nucleus:
    """Bounded, ledgered model-call loop bound to one goal, task and context packet."""

    def __init__(
        self,
        config: NucleusConfig,
        llm_call: LLMCallFn,
        ledger_append: LedgerAppend | None = None,
        *,
        internal_scope: InternalContextScope | None = None,
        cancel_token: CancellationToken | None = None,
        engine: PromptTemplateEngine | None = None,
        logger: Any | None = None,
    ) -> None:
        if not callable(llm_call):
            raise NucleusConfigError("llm_call must be callable")
        self._config = config
        self._llm_call = llm_call
        self._ledger_append: LedgerAppend = (
            ledger_append if ledger_append is not None else Ledger().append
        )
        if internal_scope is None and config.context_provider is not None:
            internal_scope = InternalContextScope(self._ledger_append)
        self._scope = internal_scope
        self._cancel_token = cancel_token
        self._engine = engine or default_engine()
        self._in_flight = False
        self._logger = (logger if logger is not None else structlog.get_logger(__name__)).bind(
            goal_id=config.goal_id, task_id=config.task_id
        )

    @property
    def config(self) -> NucleusConfig:
        return self._config

    @property
    def internal_context(self) -> InternalContextScope | None:
        return self._scope

    def set_internal_context(self, scope: InternalContextScope | None) -> None:
        self._scope = scope

    def snapshot(self) -> str:
        return render_context_snapshot(self._config.context, self._scope, engine=self._engine)

    async def preflight(self) -> PreflightResult:
        if not self._config.hooks.preflight:
            return PreflightResult(status=PreflightStatus.OK)
        async with self._exclusive():
            prompt = self._render(PromptStage.PREFLIGHT)
            outcome = await self._run_loop(PromptStage.PREFLIGHT, prompt, ())

        directives = tuple(
            directive
            for call in outcome.response.tool_calls
            if call.name == BuiltinTool.REQUEST_CONTEXT_RETRIEVAL
            and (directive := _directive_of(call))
        )
        if directives:
            return PreflightResult(
                status=PreflightStatus.NEEDS_CONTEXT,
                directives=directives,
                metrics=outcome.metrics,
            )
        return PreflightResult(status=PreflightStatus.OK, metrics=outcome.metrics)

    async def invoke(self, request: InvokeRequest | Mapping[str, Any] | None = None) -> NucleusInvokeResult:
        normalized = _coerce_request(request)
        async with self._exclusive():
            if normalized.prompt is not None:
                prompt = normalized.prompt
            else:
                prompt = self._render(
                    PromptStage.INVOKE,
                    tool_names=[tool.name for tool in normalized.tools],
                    input_json=to_prompt_json(normalized.input),
                )
            outcome = await self._run_loop(PromptStage.INVOKE, prompt, normalized.tools)
        return NucleusInvokeResult(
            reasoning=outcome.response.reasoning,
            tool_calls=outcome.response.tool_calls,
            raw=outcome.response.raw,
            metrics=outcome.metrics,
        )

    async def postcheck(self, output: Any) -> PostcheckResult:
        if not self._config.hooks.postcheck:
            return PostcheckResult(status=PostcheckStatus.COMPLETE)
        async with self._exclusive():
            prompt = self._render(PromptStage.POSTCHECK, output_json=to_prompt_json(output))
            outcome = await self._run_loop(
                PromptStage.POSTCHECK, prompt, (REQUEST_COMPENSATION_TOOL, ESCALATE_ISSUE_TOOL)
            )

        for status, sentinel in (
            (PostcheckStatus.NEEDS_COMPENSATION, REQUEST_COMPENSATION),
            (PostcheckStatus.ESCALATE, ESCALATE_ISSUE),
        ):
            call = next((item for item in outcome.response.tool_calls if item.name == sentinel), None)
            if call is not None:
                reason = call.arguments.get("reason")
                return PostcheckResult(
                    status=status,
                    reason=reason if isinstance(reason, str) and reason else "unspecified",
                    metrics=outcome.metrics,
                )
        return PostcheckResult(status=PostcheckStatus.COMPLETE, metrics=outcome.metrics)

    # ------------------------------------------------------------------
    # Round loop
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        stage: PromptStage,
        prompt: str,
        user_tools: Sequence[ToolDefinition],
    ) -> _LoopOutcome:
        config = self._config
        state = _LoopState(prompt=prompt, retrieval_withdrawn=config.max_retrieval_rounds == 0)

        for round_index in range(config.max_query_rounds):
            if self._cancel_token is not None:
                self._cancel_token.raise_if_cancelled()

            state.estimated_tokens += estimate_tokens(state.prompt)
            last_round = round_index == config.max_query_rounds - 1
            suppress = last_round
            if (
                not last_round
                and config.max_context_tokens is not None
                and state.estimated_tokens >= config.budget_threshold * config.max_context_tokens
            ):
                state.budget_exhausted = True
                suppress = True
                self._logger.info(
                    "nucleus_budget_exhausted",
                    stage=stage.value,
                    round=round_index,
                    estimated_prompt_tokens=state.estimated_tokens,
                    max_context_tokens=config.max_context_tokens,
                )

            tools = self._offered_tools(user_tools, state, suppress=suppress)
            response = await self._call_model(stage, state.prompt, tools, round_index)
            state.rounds += 1

            queries = [c for c in response.tool_calls if c.name == BuiltinTool.QUERY_CONTEXT]
            retrievals = [
                c for c in response.tool_calls if c.name == BuiltinTool.REQUEST_CONTEXT_RETRIEVAL
            ]
            others = [c for c in response.tool_calls if c.name not in BUILTIN_TOOL_NAMES]

            if suppress:
                if queries or retrievals:
                    response = replace(response, tool_calls=tuple(others) or response.tool_calls)
                return _LoopOutcome(response, state.metrics(), state.prompt)

            if not queries and not retrievals:
                return _LoopOutcome(response, state.metrics(), state.prompt)

            if retrievals:
                directives = [d for call in retrievals if (d := _directive_of(call))]
                provider = config.context_provider
                if (
                    provider is None
                    or self._scope is None
                    or state.retrieval_withdrawn
                    or not directives
                ):
                    passthrough = tuple(c for c in response.tool_calls if c.name != BuiltinTool.QUERY_CONTEXT)
                    return _LoopOutcome(
                        replace(response, tool_calls=passthrough), state.metrics(), state.prompt
                    )

                outcome = await provider.fulfill(
                    RetrievalRequest(
                        directives=tuple(directives),
                        scope=self._scope,
                        goal_id=config.goal_id,
                        task_id=config.task_id,
                        context=config.context,
                    )
                )
                state.retrievals += 1
                if state.retrievals >= config.max_retrieval_rounds:
                    state.retrieval_withdrawn = True
                state.prompt = _extend(
                    state.prompt, format_retrieval_marker(directives, outcome.artifact_ids)
                )
                if queries:
                    state.prompt = _extend(state.prompt, self._answer_queries(queries))
                if others:
                    return _LoopOutcome(
                        replace(response, tool_calls=tuple(others)), state.metrics(), state.prompt
                    )
                continue

            if others:
                return _LoopOutcome(
                    replace(response, tool_calls=tuple(others)), state.metrics(), state.prompt
                )
            state.prompt = _extend(state.prompt, self._answer_queries(queries))

        # Only reachable with max_query_rounds == 0: one plain call, no built-ins.
        state.estimated_tokens += estimate_tokens(state.prompt)
        tools = self._offered_tools(user_tools, state, suppress=True)
        response = await self._call_model(stage, state.prompt, tools, state.rounds)
        state.rounds += 1
        return _LoopOutcome(response, state.metrics(), state.prompt)

    def _offered_tools(
        self,
        user_tools: Sequence[ToolDefinition],
        state: _LoopState,
        *,
        suppress: bool,
    ) -> tuple[ToolDefinition, ...]:
        tools = [tool for tool in user_tools if tool.name not in BUILTIN_TOOL_NAMES]
        if suppress:
            return tuple(tools)
        context = self._config.context
        if (context is not None and context.has_facts) or self._scope is not None:
            tools.append(QUERY_CONTEXT_TOOL)
        if not state.retrieval_withdrawn:
            tools.append(REQUEST_CONTEXT_RETRIEVAL_TOOL)
        return tuple(tools)

    def _answer_queries(self, queries: Sequence[ToolCall]) -> str:
        results = [
            (call, execute_query_context(call.arguments, self._config.context, self._scope))
            for call in queries
        ]
        return format_query_results(results)

    async def _call_model(
        self,
        stage: PromptStage,
        prompt: str,
        tools: Sequence[ToolDefinition],
        round_index: int,
    ) -> LLMResponse:
        config = self._config
        self._logger.debug(
            "nucleus_round",
            stage=stage.value,
            round=round_index,
            tools=[tool.name for tool in tools],
        )
        response = coerce_llm_response(await self._llm_call(prompt, tuple(tools), config.llm))
        self._ledger_append(
            LedgerEntryType.NUCLEUS_INFERENCE,
            {
                "nucleus": {
                    "goal_id": config.goal_id,
                    "plan_id": config.plan_id,
                    "task_id": config.task_id,
                    "context_ref": config.context_ref,
                },
                "stage": stage.value,
                "round": round_index,
                "llm": config.llm.to_dict(),
                "prompt_digest": sha256_text(prompt),
                "tools": [tool.name for tool in tools],
                "tool_calls": [_inference_call_record(call) for call in response.tool_calls],
                "reasoning": response.reasoning,
            },
        )
        return response

    def _render(self, stage: PromptStage, **extra: Any) -> str:
        config = self._config
        variables: dict[str, Any] = {
            "goal_id": config.goal_id,
            "goal_intent": config.goal_intent,
            "task_id": config.task_id,
            "snapshot": self.snapshot(),
        }
        if stage is PromptStage.PREFLIGHT:
            variables["plan_id"] = config.plan_id
        variables.update(extra)
        return self._engine.render(stage, variables).prompt

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        if self._in_flight:
            raise NucleusBusyError(
                f"nucleus for task {self._config.task_id!r} is already running a call"
            )
        self._in_flight = True
        try:
            yield
        finally:
            self._in_flight = False


def _inference_call_record(call: ToolCall) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": call.call_id,
        "name": call.name,
        "input_digest": payload_digest(dict(call.arguments)),
    }
    if call.output is not None:
        record["output_digest"] = payload_digest(call.output)
    return record


def _directive_of(call: ToolCall) -> str:
    directive = call.arguments.get("directive")
    return directive.strip() if isinstance(directive, str) else ""


def _extend(prompt: str, block: str) -> str:
    return f"{prompt.rstrip()}\n\n{block}\n"


def _coerce_request(request: InvokeRequest | Mapping[str, Any] | None) -> InvokeRequest:
    if request is None:
        return InvokeRequest()
    if isinstance(request, InvokeRequest):
        return request
    if isinstance(request, Mapping):
        return InvokeRequest(
            input=request.get("input"),
            prompt=request.get("prompt"),
            tools=tuple(request.get("tools") or ()),
        )
    raise TypeError(f"invoke request must be InvokeRequest or mapping, got {type(request).__name__}")


__all__ = [
    "ESCALATE_ISSUE",
    "ESCALATE_ISSUE_TOOL",
    "REQUEST_COMPENSATION",
    "REQUEST_COMPENSATION_TOOL",
    "InvokeRequest",
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
]
