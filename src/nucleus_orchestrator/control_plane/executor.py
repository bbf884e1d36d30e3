"""
nucleus-orchestrator — resumable plan executor

File: src/nucleus_orchestrator/control_plane/executor.py
Last updated: 2026-10-19

Purpose
- Walk a plan's task DAG one task at a time, recording every decision in the
  ledger, and persist checkpoints so an interrupted run resumes where it
  stopped without repeating completed side effects.

Functional requirements
- Ready tasks run in declaration order; a task is ready once every incoming
  edge is satisfied. Normal edges need a succeeded source and a true guard;
  error edges need a source that failed with the edge's error class.
- Per task: idempotency check, policy pre-hook, Nucleus preflight (with one
  round of context fulfillment), task body under retry and policy limits,
  Nucleus postcheck, verification, policy post-hook.
- Failures are classified by ``ErrorClass``; compensation runs the task's
  declared compensating capability; an unrouted failure records ``ERROR``,
  checkpoints and raises ``TaskFailedError``.
- Resume validates the checkpoint (version, fields, plan id, ledger digests)
  and restores state by value; completed task ids are never re-run, while
  the task that halted the run is attempted again.
- A task body's output is checkpointed once the body returns. If a later
  stage fails or the run is cancelled, resume reuses that output and runs
  only the post-body stages, so the body's side effect happens once.

Non-functional requirements
- One logical control flow; cancellation is cooperative and checked between
  tasks. A cancelled run checkpoints settled progress only, plus the output
  of a task whose body already returned, and stays resumable.
- Checkpoint state is plain JSON and holds no live handles.
"""

from __future__ import annotations

import asyncio
import copy
import json
import time
import traceback
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Final

import structlog

from nucleus_orchestrator.config.schema import ExecutorSettings, NucleusSettings
from nucleus_orchestrator.control_plane.capabilities import CapabilityRegistry, RunContext
from nucleus_orchestrator.control_plane.guards import evaluate_guard
from nucleus_orchestrator.control_plane.policy import (
    AllowAllPolicy,
    PolicyAction,
    PolicyDecision,
    PolicyEngine,
    evaluate_policy,
)
from nucleus_orchestrator.control_plane.retry import (
    AttemptState,
    RandomFn,
    RetryExhaustedError,
    SleepFn,
    TaskExecutionError,
    classify_error,
    run_with_retry,
)
from nucleus_orchestrator.domain.ids import generate_checkpoint_id, generate_run_id
from nucleus_orchestrator.domain.models import ErrorClass, Goal, Plan, TaskSpec
from nucleus_orchestrator.knowledge_plane.context_packet import (
    ContextPacket,
    ContextPacketError,
    verify_context_packet,
)
from nucleus_orchestrator.knowledge_plane.internal_scope import InternalContextScope
from nucleus_orchestrator.knowledge_plane.ledger import (
    Ledger,
    LedgerEntryType,
    LedgerIntegrityError,
    LedgerListener,
)
from nucleus_orchestrator.observability.logging import correlation_scope
from nucleus_orchestrator.persistence.checkpoint_store import (
    Checkpoint,
    CheckpointCorruptedError,
    CheckpointMetadata,
    CheckpointNotFoundError,
    CheckpointStore,
    MemoryCheckpointStore,
    utc_timestamp,
)
from nucleus_orchestrator.planning.task_graph import CycleError, TaskGraph
from nucleus_orchestrator.synthesis_plane.context_provider import (
    ExternalContextProviderAdapter,
    RetrievalRequest,
)
from nucleus_orchestrator.synthesis_plane.nucleus import (
    Nucleus,
    NucleusConfig,
    NucleusHooks,
    PostcheckStatus,
    PreflightStatus,
)
from nucleus_orchestrator.synthesis_plane.tools import LLMCallFn, ToolRegistry
from nucleus_orchestrator.utils.concurrency import CancellationToken, maybe_await, run_with_timeout
from nucleus_orchestrator.utils.hashing import canonical_json

VerifyFn = Callable[[str, Any, Sequence[str]], "bool | Awaitable[bool]"]

DEFAULT_NUCLEUS_PROFILE: Final[str] = "default"


class ExecutorError(RuntimeError):
    """Base error for plan execution."""


class ExecutorConfigError(ExecutorError, ValueError):
    """Raised when a plan cannot run with this executor's registries and profiles."""


class PlanRejectedError(ExecutorError):
    def __init__(self, plan_id: str, reason: str | None) -> None:
        self.plan_id = plan_id
        self.reason = reason
        super().__init__(f"plan {plan_id} rejected by policy: {reason or 'no reason given'}")


class ResumeMismatchError(ExecutorError, ValueError):
    """Raised when the plan given to ``resume`` is not the checkpointed plan."""


class TaskFailedError(ExecutorError):
    """A task failure halted the run; the run's latest checkpoint holds its state."""

    def __init__(
        self,
        task_id: str,
        error_class: ErrorClass,
        message: str,
        *,
        run_id: str | None = None,
        checkpoint_id: str | None = None,
    ) -> None:
        self.task_id = task_id
        self.error_class = error_class
        self.run_id = run_id
        self.checkpoint_id = checkpoint_id
        super().__init__(f"task {task_id} failed ({error_class.value}): {message}")


class NeedsContextError(TaskFailedError):
    """Nucleus preflight still reports missing context after fulfillment."""

    def __init__(self, task_id: str, directives: Sequence[str], *, reason: str) -> None:
        self.directives = tuple(directives)
        super().__init__(task_id, ErrorClass.FATAL_ERROR, f"{reason}: {list(self.directives)}")


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    outputs_by_task: Mapping[str, Any]
    ledger: Ledger
    executed_task_ids: tuple[str, ...]
    failed_tasks: Mapping[str, Mapping[str, Any]]
    metrics: Mapping[str, Any]
    run_id: str
    augmentations: Mapping[str, Sequence[Mapping[str, Any]]] = field(default_factory=dict)


@dataclass(slots=True)
class _TaskMark:
    """The last point of an unsettled task that a checkpoint may include."""

    task_id: str
    ledger_length: int
    metrics: dict[str, Any]
    policy_decision: dict[str, Any] | None
    body_key: str | None = None


@dataclass(slots=True)
class _RunState:
    run_id: str
    goal: Goal
    context: ContextPacket
    plan: Plan
    graph: TaskGraph
    ledger: Ledger
    task_scope: frozenset[str] | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    executed: list[str] = field(default_factory=list)
    failed: dict[str, dict[str, Any]] = field(default_factory=dict)
    edge_state: dict[str, bool] = field(default_factory=dict)
    idempotency: dict[str, str] = field(default_factory=dict)
    policy_decisions: dict[str, dict[str, Any]] = field(default_factory=dict)
    augmentations: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    body_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    uncommitted: int = 0
    started_at: float = field(default_factory=time.monotonic)
    in_flight: _TaskMark | None = None

    def settled(self, task_id: str) -> bool:
        return task_id in self.outputs or task_id in self.failed

    def mark_in_flight(self, task_id: str, *, body_key: str | None = None) -> None:
        decision = self.policy_decisions.get(task_id)
        self.in_flight = _TaskMark(
            task_id=task_id,
            ledger_length=len(self.ledger),
            metrics=dict(self.metrics),
            policy_decision=copy.deepcopy(decision),
            body_key=body_key,
        )

    def to_checkpoint_state(self) -> dict[str, Any]:
        ledger = self.ledger.snapshot()
        metrics = dict(self.metrics)
        policy_decisions = copy.deepcopy(self.policy_decisions)
        mark = self.in_flight
        if mark is not None:
            # Only committed progress is saved; an unsettled task restarts from its mark.
            del ledger[mark.ledger_length :]
            metrics = {**mark.metrics, "elapsed_sec": metrics.get("elapsed_sec", 0.0)}
            if mark.policy_decision is None:
                policy_decisions.pop(mark.task_id, None)
            else:
                policy_decisions[mark.task_id] = copy.deepcopy(mark.policy_decision)
        return {
            "goal": self.goal.to_dict(),
            "context": self.context.to_dict(),
            "plan": self.plan.to_dict(),
            "outputs": copy.deepcopy(self.outputs),
            "executed_task_ids": list(self.executed),
            "failed_tasks": copy.deepcopy(self.failed),
            "edge_state": dict(self.edge_state),
            "idempotency": dict(self.idempotency),
            "policy_decisions": policy_decisions,
            "augmentations": copy.deepcopy(self.augmentations),
            "body_outputs": copy.deepcopy(self.body_outputs),
            "task_scope": sorted(self.task_scope) if self.task_scope is not None else None,
            "ledger": ledger,
            "metrics": metrics,
        }


@dataclass(frozen=True, slots=True)
class _TaskOutcome:
    output: Any
    attempts: int
    augmentations: list[dict[str, Any]]


def _initial_metrics() -> dict[str, Any]:
    return {
        "tasks_completed": 0,
        "tasks_failed": 0,
        "tasks_reused": 0,
        "attempts": 0,
        "nucleus_rounds": 0,
        "elapsed_sec": 0.0,
    }


def _promoted_artifacts(scope: InternalContextScope | None) -> list[dict[str, Any]]:
    return [
        {
            "artifact_id": artifact.id,
            "type": artifact.type,
            "digest": artifact.digest,
            "content": copy.deepcopy(artifact.content),
        }
        for artifact in (scope.promoted_artifacts() if scope is not None else ())
    ]


class ResumableExecutor:
    """
    Checkpointing plan executor.

    One instance can drive many runs; everything run-specific lives in a
    ``_RunState`` that is rebuilt from a checkpoint on ``resume``.
    """

    def __init__(
        self,
        capabilities: CapabilityRegistry | Mapping[str, Any],
        *,
        checkpoint_store: CheckpointStore | None = None,
        policy: PolicyEngine | None = None,
        llm_call: LLMCallFn | None = None,
        nucleus_profiles: Mapping[str, NucleusSettings] | None = None,
        context_provider: ExternalContextProviderAdapter | None = None,
        tools: ToolRegistry | None = None,
        verify: VerifyFn | None = None,
        settings: ExecutorSettings | None = None,
        ledger_listeners: Iterable[LedgerListener] = (),
        cancel_token: CancellationToken | None = None,
        sleep: SleepFn | None = None,
        rng: RandomFn | None = None,
        logger: Any | None = None,
    ) -> None:
        self._capabilities = (
            capabilities
            if isinstance(capabilities, CapabilityRegistry)
            else CapabilityRegistry(capabilities)
        )
        self._store: CheckpointStore = checkpoint_store or MemoryCheckpointStore()
        self._policy: PolicyEngine = policy or AllowAllPolicy()
        self._llm_call = llm_call
        self._profiles = dict(nucleus_profiles or {})
        self._context_provider = context_provider
        self._tools = tools or ToolRegistry()
        self._verify = verify
        self._settings = settings or ExecutorSettings()
        self._listeners = tuple(ledger_listeners)
        self._cancel_token = cancel_token
        self._sleep = sleep
        self._rng = rng
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def checkpoint_store(self) -> CheckpointStore:
        return self._store

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        goal: Goal,
        plan: Plan,
        context: ContextPacket,
        *,
        run_id: str | None = None,
        task_scope: Iterable[str] | None = None,
    ) -> ExecutionResult:
        try:
            verify_context_packet(context)
        except ContextPacketError as exc:
            raise ExecutorConfigError(str(exc)) from exc
        if plan.context_ref != context.id:
            raise ExecutorConfigError(
                f"plan {plan.id} is bound to context {plan.context_ref}, got {context.id}"
            )
        graph = self._build_graph(plan)
        scope = self._resolve_scope(plan, task_scope)
        self._check_bindings(plan)

        state = _RunState(
            run_id=run_id or generate_run_id(),
            goal=goal,
            context=context,
            plan=plan,
            graph=graph,
            ledger=self._new_ledger(),
            task_scope=scope,
            metrics=_initial_metrics(),
        )
        with correlation_scope(run_id=state.run_id, plan_id=plan.id, goal_id=goal.id):
            decision = await evaluate_policy(
                self._policy,
                PolicyAction.PLAN_ADMIT,
                {"plan_id": plan.id, "goal_id": goal.id, "context_ref": context.id},
            )
            state.ledger.append(
                LedgerEntryType.POLICY_DECISION,
                {"action": PolicyAction.PLAN_ADMIT.value, "plan_id": plan.id, "decision": decision.to_dict()},
            )
            if not decision.allow:
                self._logger.warning("executor_plan_rejected", reason=decision.reason)
                raise PlanRejectedError(plan.id, decision.reason)

            state.ledger.append(
                LedgerEntryType.PLAN_SELECTED,
                {
                    "plan_id": plan.id,
                    "context_ref": plan.context_ref,
                    "capability_map_version": plan.capability_map_version,
                    "goal_id": goal.id,
                    "run_id": state.run_id,
                },
            )
            self._logger.info("executor_run_started", task_count=len(plan.tasks))
            return await self._drive(state)

    async def resume(
        self,
        run_id: str,
        *,
        checkpoint_id: str | None = None,
        plan: Plan | None = None,
        task_scope: Iterable[str] | None = None,
    ) -> ExecutionResult:
        checkpoint = await self._store.get(run_id, checkpoint_id)
        if checkpoint is None:
            missing = f"checkpoint {checkpoint_id}" if checkpoint_id is not None else "no checkpoints"
            raise CheckpointNotFoundError(f"{missing} for run {run_id}")
        state = self._restore_state(checkpoint, plan=plan)
        if task_scope is not None:
            state.task_scope = self._resolve_scope(state.plan, task_scope)
        self._check_bindings(state.plan)
        latest = await self._store.latest_sequence(run_id)
        if latest is None or latest < checkpoint.sequence:
            latest = checkpoint.sequence
        state.sequence = latest + 1

        with correlation_scope(run_id=run_id, plan_id=state.plan.id, goal_id=state.goal.id):
            self._logger.info(
                "executor_run_resumed",
                checkpoint_id=checkpoint.id,
                completed=len(state.executed),
                failed=len(state.failed),
            )
            return await self._drive(state)

    async def list_checkpoints(self, run_id: str) -> list[Checkpoint]:
        return await self._store.list(run_id)

    async def get_checkpoint(self, run_id: str, checkpoint_id: str | None = None) -> Checkpoint | None:
        return await self._store.get(run_id, checkpoint_id)

    async def prune_checkpoints(self, run_id: str, keep_last: int | None = None) -> int:
        return await self._store.prune(
            run_id, self._settings.keep_last if keep_last is None else keep_last
        )

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _drive(self, state: _RunState) -> ExecutionResult:
        order = state.graph.topological_sort()
        try:
            while True:
                if self._cancel_token is not None:
                    self._cancel_token.raise_if_cancelled()
                task_id = self._next_ready(state, order)
                if task_id is None:
                    break
                with correlation_scope(task_id=task_id):
                    await self._run_task(state, state.plan.get_task(task_id))
        except asyncio.CancelledError:
            mark = state.in_flight
            if state.uncommitted or (mark is not None and mark.body_key is not None):
                await self._save_checkpoint(state, reason="cancelled")
            self._logger.info("executor_run_cancelled", completed=len(state.executed))
            raise

        if state.uncommitted:
            await self._save_checkpoint(state, reason="final")
        self._update_elapsed(state)
        self._logger.info(
            "executor_run_finished",
            completed=len(state.executed),
            failed=len(state.failed),
        )
        return ExecutionResult(
            outputs_by_task=copy.deepcopy(state.outputs),
            ledger=state.ledger,
            executed_task_ids=tuple(state.executed),
            failed_tasks=copy.deepcopy(state.failed),
            metrics=dict(state.metrics),
            run_id=state.run_id,
            augmentations=copy.deepcopy(state.augmentations),
        )

    def _next_ready(self, state: _RunState, order: Sequence[str]) -> str | None:
        for task_id in order:
            if state.settled(task_id):
                continue
            if state.task_scope is not None and task_id not in state.task_scope:
                continue
            if all(state.edge_state.get(edge.label) is True for edge in state.plan.incoming(task_id)):
                return task_id
        return None

    async def _run_task(self, state: _RunState, task: TaskSpec) -> None:
        idem_key = task.resolve_idem_key(state.goal.id, state.context.id)
        previous = state.idempotency.get(idem_key)
        if previous is not None and previous in state.outputs:
            output = copy.deepcopy(state.outputs[previous])
            state.ledger.append(
                LedgerEntryType.TASK_END,
                {
                    "task_id": task.id,
                    "output": output,
                    "attempts": 0,
                    "reused": True,
                    "reused_from": previous,
                    "idem_key": idem_key,
                },
            )
            state.metrics["tasks_reused"] += 1
            await self._record_success(state, task, output, [])
            return

        state.mark_in_flight(task.id)
        try:
            outcome = await self._execute_pipeline(state, task, idem_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - recorded in the ledger and routed
            await self._handle_failure(state, task, idem_key, exc)
            return

        state.in_flight = None
        state.body_outputs.pop(idem_key, None)
        state.idempotency[idem_key] = task.id
        state.metrics["attempts"] += outcome.attempts
        await self._record_success(state, task, outcome.output, outcome.augmentations)
        self._logger.info("executor_task_completed", attempts=outcome.attempts)

    async def _execute_pipeline(self, state: _RunState, task: TaskSpec, idem_key: str) -> _TaskOutcome:
        recorded = state.body_outputs.get(idem_key)
        if recorded is not None and recorded.get("task_id") == task.id:
            return await self._reuse_body_output(state, task, idem_key, recorded)

        ledger = state.ledger
        pre = await evaluate_policy(
            self._policy,
            PolicyAction.TASK_PRE,
            {
                "task_id": task.id,
                "capability": task.capability_ref,
                "plan_id": state.plan.id,
                "input": copy.deepcopy(task.input),
            },
        )
        ledger.append(
            LedgerEntryType.POLICY_PRE,
            {"task_id": task.id, "capability": task.capability_ref, "decision": pre.to_dict()},
        )
        state.policy_decisions[task.id] = pre.to_dict()
        if not pre.allow:
            raise TaskExecutionError(
                f"policy denied task {task.id}: {pre.reason or 'no reason given'}",
                error_class=ErrorClass.FATAL_ERROR,
            )

        nucleus: Nucleus | None = None
        scope: InternalContextScope | None = None
        if task.nucleus_ref is not None:
            scope = InternalContextScope(ledger.append)
            nucleus = self._build_nucleus(state, task, scope)
            await self._preflight(state, task, nucleus, scope)

        ledger.append(
            LedgerEntryType.TASK_START,
            {
                "task_id": task.id,
                "capability": task.capability_ref,
                "input": copy.deepcopy(task.input),
                "idem_key": idem_key,
            },
        )

        attempt_state = AttemptState()
        output = await self._run_body(state, task, pre, nucleus, scope, attempt_state)
        ledger.append(
            LedgerEntryType.TASK_END,
            {"task_id": task.id, "output": output, "attempts": attempt_state.attempt},
        )
        # From here on a resumed run reuses this output instead of re-running the body.
        state.body_outputs[idem_key] = {
            "task_id": task.id,
            "output": copy.deepcopy(output),
            "attempts": attempt_state.attempt,
            "augmentations": _promoted_artifacts(scope),
        }
        state.mark_in_flight(task.id, body_key=idem_key)

        await self._after_body(state, task, output, nucleus)
        return _TaskOutcome(
            output=output, attempts=attempt_state.attempt, augmentations=_promoted_artifacts(scope)
        )

    async def _reuse_body_output(
        self,
        state: _RunState,
        task: TaskSpec,
        idem_key: str,
        recorded: Mapping[str, Any],
    ) -> _TaskOutcome:
        output = copy.deepcopy(recorded["output"])
        attempts = int(recorded.get("attempts", 0))
        state.mark_in_flight(task.id, body_key=idem_key)
        self._logger.info("executor_task_body_reused", attempts=attempts)

        nucleus: Nucleus | None = None
        scope: InternalContextScope | None = None
        if task.nucleus_ref is not None:
            scope = InternalContextScope(state.ledger.append)
            nucleus = self._build_nucleus(state, task, scope)
        await self._after_body(state, task, output, nucleus)
        augmentations = copy.deepcopy(list(recorded.get("augmentations") or ()))
        augmentations.extend(_promoted_artifacts(scope))
        return _TaskOutcome(output=output, attempts=attempts, augmentations=augmentations)

    async def _after_body(
        self,
        state: _RunState,
        task: TaskSpec,
        output: Any,
        nucleus: Nucleus | None,
    ) -> None:
        ledger = state.ledger
        if nucleus is not None:
            post = await nucleus.postcheck(output)
            if post.metrics is not None:
                state.metrics["nucleus_rounds"] += post.metrics.rounds
            if post.status is PostcheckStatus.NEEDS_COMPENSATION:
                raise TaskExecutionError(
                    f"postcheck requested compensation: {post.reason}",
                    error_class=ErrorClass.COMPENSATION_REQUIRED,
                )
            if post.status is PostcheckStatus.ESCALATE:
                raise TaskExecutionError(
                    f"postcheck escalated: {post.reason}", error_class=ErrorClass.FATAL_ERROR
                )

        if task.verification_refs:
            verified = await self._run_verification(state, task, output)
            ledger.append(
                LedgerEntryType.VERIFICATION,
                {"task_id": task.id, "expressions": list(task.verification_refs), "result": verified},
            )
            if not verified:
                raise TaskExecutionError(
                    f"verification failed for task {task.id}", error_class=ErrorClass.FATAL_ERROR
                )

        post_decision = await evaluate_policy(
            self._policy,
            PolicyAction.TASK_POST,
            {"task_id": task.id, "capability": task.capability_ref, "output": output},
        )
        ledger.append(
            LedgerEntryType.POLICY_POST,
            {"task_id": task.id, "capability": task.capability_ref, "decision": post_decision.to_dict()},
        )
        if not post_decision.allow:
            raise TaskExecutionError(
                f"post-execution policy denied task {task.id}: "
                f"{post_decision.reason or 'no reason given'}",
                error_class=ErrorClass.FATAL_ERROR,
            )

    async def _run_body(
        self,
        state: _RunState,
        task: TaskSpec,
        decision: PolicyDecision,
        nucleus: Nucleus | None,
        scope: InternalContextScope | None,
        attempt_state: AttemptState,
    ) -> Any:
        capability = self._capabilities.get(task.capability_ref)
        limits = decision.limits
        max_attempts = task.retry_policy.max_attempts
        if limits is not None and limits.retries is not None:
            max_attempts = min(max_attempts, limits.retries + 1)
        timeout = (
            limits.timeout_ms / 1000.0 if limits is not None and limits.timeout_ms is not None else None
        )

        async def attempt(number: int) -> Any:
            ctx = RunContext(
                run_id=state.run_id,
                goal=state.goal,
                context=state.context,
                task=task,
                outputs=MappingProxyType(copy.deepcopy(state.outputs)),
                ledger_append=state.ledger.append,
                attempt=number,
                nucleus=nucleus,
                scope=scope,
                tools=self._tools,
                cancel_token=self._cancel_token,
            )
            call = capability.execute(ctx, copy.deepcopy(task.input))
            if timeout is None:
                return await call
            return await run_with_timeout(call, timeout, self._cancel_token)

        output = await run_with_retry(
            attempt,
            task.retry_policy,
            max_attempts=max_attempts,
            jitter=task.retry_policy.jitter or self._settings.retry_jitter,
            sleep=self._sleep,
            rng=self._rng,
            logger=self._logger,
            state=attempt_state,
        )
        try:
            return json.loads(canonical_json(output))
        except (TypeError, ValueError) as exc:
            raise TaskExecutionError(
                f"task {task.id} output is not JSON-serializable: {exc}",
                error_class=ErrorClass.FATAL_ERROR,
            ) from exc

    # ------------------------------------------------------------------
    # Nucleus binding
    # ------------------------------------------------------------------

    def _build_nucleus(self, state: _RunState, task: TaskSpec, scope: InternalContextScope) -> Nucleus:
        settings = self._profiles[task.nucleus_ref or DEFAULT_NUCLEUS_PROFILE]
        if self._context_provider is not None:
            self._context_provider.bind_ledger(state.ledger.append)
        config = NucleusConfig(
            goal_id=state.goal.id,
            goal_intent=state.goal.intent,
            context=state.context,
            task_id=task.id,
            plan_id=state.plan.id,
            llm=settings.llm,
            hooks=NucleusHooks(preflight=settings.preflight, postcheck=settings.postcheck),
            max_query_rounds=settings.max_query_rounds,
            max_retrieval_rounds=settings.max_retrieval_rounds,
            max_context_tokens=settings.max_context_tokens,
            budget_threshold=settings.budget_threshold,
            context_provider=self._context_provider,
        )
        if self._llm_call is None:
            raise ExecutorConfigError(f"task {task.id} is bound to a Nucleus but no llm_call was given")
        return Nucleus(
            config,
            self._llm_call,
            state.ledger.append,
            internal_scope=scope,
            cancel_token=self._cancel_token,
        )

    async def _preflight(
        self,
        state: _RunState,
        task: TaskSpec,
        nucleus: Nucleus,
        scope: InternalContextScope,
    ) -> None:
        result = await nucleus.preflight()
        if result.metrics is not None:
            state.metrics["nucleus_rounds"] += result.metrics.rounds
        if result.status is PreflightStatus.OK:
            return
        if self._context_provider is None:
            raise NeedsContextError(task.id, result.directives, reason="no context provider configured")

        await self._context_provider.fulfill(
            RetrievalRequest(
                directives=result.directives,
                scope=scope,
                goal_id=state.goal.id,
                task_id=task.id,
                context=state.context,
            )
        )
        retry = await nucleus.preflight()
        if retry.metrics is not None:
            state.metrics["nucleus_rounds"] += retry.metrics.rounds
        if retry.status is PreflightStatus.NEEDS_CONTEXT:
            raise NeedsContextError(
                task.id, retry.directives, reason="context still missing after fulfillment"
            )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _run_verification(self, state: _RunState, task: TaskSpec, output: Any) -> bool:
        if self._verify is not None:
            return bool(await maybe_await(self._verify(task.id, output, task.verification_refs)))
        outputs = {**state.outputs, task.id: output}
        context_view = state.context.to_dict()
        return all(
            evaluate_guard(
                expression,
                context=context_view,
                outputs=outputs,
                policy=state.policy_decisions,
                output=output,
                logger=self._logger,
            )
            for expression in task.verification_refs
        )

    async def _record_success(
        self,
        state: _RunState,
        task: TaskSpec,
        output: Any,
        augmentations: list[dict[str, Any]],
    ) -> None:
        state.outputs[task.id] = output
        state.executed.append(task.id)
        state.metrics["tasks_completed"] += 1
        if augmentations:
            state.augmentations[task.id] = augmentations

        context_view = state.context.to_dict()
        for edge in state.plan.outgoing(task.id):
            if edge.on_error is not None:
                state.edge_state[edge.label] = False
                continue
            if edge.guard is None:
                state.edge_state[edge.label] = True
                continue
            result = evaluate_guard(
                edge.guard,
                context=context_view,
                outputs=state.outputs,
                policy=state.policy_decisions,
                output=output,
                logger=self._logger,
            )
            state.ledger.append(
                LedgerEntryType.GUARD_EVAL,
                {"edge": edge.label, "guard": edge.guard, "result": result},
            )
            state.edge_state[edge.label] = result
        await self._settle(state)

    async def _handle_failure(
        self, state: _RunState, task: TaskSpec, idem_key: str, exc: Exception
    ) -> None:
        cause: BaseException = exc
        if isinstance(exc, RetryExhaustedError):
            error_class = exc.error_class
            cause = exc.last_error
            attempts = exc.attempts
        else:
            error_class = classify_error(exc, task.retry_policy)
            attempts = None
        state.ledger.append(
            LedgerEntryType.ERROR,
            {
                "task_id": task.id,
                "error_class": error_class.value,
                "error": str(exc),
                "type": type(cause).__name__,
                "attempts": attempts,
                "stack": "".join(traceback.format_exception(cause)),
            },
        )
        self._logger.warning(
            "executor_task_failed", error_class=error_class.value, error=str(exc)
        )

        compensated = False
        if error_class is ErrorClass.COMPENSATION_REQUIRED:
            compensated = await self._compensate(state, task, exc)
        state.failed[task.id] = {"error_class": error_class.value, "error": str(exc)}
        state.metrics["tasks_failed"] += 1
        state.in_flight = None

        branched = False
        for edge in state.plan.outgoing(task.id):
            taken = edge.on_error is error_class
            if taken:
                branched = True
                state.ledger.append(
                    LedgerEntryType.BRANCH_TAKEN,
                    {
                        "edge": edge.label,
                        "from": edge.source,
                        "to": edge.target,
                        "error_class": error_class.value,
                    },
                )
            state.edge_state[edge.label] = taken

        if branched or compensated:
            state.body_outputs.pop(idem_key, None)
            await self._settle(state)
            return

        state.failed[task.id]["halted"] = True
        state.uncommitted += 1
        checkpoint = await self._save_checkpoint(state, reason="halted")
        if isinstance(exc, NeedsContextError):
            exc.run_id = state.run_id
            exc.checkpoint_id = checkpoint.id
            raise exc
        raise TaskFailedError(
            task.id,
            error_class,
            str(exc),
            run_id=state.run_id,
            checkpoint_id=checkpoint.id,
        ) from exc

    async def _compensate(self, state: _RunState, task: TaskSpec, exc: Exception) -> bool:
        spec = task.compensation
        if spec is None:
            self._logger.warning("executor_compensation_missing")
            return False
        payload = (
            copy.deepcopy(spec.input)
            if spec.input is not None
            else {"task_id": task.id, "input": copy.deepcopy(task.input), "error": str(exc)}
        )
        ctx = RunContext(
            run_id=state.run_id,
            goal=state.goal,
            context=state.context,
            task=task,
            outputs=MappingProxyType(copy.deepcopy(state.outputs)),
            ledger_append=state.ledger.append,
            tools=self._tools,
            cancel_token=self._cancel_token,
        )
        try:
            output = await self._capabilities.get(spec.capability_ref).execute(ctx, payload)
            output = json.loads(canonical_json(output))
        except asyncio.CancelledError:
            raise
        except Exception as comp_exc:  # noqa: BLE001 - recorded; the original failure halts
            state.ledger.append(
                LedgerEntryType.ERROR,
                {
                    "task_id": task.id,
                    "error_class": ErrorClass.FATAL_ERROR.value,
                    "error": str(comp_exc),
                    "type": type(comp_exc).__name__,
                    "stage": "compensation",
                    "stack": "".join(traceback.format_exception(comp_exc)),
                },
            )
            return False
        state.ledger.append(
            LedgerEntryType.COMPENSATION,
            {
                "task_id": task.id,
                "capability": spec.capability_ref,
                "input": payload,
                "output": output,
            },
        )
        return True

    async def _settle(self, state: _RunState) -> None:
        state.uncommitted += 1
        if state.uncommitted >= self._settings.checkpoint_interval:
            await self._save_checkpoint(state, reason="task_settled")

    async def _save_checkpoint(self, state: _RunState, *, reason: str) -> Checkpoint:
        self._update_elapsed(state)
        checkpoint = Checkpoint(
            id=generate_checkpoint_id(),
            run_id=state.run_id,
            ts=utc_timestamp(),
            sequence=state.sequence,
            state=state.to_checkpoint_state(),
            metadata=CheckpointMetadata(
                tasks_completed=len(state.executed),
                tasks_failed=len(state.failed),
                reason=reason,
            ),
        )
        await self._store.put(checkpoint)
        state.sequence += 1
        state.uncommitted = 0
        self._logger.info(
            "executor_checkpoint_saved",
            checkpoint_id=checkpoint.id,
            sequence=checkpoint.sequence,
            reason=reason,
        )
        return checkpoint

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def _new_ledger(self, snapshot: Sequence[Mapping[str, Any]] | None = None) -> Ledger:
        if snapshot is None:
            ledger = Ledger(logger=self._logger)
        else:
            ledger = Ledger.restore(snapshot, logger=self._logger)
        for listener in self._listeners:
            ledger.subscribe(listener)
        return ledger

    def _restore_state(self, checkpoint: Checkpoint, *, plan: Plan | None) -> _RunState:
        data = checkpoint.state
        try:
            stored_plan = Plan.from_dict(data["plan"])
            goal = Goal.from_dict(data["goal"])
            context = ContextPacket.from_dict(data["context"])
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointCorruptedError(
                f"checkpoint {checkpoint.id} holds an invalid plan, goal or context: {exc}"
            ) from exc
        if plan is not None and plan.id != stored_plan.id:
            raise ResumeMismatchError(
                f"checkpoint {checkpoint.id} belongs to plan {stored_plan.id}, not {plan.id}"
            )
        active_plan = plan or stored_plan
        try:
            ledger = self._new_ledger(data["ledger"])
        except (LedgerIntegrityError, ValueError) as exc:
            raise CheckpointCorruptedError(
                f"checkpoint {checkpoint.id} ledger failed validation: {exc}"
            ) from exc

        raw_scope = data.get("task_scope")
        metrics = _initial_metrics()
        metrics.update(dict(data["metrics"]))
        state = _RunState(
            run_id=checkpoint.run_id,
            goal=goal,
            context=context,
            plan=active_plan,
            graph=self._build_graph(active_plan),
            ledger=ledger,
            task_scope=frozenset(raw_scope) if raw_scope is not None else None,
            outputs=copy.deepcopy(dict(data["outputs"])),
            executed=list(data["executed_task_ids"]),
            failed={key: dict(value) for key, value in data["failed_tasks"].items()},
            edge_state={key: bool(value) for key, value in data["edge_state"].items()},
            idempotency=dict(data["idempotency"]),
            policy_decisions=copy.deepcopy(dict(data.get("policy_decisions") or {})),
            augmentations=copy.deepcopy(dict(data.get("augmentations") or {})),
            body_outputs=copy.deepcopy(dict(data.get("body_outputs") or {})),
            metrics=metrics,
        )
        state.started_at = time.monotonic() - float(metrics.get("elapsed_sec", 0.0))
        # The task that halted the run gets another go.
        for task_id in [key for key, value in state.failed.items() if value.get("halted")]:
            del state.failed[task_id]
            for edge in active_plan.outgoing(task_id):
                state.edge_state.pop(edge.label, None)
        return state

    @staticmethod
    def _build_graph(plan: Plan) -> TaskGraph:
        graph = TaskGraph.from_plan(plan)
        try:
            graph.topological_sort()
        except CycleError as exc:
            raise ExecutorConfigError(f"plan {plan.id}: {exc}") from exc
        return graph

    @staticmethod
    def _resolve_scope(plan: Plan, task_scope: Iterable[str] | None) -> frozenset[str] | None:
        if task_scope is None:
            return None
        scope = frozenset(task_scope)
        unknown = sorted(scope - set(plan.task_ids))
        if unknown:
            raise ExecutorConfigError(f"task_scope names unknown tasks: {unknown}")
        return scope

    def _check_bindings(self, plan: Plan) -> None:
        refs = [task.capability_ref for task in plan.tasks]
        refs.extend(task.compensation.capability_ref for task in plan.tasks if task.compensation)
        missing = self._capabilities.missing(refs)
        if missing:
            raise ExecutorConfigError(f"no capability registered for: {list(missing)}")
        nucleus_refs = sorted({task.nucleus_ref for task in plan.tasks if task.nucleus_ref})
        if nucleus_refs and self._llm_call is None:
            raise ExecutorConfigError("plan binds tasks to a Nucleus but no llm_call was given")
        unknown = [ref for ref in nucleus_refs if ref not in self._profiles]
        if unknown:
            raise ExecutorConfigError(f"no Nucleus profile named: {unknown}")

    @staticmethod
    def _update_elapsed(state: _RunState) -> None:
        state.metrics["elapsed_sec"] = round(time.monotonic() - state.started_at, 6)


async def execute_resumable_plan(
    goal: Goal | None,
    plan: Plan,
    context: ContextPacket | None,
    capabilities: CapabilityRegistry | Mapping[str, Any],
    *,
    run_id: str | None = None,
    resume_from: str | None = None,
    task_scope: Iterable[str] | None = None,
    **executor_options: Any,
) -> ExecutionResult:
    """
    One-shot helper around :class:`ResumableExecutor`.

    With ``resume_from`` (a checkpoint id, or ``"latest"``) the run named by
    ``run_id`` is resumed; otherwise a fresh run starts.
    """

    executor = ResumableExecutor(capabilities, **executor_options)
    if resume_from is not None:
        if run_id is None:
            raise ExecutorConfigError("resume_from requires run_id")
        return await executor.resume(
            run_id,
            checkpoint_id=None if resume_from == "latest" else resume_from,
            plan=plan,
            task_scope=task_scope,
        )
    if goal is None or context is None:
        raise ExecutorConfigError("a fresh run needs a goal and a context packet")
    return await executor.execute(goal, plan, context, run_id=run_id, task_scope=task_scope)


__all__ = [
    "DEFAULT_NUCLEUS_PROFILE",
    "ExecutionResult",
    "ExecutorConfigError",
    "ExecutorError",
    "NeedsContextError",
    "PlanRejectedError",
    "ResumableExecutor",
    "ResumeMismatchError",
    "TaskFailedError",
    "VerifyFn",
    "execute_resumable_plan",
]
