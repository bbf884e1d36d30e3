"""Control-plane public API."""

from nucleus_orchestrator.control_plane.capabilities import (
    Capability,
    CapabilityNotFoundError,
    CapabilityRegistry,
    FunctionCapability,
    RunContext,
)
from nucleus_orchestrator.control_plane.executor import (
    ExecutionResult,
    ExecutorConfigError,
    ExecutorError,
    NeedsContextError,
    PlanRejectedError,
    ResumableExecutor,
    ResumeMismatchError,
    TaskFailedError,
    execute_resumable_plan,
)
from nucleus_orchestrator.control_plane.guards import GuardError, evaluate_guard, validate_guard
from nucleus_orchestrator.control_plane.policy import (
    AllowAllPolicy,
    CapabilityPolicy,
    PolicyAction,
    PolicyDecision,
    PolicyEngine,
    PolicyLimits,
)
from nucleus_orchestrator.control_plane.retry import (
    RetryExhaustedError,
    TaskExecutionError,
    classify_error,
    run_with_retry,
)
from nucleus_orchestrator.control_plane.transcript import ExecutionTranscript, TranscriptEvent

__all__ = [
    "AllowAllPolicy",
    "Capability",
    "CapabilityNotFoundError",
    "CapabilityPolicy",
    "CapabilityRegistry",
    "ExecutionResult",
    "ExecutionTranscript",
    "ExecutorConfigError",
    "ExecutorError",
    "FunctionCapability",
    "GuardError",
    "NeedsContextError",
    "PlanRejectedError",
    "PolicyAction",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyLimits",
    "ResumableExecutor",
    "ResumeMismatchError",
    "RetryExhaustedError",
    "RunContext",
    "TaskExecutionError",
    "TaskFailedError",
    "TranscriptEvent",
    "classify_error",
    "evaluate_guard",
    "execute_resumable_plan",
    "run_with_retry",
    "validate_guard",
]
