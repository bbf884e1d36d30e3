"""
Retry and backoff for task bodies.

Failures are classified into ``ErrorClass`` values. Only ``RETRYABLE_ERROR``
failures are retried, following the task's ``RetryPolicy`` attempt and backoff
schedule with optional jitter; everything else surfaces on the first failure.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from nucleus_orchestrator.domain.models import ErrorClass, RetryPolicy

T = TypeVar("T")

_JITTER_FLOOR = 0.5
_JITTER_SPAN = 0.5

SleepFn = Callable[[float], Awaitable[None]]
RandomFn = Callable[[], float]


class TaskExecutionError(RuntimeError):
    """Task failure with an explicit error class."""

    def __init__(
        self,
        message: str,
        *,
        error_class: ErrorClass | str = ErrorClass.FATAL_ERROR,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_class = ErrorClass(error_class)
        self.details = dict(details or {})


class RetryExhaustedError(RuntimeError):
    """All attempts failed; ``last_error`` holds the final exception."""

    def __init__(self, attempts: int, last_error: BaseException, error_class: ErrorClass) -> None:
        super().__init__(f"failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.error_class = error_class


def classify_error(exc: BaseException, policy: RetryPolicy | None = None) -> ErrorClass:
    """Explicit class on ``TaskExecutionError``; ``retry_on`` type names otherwise."""
    if isinstance(exc, TaskExecutionError):
        return exc.error_class
    explicit = getattr(exc, "error_class", None)
    if isinstance(explicit, ErrorClass):
        return explicit
    if policy is not None and policy.retry_on:
        names = {klass.__name__ for klass in type(exc).__mro__}
        if names.intersection(policy.retry_on):
            return ErrorClass.RETRYABLE_ERROR
    return ErrorClass.FATAL_ERROR


def jittered(delay: float, rng: RandomFn) -> float:
    return delay * (_JITTER_FLOOR + rng() * _JITTER_SPAN)


@dataclass(slots=True)
class AttemptState:
    """Attempt counter and delay log for one retried call."""

    attempt: int = 0
    delays: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    max_attempts: int | None = None,
    jitter: bool | None = None,
    sleep: SleepFn | None = None,
    rng: RandomFn | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    logger: Any | None = None,
    state: AttemptState | None = None,
) -> T:
    """
    Call ``operation(attempt)`` until it succeeds or the policy gives up.

    ``max_attempts`` overrides the policy's own limit (policy limits use this).
    Raises ``RetryExhaustedError`` once a retryable failure runs out of
    attempts; non-retryable failures propagate unchanged on first occurrence.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    limit = max_attempts if max_attempts is not None else policy.max_attempts
    if limit < 1:
        raise ValueError("max_attempts must be >= 1")
    use_jitter = policy.jitter if jitter is None else jitter
    sleep_fn = sleep or asyncio.sleep
    rng_fn = rng or random.random
    attempts = state if state is not None else AttemptState()

    while True:
        attempts.attempt += 1
        try:
            return await operation(attempts.attempt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error_class = classify_error(exc, policy)
            attempts.errors.append(f"{type(exc).__name__}: {exc}")
            if error_class is not ErrorClass.RETRYABLE_ERROR:
                raise
            if attempts.attempt >= limit:
                raise RetryExhaustedError(attempts.attempt, exc, error_class) from exc

            delay = policy.delay_for(attempts.attempt + 1)
            if use_jitter and delay > 0:
                delay = jittered(delay, rng_fn)
            attempts.delays.append(delay)
            log.warning(
                "retry_scheduled",
                attempt=attempts.attempt,
                max_attempts=limit,
                delay_seconds=delay,
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(attempts.attempt, exc, delay)
            if delay > 0:
                await sleep_fn(delay)


__all__ = [
    "AttemptState",
    "RetryExhaustedError",
    "TaskExecutionError",
    "classify_error",
    "jittered",
    "run_with_retry",
]
