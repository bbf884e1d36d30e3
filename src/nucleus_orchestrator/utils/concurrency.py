"""
nucleus-orchestrator — cancellation and deadlines

File: src/nucleus_orchestrator/utils/concurrency.py
Last updated: 2026-10-19

Purpose
- One cooperative ``CancellationToken`` is shared by a run, the Nucleus rounds
  inside it and each task attempt; ``run_with_timeout`` races an attempt
  against its policy deadline and that token.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable
from contextlib import suppress
from typing import Final, TypeVar

T = TypeVar("T")

DEFAULT_CANCEL_REASON: Final[str] = "operation cancelled"


class CancellationToken:
    """Set once; every holder observes it at its next checkpoint."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self._reason or DEFAULT_CANCEL_REASON)


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """
    Await ``awaitable`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` when the deadline passes first and
    ``asyncio.CancelledError`` when ``cancel_token`` fires first; in both cases
    the underlying work is cancelled before this returns.
    """

    if timeout_seconds <= 0:
        _discard(awaitable)
        raise ValueError("timeout_seconds must be > 0")
    if cancel_token is not None and cancel_token.is_cancelled:
        _discard(awaitable)
        cancel_token.raise_if_cancelled()

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(cancel_token.wait()) if cancel_token is not None else None
    try:
        done, _ = await asyncio.wait(
            {work} if watcher is None else {work, watcher},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work in done:
            return work.result()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        for future in (work, watcher):
            if future is not None and not future.done():
                future.cancel()
                with suppress(asyncio.CancelledError):
                    await future


async def maybe_await(value: Awaitable[T] | T) -> T:
    """Resolve ``value`` if it is awaitable; policies and verifiers may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value


def _discard(awaitable: Awaitable[object]) -> None:
    # Never scheduled: close it so no "never awaited" warning fires at GC.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "DEFAULT_CANCEL_REASON",
    "CancellationToken",
    "maybe_await",
    "run_with_timeout",
]
