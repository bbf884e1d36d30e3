"""Utility exports for hashing and concurrency helpers."""

from nucleus_orchestrator.utils.concurrency import CancellationToken, maybe_await, run_with_timeout
from nucleus_orchestrator.utils.fs import atomic_write, atomic_writer
from nucleus_orchestrator.utils.hashing import (
    canonical_json,
    sha256_bytes,
    sha256_json,
    sha256_text,
)

__all__ = [
    "CancellationToken",
    "atomic_write",
    "atomic_writer",
    "canonical_json",
    "maybe_await",
    "run_with_timeout",
    "sha256_bytes",
    "sha256_json",
    "sha256_text",
]
