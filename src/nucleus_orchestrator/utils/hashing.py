"""
nucleus-orchestrator — hashing utilities

File: src/nucleus_orchestrator/utils/hashing.py
Last updated: 2026-10-19

Purpose
- Provide deterministic SHA-256 helpers for bytes, text, and JSON values.
- Define the canonical JSON form used for content ids, ledger digests and
  checkpoint payloads.

Functional requirements
- Canonical JSON sorts object keys, uses compact separators, keeps non-ASCII.
- Digest helpers never depend on dict insertion order.

Non-functional requirements
- Standard library only; behavior is cross-platform deterministic.
"""

from __future__ import annotations

import hashlib
import json


__all__ = [
    "canonical_json",
    "sha256_bytes",
    "sha256_json",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def canonical_json(value: object) -> str:
    """
    Serialize ``value`` into canonical JSON.

    Keys are sorted at every depth and separators carry no whitespace, so two
    structurally equal values always produce the same text.
    """

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_json(value: object) -> str:
    """Return SHA-256 hex digest of the canonical JSON form of ``value``."""

    return sha256_text(canonical_json(value))
