"""
nucleus-orchestrator — identifiers

File: src/nucleus_orchestrator/domain/ids.py
Last updated: 2026-10-19

Purpose
- Mint ``<kind>-<ULID>`` identifiers for runs, checkpoints, ledger entries,
  internal artifacts and tool calls.

Functional requirements
- The ULID part is 26 Crockford Base32 characters: 48 bits of milliseconds
  followed by 80 random bits, so ids of one kind sort by creation time.
- Clock and randomness are injectable for deterministic tests.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

ULID_LENGTH: Final[int] = 26
_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_RANDOM_BYTES: Final[int] = 10
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_DIGITS: Final[dict[str, int]] = {char: value for value, char in enumerate(_ALPHABET)}

RandomBytes = Callable[[int], bytes]


class IdKind(StrEnum):
    RUN = "run"
    CHECKPOINT = "ckpt"
    LEDGER_ENTRY = "led"
    ARTIFACT = "art"
    TOOL_CALL = "call"


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandomBytes | None = None) -> str:
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(millis, bool) or not isinstance(millis, int) or not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms must be an int in 0..{_MAX_TIMESTAMP_MS}, got {millis!r}")
    entropy = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (millis << 80) | int.from_bytes(entropy, "big")
    chars: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        chars.append(_ALPHABET[digit])
    return "".join(reversed(chars))


def ulid_timestamp_ms(ulid: str) -> int:
    """Milliseconds encoded in ``ulid``; raises ``ValueError`` if it is malformed."""
    if not isinstance(ulid, str) or len(ulid) != ULID_LENGTH:
        raise ValueError(f"ulid must be a {ULID_LENGTH}-character string, got {ulid!r}")
    value = 0
    for index, char in enumerate(ulid.upper()):
        digit = _DIGITS.get(char)
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
        value = value * 32 + digit
    if value >> 128:
        raise ValueError("ulid exceeds 128 bits")
    return value >> 80


def new_id(kind: IdKind, *, timestamp_ms: int | None = None, randbytes: RandomBytes | None = None) -> str:
    return f"{IdKind(kind).value}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def check_id(value: str, kind: IdKind) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed id of ``kind``."""
    prefix = f"{IdKind(kind).value}-"
    if not isinstance(value, str) or not value.startswith(prefix):
        raise ValueError(f"expected an id starting with {prefix!r}, got {value!r}")
    try:
        ulid_timestamp_ms(value[len(prefix) :])
    except ValueError as exc:
        raise ValueError(f"malformed {kind.name.lower()} id {value!r}: {exc}") from exc


def generate_run_id() -> str:
    return new_id(IdKind.RUN)


def generate_checkpoint_id() -> str:
    return new_id(IdKind.CHECKPOINT)


def generate_ledger_entry_id() -> str:
    return new_id(IdKind.LEDGER_ENTRY)


def generate_artifact_id() -> str:
    return new_id(IdKind.ARTIFACT)


def generate_tool_call_id() -> str:
    return new_id(IdKind.TOOL_CALL)


__all__ = [
    "ULID_LENGTH",
    "IdKind",
    "RandomBytes",
    "check_id",
    "generate_artifact_id",
    "generate_checkpoint_id",
    "generate_ledger_entry_id",
    "generate_run_id",
    "generate_tool_call_id",
    "generate_ulid",
    "new_id",
    "ulid_timestamp_ms",
]
