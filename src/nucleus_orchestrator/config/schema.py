"""
nucleus-orchestrator — configuration schema

File: src/nucleus_orchestrator/config/schema.py
Last updated: 2026-10-19

Purpose
- Define the config sections, their defaults and their validation rules.
- Turn validated config into the settings objects the Nucleus and the
  executor consume.

Functional requirements
- Validation collects every issue with a dotted path before failing.
- Unknown keys are rejected; keys that look like embedded secrets get a
  dedicated message, since config files are never a place for credentials.
- ``nucleus.max_context_tokens = 0`` means no token budget.

Non-functional requirements
- Defaults are deep-copied on every read; validation never mutates its input.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, TypedDict

from nucleus_orchestrator.constants import (
    CHECKPOINT_DIR,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BUDGET_THRESHOLD,
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_KEEP_CHECKPOINTS,
    DEFAULT_MAX_QUERY_ROUNDS,
    DEFAULT_MAX_RETRIEVAL_ROUNDS,
)
from nucleus_orchestrator.synthesis_plane.tools import LLMConfig

CHECKPOINT_BACKENDS: Final[tuple[str, ...]] = ("memory", "file", "sqlite")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "console")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("executor", "checkpoint_dir"),)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"apikey", "key", "password", "passwd", "secret", "token", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = ("api_key", "access_key", "private_key")


class MetaConfig(TypedDict):
    schema_version: int


class NucleusSection(TypedDict):
    max_query_rounds: int
    max_retrieval_rounds: int
    max_context_tokens: int
    budget_threshold: float
    preflight: bool
    postcheck: bool


class LLMSection(TypedDict, total=False):
    provider: str
    model: str
    temperature: float
    seed: int
    max_tokens: int


class ExecutorSection(TypedDict):
    checkpoint_interval: int
    checkpoint_backend: str
    checkpoint_dir: str
    keep_last: int
    retry_jitter: bool


class ObservabilitySection(TypedDict):
    log_level: str
    log_format: str
    redact_secrets: bool


class NucleusOrchestratorConfig(TypedDict):
    meta: MetaConfig
    nucleus: NucleusSection
    llm: LLMSection
    executor: ExecutorSection
    observability: ObservabilitySection


DEFAULT_CONFIG: Final[NucleusOrchestratorConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "nucleus": {
        "max_query_rounds": DEFAULT_MAX_QUERY_ROUNDS,
        "max_retrieval_rounds": DEFAULT_MAX_RETRIEVAL_ROUNDS,
        "max_context_tokens": 0,
        "budget_threshold": DEFAULT_BUDGET_THRESHOLD,
        "preflight": True,
        "postcheck": False,
    },
    "llm": {
        "provider": "unspecified",
        "model": "unspecified",
    },
    "executor": {
        "checkpoint_interval": DEFAULT_CHECKPOINT_INTERVAL,
        "checkpoint_backend": "memory",
        "checkpoint_dir": CHECKPOINT_DIR.as_posix(),
        "keep_last": DEFAULT_KEEP_CHECKPOINTS,
        "retry_jitter": False,
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when config validation finds one or more issues."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)


def default_config() -> dict[str, Any]:
    return copy.deepcopy(dict(DEFAULT_CONFIG))


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``."""
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Mapping[str, object] | object) -> tuple[dict[str, Any] | None, tuple[ConfigValidationIssue, ...]]:
    """Return ``(normalized, issues)``; ``normalized`` is ``None`` when issues were found."""
    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return None, issues.items()

    _reject_unknown_keys(root, set(DEFAULT_CONFIG), "", issues)
    validators: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "nucleus": _validate_nucleus,
        "llm": _validate_llm,
        "executor": _validate_executor,
        "observability": _validate_observability,
    }
    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = root.get(key)
        if raw is None:
            issues.add(key, "missing required section")
            continue
        section = _as_object(raw, key, issues)
        if section is not None:
            out[key] = validator(section, key, issues)

    found = issues.items()
    return (None, found) if found else (out, found)


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    normalized, issues = validate_config(config)
    if normalized is None:
        raise ConfigValidationError(issues)
    return normalized


def redact_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking values replaced."""
    out: dict[str, Any] = {}
    for key in sorted(config):
        value = config[key]
        if isinstance(value, Mapping):
            out[key] = redact_config(value)
        elif _looks_sensitive_key(key):
            out[key] = "***REDACTED***"
        else:
            out[key] = copy.deepcopy(value)
    return out


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    parsed = _as_int(payload.get("schema_version"), _join(path, "schema_version"), issues, minimum=1)
    if parsed is not None:
        if parsed != CONFIG_SCHEMA_VERSION:
            issues.add(
                _join(path, "schema_version"),
                f"schema version {parsed} is not supported (expected {CONFIG_SCHEMA_VERSION})",
            )
        out["schema_version"] = parsed
    return out


def _validate_nucleus(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["nucleus"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("max_query_rounds", "max_retrieval_rounds", "max_context_tokens"):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=0)
            if parsed_int is not None:
                out[key] = parsed_int
    if "budget_threshold" in payload:
        threshold = _as_float(payload["budget_threshold"], _join(path, "budget_threshold"), issues)
        if threshold is not None:
            if not 0.0 < threshold <= 1.0:
                issues.add(_join(path, "budget_threshold"), "must be in (0, 1]")
            else:
                out["budget_threshold"] = threshold
    for key in ("preflight", "postcheck"):
        if key in payload:
            parsed_bool = _as_bool(payload[key], _join(path, key), issues)
            if parsed_bool is not None:
                out[key] = parsed_bool
    return out


def _validate_llm(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"provider", "model", "temperature", "seed", "max_tokens"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, {"provider", "model"}, path, issues)
    out: dict[str, Any] = {}
    for key in ("provider", "model"):
        if key in payload:
            parsed_str = _as_str(payload[key], _join(path, key), issues)
            if parsed_str is not None:
                out[key] = parsed_str
    if "temperature" in payload:
        temperature = _as_float(payload["temperature"], _join(path, "temperature"), issues, minimum=0.0)
        if temperature is not None:
            out["temperature"] = temperature
    if "seed" in payload:
        seed = _as_int(payload["seed"], _join(path, "seed"), issues)
        if seed is not None:
            out["seed"] = seed
    if "max_tokens" in payload:
        max_tokens = _as_int(payload["max_tokens"], _join(path, "max_tokens"), issues, minimum=1)
        if max_tokens is not None:
            out["max_tokens"] = max_tokens
    return out


def _validate_executor(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["executor"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "checkpoint_interval" in payload:
        interval = _as_int(payload["checkpoint_interval"], _join(path, "checkpoint_interval"), issues, minimum=1)
        if interval is not None:
            out["checkpoint_interval"] = interval
    if "keep_last" in payload:
        keep_last = _as_int(payload["keep_last"], _join(path, "keep_last"), issues, minimum=1)
        if keep_last is not None:
            out["keep_last"] = keep_last
    if "checkpoint_backend" in payload:
        backend = _as_enum(
            payload["checkpoint_backend"],
            _join(path, "checkpoint_backend"),
            issues,
            allowed_values=CHECKPOINT_BACKENDS,
        )
        if backend is not None:
            out["checkpoint_backend"] = backend
    if "checkpoint_dir" in payload:
        checkpoint_dir = _as_str(payload["checkpoint_dir"], _join(path, "checkpoint_dir"), issues)
        if checkpoint_dir is not None:
            if "\x00" in checkpoint_dir:
                issues.add(_join(path, "checkpoint_dir"), "must not contain NUL bytes")
            else:
                out["checkpoint_dir"] = checkpoint_dir
    if "retry_jitter" in payload:
        jitter = _as_bool(payload["retry_jitter"], _join(path, "retry_jitter"), issues)
        if jitter is not None:
            out["retry_jitter"] = jitter
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["observability"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if level is not None:
            out["log_level"] = level
    if "log_format" in payload:
        fmt = _as_enum(
            payload["log_format"], _join(path, "log_format"), issues, allowed_values=LOG_FORMATS
        )
        if fmt is not None:
            out["log_format"] = fmt
    if "redact_secrets" in payload:
        redact = _as_bool(payload["redact_secrets"], _join(path, "redact_secrets"), issues)
        if redact is not None:
            out["redact_secrets"] = redact
    return out


# ----------------------------------------------------------------------
# Runtime settings
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NucleusSettings:
    """Per-profile Nucleus limits and model settings; combined with a goal and task at run time."""

    max_query_rounds: int = DEFAULT_MAX_QUERY_ROUNDS
    max_retrieval_rounds: int = DEFAULT_MAX_RETRIEVAL_ROUNDS
    max_context_tokens: int | None = None
    budget_threshold: float = DEFAULT_BUDGET_THRESHOLD
    preflight: bool = True
    postcheck: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> NucleusSettings:
        nucleus = config.get("nucleus", {})
        llm = config.get("llm", {})
        max_tokens = int(nucleus.get("max_context_tokens", 0))
        return cls(
            max_query_rounds=int(nucleus.get("max_query_rounds", DEFAULT_MAX_QUERY_ROUNDS)),
            max_retrieval_rounds=int(
                nucleus.get("max_retrieval_rounds", DEFAULT_MAX_RETRIEVAL_ROUNDS)
            ),
            max_context_tokens=max_tokens or None,
            budget_threshold=float(nucleus.get("budget_threshold", DEFAULT_BUDGET_THRESHOLD)),
            preflight=bool(nucleus.get("preflight", True)),
            postcheck=bool(nucleus.get("postcheck", False)),
            llm=LLMConfig(
                provider=str(llm.get("provider", "unspecified")),
                model=str(llm.get("model", "unspecified")),
                temperature=llm.get("temperature"),
                seed=llm.get("seed"),
                max_tokens=llm.get("max_tokens"),
            ),
        )


@dataclass(frozen=True, slots=True)
class ExecutorSettings:
    checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL
    keep_last: int = DEFAULT_KEEP_CHECKPOINTS
    retry_jitter: bool = False

    def __post_init__(self) -> None:
        if self.checkpoint_interval < 1:
            raise ValueError("ExecutorSettings.checkpoint_interval: must be >= 1")
        if self.keep_last < 1:
            raise ValueError("ExecutorSettings.keep_last: must be >= 1")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ExecutorSettings:
        executor = config.get("executor", {})
        return cls(
            checkpoint_interval=int(
                executor.get("checkpoint_interval", DEFAULT_CHECKPOINT_INTERVAL)
            ),
            keep_last=int(executor.get("keep_last", DEFAULT_KEEP_CHECKPOINTS)),
            retry_jitter=bool(executor.get("retry_jitter", False)),
        )


# ----------------------------------------------------------------------
# Field coercion helpers
# ----------------------------------------------------------------------


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    return {str(key): item for key, item in value.items()}


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        if _looks_sensitive_key(key):
            issues.add(
                _join(path, key),
                "embedded secret values are forbidden in config",
            )
        else:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _NON_ALNUM.sub("_", _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip()).lower()).strip("_")
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "CHECKPOINT_BACKENDS",
    "DEFAULT_CONFIG",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ExecutorSettings",
    "NucleusOrchestratorConfig",
    "NucleusSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
