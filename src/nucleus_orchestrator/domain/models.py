"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from nucleus_orchestrator.utils.hashing import canonical_json, sha256_text


JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 64 * 1024
_MAX_JSON_DEPTH = 32
_MAX_JSON_COLLECTION = 4096
_IDEM_KEY_LENGTH = 32


class ErrorClass(StrEnum):
    RETRYABLE_ERROR = "RETRYABLE_ERROR"
    FATAL_ERROR = "FATAL_ERROR"
    COMPENSATION_REQUIRED = "COMPENSATION_REQUIRED"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
    max_len: int = _MAX_TEXT,
) -> tuple[str, ...]:
    values = _as_sequence(value, path)
    if not allow_empty and not values:
        _fail(path, "must not be empty")
    if len(values) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")

    parsed: list[str] = []
    for index, item in enumerate(values):
        parsed.append(_as_str(item, f"{path}[{index}]", max_len=max_len))

    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return tuple(parsed)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _datetime_to_iso8601z(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        _fail("datetime", "datetime must be timezone-aware UTC")
    normalized = value.astimezone(UTC)
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        if hasattr(value, "to_dict") and path != value.__class__.__name__:
            return cast("CanonicalModel", value).to_dict()
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def compute_idem_key(goal_id: str, context_ref: str, task_id: str) -> str:
    """Stable idempotency key for one task of one goal against one context packet."""
    return sha256_text(f"{goal_id}|{context_ref}|{task_id}")[:_IDEM_KEY_LENGTH]


@dataclass(slots=True)
class Goal(CanonicalModel):
    id: str
    intent: str
    constraints: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Goal.id")
        self.intent = _as_str(self.intent, "Goal.intent")
        self.constraints = _as_json_object(self.constraints, "Goal.constraints")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Goal:
        parsed = _expect_object(data, "Goal", required={"id", "intent"}, optional={"constraints"})
        return cls(
            id=_as_str(parsed["id"], "Goal.id"),
            intent=_as_str(parsed["intent"], "Goal.intent"),
            constraints=_as_json_object(parsed.get("constraints", {}), "Goal.constraints"),
        )


@dataclass(slots=True)
class RetryPolicy(CanonicalModel):
    """
    Attempt budget for one task.

    ``backoff_seconds[i]`` is the delay before attempt ``i + 2``; when attempts
    outnumber the schedule the last delay repeats. ``retry_on`` names exception
    types (matched along the MRO) that count as retryable in addition to
    errors explicitly classified ``RETRYABLE_ERROR``.
    """

    max_attempts: int = 1
    backoff_seconds: tuple[float, ...] = ()
    retry_on: tuple[str, ...] = ()
    jitter: bool = False

    def __post_init__(self) -> None:
        self.max_attempts = _as_int(self.max_attempts, "RetryPolicy.max_attempts", minimum=1)
        self.backoff_seconds = tuple(
            _as_float(item, f"RetryPolicy.backoff_seconds[{idx}]", minimum=0.0)
            for idx, item in enumerate(
                _as_sequence(self.backoff_seconds, "RetryPolicy.backoff_seconds")
            )
        )
        self.retry_on = _as_str_tuple(
            self.retry_on, "RetryPolicy.retry_on", allow_empty=True, unique=True, max_len=256
        )
        self.jitter = _as_bool(self.jitter, "RetryPolicy.jitter")

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before ``attempt`` (1-based; the first attempt has none)."""
        if attempt <= 1 or not self.backoff_seconds:
            return 0.0
        index = min(attempt - 2, len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index]

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RetryPolicy:
        parsed = _expect_object(
            data,
            "RetryPolicy",
            required=set(),
            optional={"max_attempts", "backoff_seconds", "retry_on", "jitter"},
        )
        return cls(
            max_attempts=cast("int", parsed.get("max_attempts", 1)),
            backoff_seconds=tuple(
                _as_sequence(parsed.get("backoff_seconds", ()), "RetryPolicy.backoff_seconds")
            ),
            retry_on=_as_str_tuple(
                parsed.get("retry_on", ()), "RetryPolicy.retry_on", allow_empty=True, unique=True
            ),
            jitter=_as_bool(parsed.get("jitter", False), "RetryPolicy.jitter"),
        )


@dataclass(slots=True)
class CompensationSpec(CanonicalModel):
    capability_ref: str
    input: JSONValue = None

    def __post_init__(self) -> None:
        self.capability_ref = _as_str(self.capability_ref, "CompensationSpec.capability_ref")
        self.input = _as_json_value(self.input, "CompensationSpec.input")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CompensationSpec:
        parsed = _expect_object(
            data, "CompensationSpec", required={"capability_ref"}, optional={"input"}
        )
        return cls(
            capability_ref=_as_str(parsed["capability_ref"], "CompensationSpec.capability_ref"),
            input=_as_json_value(parsed.get("input"), "CompensationSpec.input"),
        )


@dataclass(slots=True)
class TaskSpec(CanonicalModel):
    id: str
    capability_ref: str
    input: JSONValue = None
    idem_key: str | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    verification_refs: tuple[str, ...] = ()
    nucleus_ref: str | None = None
    compensation: CompensationSpec | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "TaskSpec.id", max_len=256)
        self.capability_ref = _as_str(self.capability_ref, "TaskSpec.capability_ref", max_len=256)
        self.input = _as_json_value(self.input, "TaskSpec.input")
        self.idem_key = _as_optional_str(self.idem_key, "TaskSpec.idem_key", max_len=256)
        if not isinstance(self.retry_policy, RetryPolicy):
            _fail("TaskSpec.retry_policy", "expected RetryPolicy")
        self.verification_refs = _as_str_tuple(
            self.verification_refs, "TaskSpec.verification_refs", allow_empty=True, unique=False
        )
        self.nucleus_ref = _as_optional_str(self.nucleus_ref, "TaskSpec.nucleus_ref", max_len=256)
        if self.compensation is not None and not isinstance(self.compensation, CompensationSpec):
            _fail("TaskSpec.compensation", "expected CompensationSpec")

    def resolve_idem_key(self, goal_id: str, context_ref: str) -> str:
        if self.idem_key is not None:
            return self.idem_key
        return compute_idem_key(goal_id, context_ref, self.id)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TaskSpec:
        parsed = _expect_object(
            data,
            "TaskSpec",
            required={"id", "capability_ref"},
            optional={
                "input",
                "idem_key",
                "retry_policy",
                "verification_refs",
                "nucleus_ref",
                "compensation",
            },
        )
        retry_raw = parsed.get("retry_policy")
        compensation_raw = parsed.get("compensation")
        return cls(
            id=_as_str(parsed["id"], "TaskSpec.id"),
            capability_ref=_as_str(parsed["capability_ref"], "TaskSpec.capability_ref"),
            input=_as_json_value(parsed.get("input"), "TaskSpec.input"),
            idem_key=_as_optional_str(parsed.get("idem_key"), "TaskSpec.idem_key"),
            retry_policy=(
                RetryPolicy()
                if retry_raw is None
                else RetryPolicy.from_dict(_as_json_object(retry_raw, "TaskSpec.retry_policy"))
            ),
            verification_refs=_as_str_tuple(
                parsed.get("verification_refs", ()),
                "TaskSpec.verification_refs",
                allow_empty=True,
                unique=False,
            ),
            nucleus_ref=_as_optional_str(parsed.get("nucleus_ref"), "TaskSpec.nucleus_ref"),
            compensation=(
                None
                if compensation_raw is None
                else CompensationSpec.from_dict(
                    _as_json_object(compensation_raw, "TaskSpec.compensation")
                )
            ),
        )


@dataclass(slots=True)
class PlanEdge(CanonicalModel):
    """Dependency ``source -> target``; serialized with ``from``/``to`` keys."""

    source: str
    target: str
    guard: str | None = None
    on_error: ErrorClass | None = None

    def __post_init__(self) -> None:
        self.source = _as_str(self.source, "PlanEdge.from", max_len=256)
        self.target = _as_str(self.target, "PlanEdge.to", max_len=256)
        self.guard = _as_optional_str(self.guard, "PlanEdge.guard", max_len=4096)
        if self.on_error is not None:
            self.on_error = _as_enum(ErrorClass, self.on_error, "PlanEdge.on_error")
        if self.guard is not None and self.on_error is not None:
            _fail("PlanEdge", "an error edge cannot also carry a guard")

    @property
    def label(self) -> str:
        return f"{self.source}->{self.target}"

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {"from": self.source, "to": self.target}
        if self.guard is not None:
            out["guard"] = self.guard
        if self.on_error is not None:
            out["on_error"] = self.on_error.value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PlanEdge:
        parsed = _expect_object(data, "PlanEdge", required={"from", "to"}, optional={"guard", "on_error"})
        on_error_raw = parsed.get("on_error")
        return cls(
            source=_as_str(parsed["from"], "PlanEdge.from"),
            target=_as_str(parsed["to"], "PlanEdge.to"),
            guard=_as_optional_str(parsed.get("guard"), "PlanEdge.guard"),
            on_error=(
                None if on_error_raw is None else _as_enum(ErrorClass, on_error_raw, "PlanEdge.on_error")
            ),
        )


@dataclass(slots=True)
class Plan(CanonicalModel):
    id: str
    context_ref: str
    capability_map_version: str
    tasks: tuple[TaskSpec, ...]
    edges: tuple[PlanEdge, ...] = ()
    rationale: str | None = None

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "Plan.id", max_len=256)
        self.context_ref = _as_str(self.context_ref, "Plan.context_ref", max_len=256)
        self.capability_map_version = _as_str(
            self.capability_map_version, "Plan.capability_map_version", max_len=256
        )
        self.tasks = tuple(self.tasks)
        self.edges = tuple(self.edges)
        self.rationale = _as_optional_str(self.rationale, "Plan.rationale")

        if not self.tasks:
            _fail("Plan.tasks", "must not be empty")
        task_ids: set[str] = set()
        for index, task in enumerate(self.tasks):
            if not isinstance(task, TaskSpec):
                _fail(f"Plan.tasks[{index}]", "expected TaskSpec")
            if task.id in task_ids:
                _fail("Plan.tasks", f"duplicate task id {task.id!r}")
            task_ids.add(task.id)

        seen_edges: set[tuple[str, str]] = set()
        for index, edge in enumerate(self.edges):
            if not isinstance(edge, PlanEdge):
                _fail(f"Plan.edges[{index}]", "expected PlanEdge")
            for endpoint in (edge.source, edge.target):
                if endpoint not in task_ids:
                    _fail(f"Plan.edges[{index}]", f"unknown task id {endpoint!r}")
            if edge.source == edge.target:
                _fail(f"Plan.edges[{index}]", "self-dependency is not allowed")
            key = (edge.source, edge.target)
            if key in seen_edges:
                _fail(f"Plan.edges[{index}]", f"duplicate edge {edge.label}")
            seen_edges.add(key)

    @property
    def task_ids(self) -> tuple[str, ...]:
        return tuple(task.id for task in self.tasks)

    def get_task(self, task_id: str) -> TaskSpec:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(f"Unknown task: {task_id}")

    def incoming(self, task_id: str) -> tuple[PlanEdge, ...]:
        return tuple(edge for edge in self.edges if edge.target == task_id)

    def outgoing(self, task_id: str) -> tuple[PlanEdge, ...]:
        return tuple(edge for edge in self.edges if edge.source == task_id)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "id": self.id,
            "context_ref": self.context_ref,
            "capability_map_version": self.capability_map_version,
            "tasks": [task.to_dict() for task in self.tasks],
            "edges": [edge.to_dict() for edge in self.edges],
        }
        if self.rationale is not None:
            out["rationale"] = self.rationale
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Plan:
        parsed = _expect_object(
            data,
            "Plan",
            required={"id", "context_ref", "capability_map_version", "tasks"},
            optional={"edges", "rationale"},
        )
        tasks = tuple(
            TaskSpec.from_dict(_as_json_object(item, f"Plan.tasks[{idx}]"))
            for idx, item in enumerate(_as_sequence(parsed["tasks"], "Plan.tasks"))
        )
        edges = tuple(
            PlanEdge.from_dict(_as_json_object(item, f"Plan.edges[{idx}]"))
            for idx, item in enumerate(_as_sequence(parsed.get("edges", ()), "Plan.edges"))
        )
        return cls(
            id=_as_str(parsed["id"], "Plan.id"),
            context_ref=_as_str(parsed["context_ref"], "Plan.context_ref"),
            capability_map_version=_as_str(
                parsed["capability_map_version"], "Plan.capability_map_version"
            ),
            tasks=tasks,
            edges=edges,
            rationale=_as_optional_str(parsed.get("rationale"), "Plan.rationale"),
        )


__all__ = [
    "CanonicalModel",
    "CompensationSpec",
    "ErrorClass",
    "Goal",
    "JSONScalar",
    "JSONValue",
    "Plan",
    "PlanEdge",
    "RetryPolicy",
    "TaskSpec",
    "compute_idem_key",
]
