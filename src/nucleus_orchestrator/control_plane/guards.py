"""
nucleus-orchestrator — edge guard evaluation

File: src/nucleus_orchestrator/control_plane/guards.py
Last updated: 2026-10-19

Purpose
- Evaluate plan edge guards as side-effect-free boolean expressions over the
  recorded run state: ``context``, ``outputs``, ``policy`` and ``output``
  (the source task's output).

Functional requirements
- Guards are parsed with ``ast`` and walked against a node whitelist; there is
  no ``eval`` and no attribute access on live objects.
- JavaScript-style operators (``&&``, ``||``, ``!``, ``===``, ``!==``) and
  literals (``true``, ``false``, ``null``) are accepted.
- Dotted access on mappings reads keys; a missing key reads as ``None``.
- Evaluation errors yield ``False``; syntax errors are rejected at plan load.
"""

from __future__ import annotations

import ast
import operator
import re
from collections.abc import Callable, Mapping, Sequence
from functools import lru_cache
from typing import Any, Final

import structlog

GUARD_NAMES: Final[frozenset[str]] = frozenset({"context", "outputs", "policy", "output"})

_JS_TOKENS: Final[re.Pattern[str]] = re.compile(
    r"""(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')"""
    r"|(?P<op>===|!==|&&|\|\||!(?!=))"
    r"|(?P<word>\b(?:true|false|null|undefined)\b)"
)
_JS_REPLACEMENTS: Final[dict[str, str]] = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

_COMPARE_OPS: Final[dict[type[ast.cmpop], Callable[[Any, Any], bool]]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}
_BINARY_OPS: Final[dict[type[ast.operator], Callable[[Any, Any], Any]]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}
_FUNCTIONS: Final[dict[str, Callable[..., Any]]] = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
}


class GuardError(ValueError):
    """Raised when a guard expression is not a supported expression."""


def normalize_guard(expression: str) -> str:
    """Rewrite JavaScript-style operators and literals outside string literals."""

    def _replace(match: re.Match[str]) -> str:
        if match.group("string") is not None:
            return match.group("string")
        return _JS_REPLACEMENTS[match.group(0)]

    return _JS_TOKENS.sub(_replace, expression).strip()


@lru_cache(maxsize=512)
def compile_guard(expression: str) -> ast.Expression:
    if not isinstance(expression, str) or not expression.strip():
        raise GuardError("guard must be a non-empty string")
    normalized = normalize_guard(expression)
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise GuardError(f"guard {expression!r} is not a valid expression: {exc.msg}") from exc
    _check_nodes(tree, expression)
    return tree


def validate_guard(expression: str) -> None:
    compile_guard(expression)


def evaluate_guard(
    expression: str,
    *,
    context: Mapping[str, Any] | None = None,
    outputs: Mapping[str, Any] | None = None,
    policy: Mapping[str, Any] | None = None,
    output: Any = None,
    logger: Any | None = None,
) -> bool:
    """Truthiness of ``expression`` against recorded state; ``False`` on any error."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    names = {
        "context": context or {},
        "outputs": outputs or {},
        "policy": policy or {},
        "output": output,
    }
    try:
        tree = compile_guard(expression)
        return bool(_Evaluator(names).visit(tree.body))
    except Exception as exc:  # noqa: BLE001 - a failing guard is a false guard
        log.warning("guard_evaluation_failed", guard=expression, error=str(exc))
        return False


def _check_nodes(tree: ast.AST, expression: str) -> None:
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            if node.id not in GUARD_NAMES and node.id not in _FUNCTIONS:
                raise GuardError(f"guard {expression!r} references unknown name {node.id!r}")
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS or node.keywords:
                raise GuardError(f"guard {expression!r} calls an unsupported function")
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise GuardError(f"guard {expression!r} reads private attribute {node.attr!r}")
        elif not isinstance(node, _ALLOWED_NODES):
            raise GuardError(
                f"guard {expression!r} uses unsupported syntax {type(node).__name__}"
            )


_ALLOWED_NODES: Final[tuple[type[ast.AST], ...]] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    *_BINARY_OPS,
    ast.Compare,
    *_COMPARE_OPS,
    ast.Constant,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Load,
    ast.IfExp,
)


class _Evaluator(ast.NodeVisitor):
    def __init__(self, names: Mapping[str, Any]) -> None:
        self._names = names

    def generic_visit(self, node: ast.AST) -> Any:
        raise GuardError(f"unsupported syntax {type(node).__name__}")

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._names:
            return self._names[node.id]
        raise GuardError(f"unknown name {node.id!r}")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        return _lookup(self.visit(node.value), self.visit(node.slice))

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        return _BINARY_OPS[type(node.op)](self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        assert isinstance(node.func, ast.Name)
        return _FUNCTIONS[node.func.id](*(self.visit(arg) for arg in node.args))

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(item) for item in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(item) for item in node.elts)

    def visit_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        return {
            self.visit(key) if key is not None else None: self.visit(value)
            for key, value in zip(node.keys, node.values, strict=True)
        }


def _lookup(container: Any, key: Any) -> Any:
    if container is None:
        return None
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, Sequence) and not isinstance(container, (str, bytes)):
        if key == "length":
            return len(container)
        if isinstance(key, int) and -len(container) <= key < len(container):
            return container[key]
        return None
    if isinstance(container, str) and key == "length":
        return len(container)
    return None


__all__ = [
    "GUARD_NAMES",
    "GuardError",
    "compile_guard",
    "evaluate_guard",
    "normalize_guard",
    "validate_guard",
]
