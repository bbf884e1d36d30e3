"""Unit tests for canonical JSON and digest helpers."""

from __future__ import annotations

from nucleus_orchestrator.utils.hashing import (
    canonical_json,
    sha256_json,
    sha256_text,
)


def test_canonical_json_sorts_keys_at_every_depth() -> None:
    left = {"b": 1, "a": {"y": [1, 2], "x": None}}
    right = {"a": {"x": None, "y": [1, 2]}, "b": 1}
    assert canonical_json(left) == canonical_json(right) == '{"a":{"x":null,"y":[1,2]},"b":1}'
    assert sha256_json(left) == sha256_json(right)


def test_canonical_json_keeps_non_ascii() -> None:
    assert canonical_json({"name": "café"}) == '{"name":"café"}'


def test_sha256_helpers() -> None:
    digest = sha256_text("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert sha256_json("abc") == sha256_text('"abc"')
