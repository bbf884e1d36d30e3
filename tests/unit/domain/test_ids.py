"""Unit tests for prefixed ULID identifiers."""

from __future__ import annotations

import pytest

from nucleus_orchestrator.domain import ids
from nucleus_orchestrator.domain.ids import IdKind


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_5000() -> None:
    generated = {ids.generate_ulid() for _ in range(5_000)}
    assert len(generated) == 5_000


def test_ulid_encoding_and_timestamp() -> None:
    assert ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes) == "0" * ids.ULID_LENGTH
    assert ids.generate_ulid(timestamp_ms=1, randbytes=_zero_bytes) == "0000000001" + "0" * 16

    value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(value) == ids.ULID_LENGTH
    assert value.endswith("Z" * 16)
    assert ids.ulid_timestamp_ms(value) == 123_456
    assert ids.ulid_timestamp_ms(value.lower()) == 123_456


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"timestamp_ms": -1}, "timestamp_ms must be an int"),
        ({"timestamp_ms": 1 << 48}, "timestamp_ms must be an int"),
        ({"timestamp_ms": True}, "timestamp_ms must be an int"),
        ({"randbytes": lambda size: b"\x00"}, "exactly 10 bytes"),
    ],
)
def test_generate_ulid_rejects_bad_inputs(kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        ids.generate_ulid(**kwargs)  # type: ignore[arg-type]


def test_malformed_ulids_are_rejected() -> None:
    with pytest.raises(ValueError, match="26-character"):
        ids.ulid_timestamp_ms("0" * 25)
    with pytest.raises(ValueError, match="invalid ULID character 'U'"):
        ids.ulid_timestamp_ms("U" + "0" * 25)
    with pytest.raises(ValueError, match="exceeds 128 bits"):
        ids.ulid_timestamp_ms("8" + "0" * 25)


def test_each_kind_has_its_prefix() -> None:
    assert ids.generate_run_id().startswith("run-")
    assert ids.generate_checkpoint_id().startswith("ckpt-")
    assert ids.generate_ledger_entry_id().startswith("led-")
    assert ids.generate_artifact_id().startswith("art-")
    assert ids.generate_tool_call_id().startswith("call-")


def test_check_id_accepts_only_its_own_kind() -> None:
    run_id = ids.new_id(IdKind.RUN, timestamp_ms=1, randbytes=_zero_bytes)
    assert run_id == "run-0000000001" + "0" * 16
    ids.check_id(run_id, IdKind.RUN)

    with pytest.raises(ValueError, match="expected an id starting with 'ckpt-'"):
        ids.check_id(run_id, IdKind.CHECKPOINT)
    with pytest.raises(ValueError, match="malformed run id"):
        ids.check_id("run-short", IdKind.RUN)


def test_ids_sort_by_creation_time() -> None:
    earlier = ids.new_id(IdKind.CHECKPOINT, timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.new_id(IdKind.CHECKPOINT, timestamp_ms=1_001, randbytes=_zero_bytes)
    assert earlier < later
