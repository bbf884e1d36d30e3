"""
nucleus-orchestrator — unit tests for the CLI router

File: tests/unit/test_cli.py
Last updated: 2026-10-19

Purpose
- Drive ``run_cli`` in-process: plan validation, config inspection, runs that
  complete, halt and resume, checkpoint inspection and ledger verification.
- Pin the exit-code contract for each failure family.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from nucleus_orchestrator.cli import ExitCode, build_parser, run_cli

CAPABILITIES_MODULE = "refund_capabilities_for_cli_tests"

CAPABILITIES_SOURCE = '''
import os


async def lookup(ctx, input):
    return {"found": True, "orderId": input["orderId"]}


async def refund(ctx, input):
    if os.environ.get("REFUND_FAIL") == "1":
        raise RuntimeError("payment gateway offline")
    return {"refunded": ctx.outputs["lookup"]["orderId"]}


def build():
    return {"crm.lookup": lookup, "refund.issue": refund}
'''

PLAN_DOCUMENT = """
goal:
  id: goal-1
  intent: Refund order O123
context:
  facts:
    orderId: O123
plan:
  id: plan-refund
  capabilityMapVersion: "1"
  tasks:
    - id: lookup
      capabilityRef: crm.lookup
      input: {orderId: O123}
    - id: refund
      capabilityRef: refund.issue
  edges:
    - from: lookup
      to: refund
      guard: "outputs.lookup.found === true"
"""


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("REFUND_FAIL", raising=False)
    (tmp_path / f"{CAPABILITIES_MODULE}.py").write_text(CAPABILITIES_SOURCE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.delitem(sys.modules, CAPABILITIES_MODULE, raising=False)
    yield
    structlog.reset_defaults()


@pytest.fixture
def plan_path(tmp_path: Path) -> Path:
    path = tmp_path / "refund.yaml"
    path.write_text(PLAN_DOCUMENT, encoding="utf-8")
    return path


def _store_args(tmp_path: Path) -> list[str]:
    return [
        "--set",
        "executor.checkpoint_backend=file",
        "--set",
        f"executor.checkpoint_dir={tmp_path / 'ckpt'}",
        "--set",
        "observability.log_level=ERROR",
    ]


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_plan_validate_reports_order(plan_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["plan", "validate", str(plan_path)]) == ExitCode.SUCCESS
    payload = _json_out(capsys)
    assert payload["plan_id"] == "plan-refund"
    assert payload["order"] == ["lookup", "refund"]
    assert payload["has_goal"] is True
    assert payload["has_context"] is True


def test_plan_validate_failures_are_config_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["plan", "validate", str(tmp_path / "missing.yaml")]) == ExitCode.CONFIG_ERROR
    assert "cannot read plan document" in capsys.readouterr().err


def test_config_show_applies_overrides(capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["config", "show", "--set", "nucleus.max_query_rounds=5"]) == ExitCode.SUCCESS
    payload = _json_out(capsys)
    assert payload["nucleus"]["max_query_rounds"] == 5  # type: ignore[index]

    assert run_cli(["config", "show", "--set", "no-equals-sign"]) == ExitCode.CONFIG_ERROR
    assert "--set expects KEY=VALUE" in capsys.readouterr().err


def test_run_completes_and_exports_a_verifiable_ledger(
    tmp_path: Path, plan_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    ledger_path = tmp_path / "run.ledger.jsonl"
    code = run_cli(
        [
            "run",
            str(plan_path),
            "--capabilities",
            f"{CAPABILITIES_MODULE}:build",
            "--run-id",
            "run-ok",
            "--ledger-out",
            str(ledger_path),
            *_store_args(tmp_path),
        ]
    )

    assert code == ExitCode.SUCCESS
    payload = _json_out(capsys)
    assert payload["status"] == "completed"
    assert payload["executed"] == ["lookup", "refund"]
    assert payload["outputs"] == {
        "lookup": {"found": True, "orderId": "O123"},
        "refund": {"refunded": "O123"},
    }

    assert run_cli(["ledger", "verify", str(ledger_path)]) == ExitCode.SUCCESS
    verified = _json_out(capsys)
    assert verified["valid"] is True
    assert verified["entries"] == 11

    assert run_cli(["ledger", "transcript", str(ledger_path)]) == ExitCode.SUCCESS
    assert capsys.readouterr().out.splitlines() == ["[lookup] completed", "[refund] completed"]


def test_tampered_ledger_is_an_integrity_error(
    tmp_path: Path, plan_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    ledger_path = tmp_path / "run.ledger.jsonl"
    run_cli(
        [
            "run",
            str(plan_path),
            "--capabilities",
            f"{CAPABILITIES_MODULE}:build",
            "--ledger-out",
            str(ledger_path),
            *_store_args(tmp_path),
        ]
    )
    capsys.readouterr()

    rows = [json.loads(line) for line in ledger_path.read_text(encoding="utf-8").splitlines()]
    rows[2]["details"]["capability"] = "refund.issue"
    ledger_path.write_text("".join(json.dumps(row) + "\n" for row in rows), encoding="utf-8")

    assert run_cli(["ledger", "verify", str(ledger_path)]) == ExitCode.INTEGRITY_ERROR
    assert _json_out(capsys) == {"valid": False, "seq": 2, "reason": "details digest mismatch"}

    ledger_path.write_text("not json\n", encoding="utf-8")
    assert run_cli(["ledger", "transcript", str(ledger_path)]) == ExitCode.INTEGRITY_ERROR


def test_halted_run_resumes_from_latest_checkpoint(
    tmp_path: Path,
    plan_path: Path,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    run_args = ["run", str(plan_path), "--capabilities", f"{CAPABILITIES_MODULE}:build", "--run-id", "run-halt"]

    monkeypatch.setenv("REFUND_FAIL", "1")
    assert run_cli([*run_args, *_store_args(tmp_path)]) == ExitCode.RUN_FAILED
    failed = _json_out(capsys)
    assert failed["status"] == "failed"
    assert failed["task_id"] == "refund"
    assert failed["error_class"] == "FATAL_ERROR"

    assert run_cli(["checkpoints", "list", *_store_args(tmp_path)]) == ExitCode.SUCCESS
    assert _json_out(capsys) == {"runs": ["run-halt"]}

    assert run_cli(["checkpoints", "list", *_store_args(tmp_path), "run-halt"]) == ExitCode.SUCCESS
    listed = _json_out(capsys)["checkpoints"]
    assert [item["metadata"]["reason"] for item in listed] == ["task_settled", "halted"]  # type: ignore[index]
    assert failed["checkpoint_id"] == listed[-1]["id"]  # type: ignore[index]

    assert run_cli(["checkpoints", "show", *_store_args(tmp_path), "run-halt"]) == ExitCode.SUCCESS
    shown = _json_out(capsys)
    assert shown["state"]["executed_task_ids"] == ["lookup"]  # type: ignore[index]

    monkeypatch.delenv("REFUND_FAIL")
    assert run_cli([*run_args, "--resume", "latest", *_store_args(tmp_path)]) == ExitCode.SUCCESS
    resumed = _json_out(capsys)
    assert resumed["executed"] == ["lookup", "refund"]
    assert resumed["outputs"]["refund"] == {"refunded": "O123"}  # type: ignore[index]

    assert run_cli(["checkpoints", "prune", *_store_args(tmp_path), "run-halt", "--keep", "1"]) == ExitCode.SUCCESS
    assert _json_out(capsys) == {"run_id": "run-halt", "removed": 2, "kept": 1}


def test_run_argument_errors(plan_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert (
        run_cli(["run", str(plan_path), "--capabilities", f"{CAPABILITIES_MODULE}:build", "--resume", "latest"])
        == ExitCode.CONFIG_ERROR
    )
    assert "--resume requires --run-id" in capsys.readouterr().err

    assert run_cli(["run", str(plan_path), "--capabilities", "no_colon"]) == ExitCode.CONFIG_ERROR
    assert "expected MODULE:ATTR" in capsys.readouterr().err

    assert run_cli(["run", str(plan_path), "--capabilities", "missing_module_xyz:caps"]) == ExitCode.CONFIG_ERROR
    assert "cannot import missing_module_xyz" in capsys.readouterr().err

    assert run_cli(["run", str(plan_path), "--capabilities", f"{CAPABILITIES_MODULE}:nope"]) == ExitCode.CONFIG_ERROR
    assert "has no attribute nope" in capsys.readouterr().err

    assert run_cli(["run", str(plan_path), "--capabilities", "os:sep"]) == ExitCode.CONFIG_ERROR
    assert "is not a CapabilityRegistry" in capsys.readouterr().err


def test_checkpoint_show_for_unknown_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["checkpoints", "show", *_store_args(tmp_path), "run-none"]) == ExitCode.RUN_FAILED
    assert "no checkpoints for run run-none" in capsys.readouterr().err
