"""Command-line interface router for nucleus-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import sys
import traceback
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from nucleus_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    ExecutorSettings,
    NucleusSettings,
    build_checkpoint_store,
    dump_effective_config,
    load_config,
)
from nucleus_orchestrator.control_plane import (
    CapabilityRegistry,
    ExecutionTranscript,
    ExecutorConfigError,
    PlanRejectedError,
    TaskFailedError,
    TranscriptEvent,
    execute_resumable_plan,
)
from nucleus_orchestrator.control_plane.executor import DEFAULT_NUCLEUS_PROFILE
from nucleus_orchestrator.knowledge_plane import Ledger, LedgerError, LedgerIntegrityError
from nucleus_orchestrator.observability import configure_from_config
from nucleus_orchestrator.persistence import CheckpointError, CheckpointStore
from nucleus_orchestrator.planning import PlanLoadError, load_plan_document, validate_plan


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    RUN_FAILED = 1
    CONFIG_ERROR = 2
    INTEGRITY_ERROR = 3
    INTERNAL_ERROR = 4


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = ExitCode.RUN_FAILED

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nucleus-orchestrator",
        description=(
            "nucleus-orchestrator: bounded reasoning loop and resumable plan executor.\n\n"
            "Common workflows:\n"
            "  nucleus-orchestrator plan validate plan.yaml\n"
            "  nucleus-orchestrator run plan.yaml --capabilities mypkg.caps:registry\n"
            "  nucleus-orchestrator checkpoints list RUN_ID\n"
            "  nucleus-orchestrator ledger verify run.ledger.jsonl\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./nucleus.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value by dotted path; VALUE is parsed as JSON when possible.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser("config", help="Inspect effective configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    show_parser = config_sub.add_parser(
        "show", parents=[common], help="Print the effective config (secrets redacted)"
    )
    show_parser.set_defaults(handler=_cmd_config_show)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser("plan", help="Work with plan documents")
    plan_sub = plan_parser.add_subparsers(dest="plan_command", required=True)
    validate_parser = plan_sub.add_parser(
        "validate", help="Parse a plan document and report its execution order"
    )
    validate_parser.add_argument("path", help="YAML or JSON plan document")
    validate_parser.set_defaults(handler=_cmd_plan_validate)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute (or resume) a plan document",
        description=(
            "Execute a plan document with capabilities loaded from a Python object.\n\n"
            "The --capabilities target is MODULE:ATTR naming a CapabilityRegistry, a\n"
            "mapping of name -> callable, or a zero-argument factory returning either.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("path", help="YAML or JSON plan document with goal and context")
    run_parser.add_argument("--capabilities", required=True, metavar="MODULE:ATTR")
    run_parser.add_argument("--llm", default=None, metavar="MODULE:ATTR", help="Model call function")
    run_parser.add_argument("--run-id", default=None)
    run_parser.add_argument(
        "--resume",
        default=None,
        metavar="CHECKPOINT",
        help="Resume --run-id from a checkpoint id, or 'latest'",
    )
    run_parser.add_argument("--task", dest="tasks", action="append", default=None, help="Limit the run to these tasks")
    run_parser.add_argument("--ledger-out", default=None, help="Write the run ledger as JSON lines")
    run_parser.add_argument("--transcript", action="store_true", help="Print narrative events as they happen")
    run_parser.set_defaults(handler=_cmd_run)

    # checkpoints ---------------------------------------------------------
    checkpoints_parser = subparsers.add_parser("checkpoints", help="Inspect the checkpoint store")
    checkpoints_sub = checkpoints_parser.add_subparsers(dest="checkpoints_command", required=True)
    list_parser = checkpoints_sub.add_parser("list", parents=[common], help="List runs or checkpoints")
    list_parser.add_argument("run_id", nargs="?", default=None)
    list_parser.set_defaults(handler=_cmd_checkpoints_list)
    cp_show_parser = checkpoints_sub.add_parser("show", parents=[common], help="Print one checkpoint")
    cp_show_parser.add_argument("run_id")
    cp_show_parser.add_argument("checkpoint_id", nargs="?", default=None)
    cp_show_parser.set_defaults(handler=_cmd_checkpoints_show)
    prune_parser = checkpoints_sub.add_parser("prune", parents=[common], help="Drop old checkpoints")
    prune_parser.add_argument("run_id")
    prune_parser.add_argument("--keep", type=int, default=None, help="Default: executor.keep_last")
    prune_parser.set_defaults(handler=_cmd_checkpoints_prune)

    # ledger --------------------------------------------------------------
    ledger_parser = subparsers.add_parser("ledger", help="Inspect exported ledgers")
    ledger_sub = ledger_parser.add_subparsers(dest="ledger_command", required=True)
    verify_parser = ledger_sub.add_parser("verify", help="Check the digest chain of a JSONL ledger")
    verify_parser.add_argument("path")
    verify_parser.set_defaults(handler=_cmd_ledger_verify)
    transcript_parser = ledger_sub.add_parser("transcript", help="Render a ledger as narrative text")
    transcript_parser.add_argument("path")
    transcript_parser.set_defaults(handler=_cmd_ledger_transcript)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        return int(handler(namespace))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(exc.exit_code)
    except (ConfigLoadError, ConfigValidationError, PlanLoadError, ExecutorConfigError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)


def main(argv: Sequence[str] | None = None) -> int:
    try:
        return run_cli(argv)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


def cli_entrypoint() -> None:
    """Console-script entrypoint."""

    raise SystemExit(main())


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_config_show(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    print(dump_effective_config(config))
    return ExitCode.SUCCESS


def _cmd_plan_validate(args: argparse.Namespace) -> int:
    document = load_plan_document(args.path)
    graph = validate_plan(document.plan)
    payload = {
        "plan_id": document.plan.id,
        "context_ref": document.plan.context_ref,
        "tasks": len(document.plan.tasks),
        "edges": len(document.plan.edges),
        "order": graph.topological_sort(),
        "has_goal": document.goal is not None,
        "has_context": document.context is not None,
    }
    if document.context is not None and document.context.id != document.plan.context_ref:
        raise CLIError(
            f"plan is bound to {document.plan.context_ref} but the document context is {document.context.id}",
            exit_code=ExitCode.CONFIG_ERROR,
        )
    _emit_json(payload)
    return ExitCode.SUCCESS


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    configure_from_config(config)
    document = load_plan_document(args.path)
    if args.resume is not None and args.run_id is None:
        raise CLIError("--resume requires --run-id", exit_code=ExitCode.CONFIG_ERROR)

    capabilities = _load_capabilities(args.capabilities)
    llm_call = _import_object(args.llm) if args.llm else None
    settings = NucleusSettings.from_config(config)
    profiles = {DEFAULT_NUCLEUS_PROFILE: settings}
    profiles.update({task.nucleus_ref: settings for task in document.plan.tasks if task.nucleus_ref})

    transcript = ExecutionTranscript(_print_transcript_event if args.transcript else None)
    try:
        result = asyncio.run(
            execute_resumable_plan(
                document.goal,
                document.plan,
                document.context,
                capabilities,
                run_id=args.run_id,
                resume_from=args.resume,
                task_scope=args.tasks,
                checkpoint_store=build_checkpoint_store(config),
                llm_call=llm_call,
                nucleus_profiles=profiles,
                settings=ExecutorSettings.from_config(config),
                ledger_listeners=[transcript],
            )
        )
    except PlanRejectedError as exc:
        raise CLIError(str(exc)) from exc
    except TaskFailedError as exc:
        _emit_json(
            {
                "status": "failed",
                "run_id": exc.run_id,
                "task_id": exc.task_id,
                "error_class": str(exc.error_class),
                "checkpoint_id": exc.checkpoint_id,
            }
        )
        return ExitCode.RUN_FAILED
    except CheckpointError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.INTEGRITY_ERROR) from exc

    if args.ledger_out:
        result.ledger.export_jsonl(args.ledger_out)
    _emit_json(
        {
            "status": "completed",
            "run_id": result.run_id,
            "executed": list(result.executed_task_ids),
            "failed": sorted(result.failed_tasks),
            "outputs": dict(result.outputs_by_task),
            "metrics": dict(result.metrics),
        }
    )
    return ExitCode.SUCCESS


def _cmd_checkpoints_list(args: argparse.Namespace) -> int:
    store = _checkpoint_store(args)
    if args.run_id is None:
        run_ids = getattr(store, "run_ids", None)
        if run_ids is None:
            raise CLIError("this checkpoint backend cannot enumerate runs", exit_code=ExitCode.CONFIG_ERROR)
        _emit_json({"runs": run_ids()})
        return ExitCode.SUCCESS
    checkpoints = asyncio.run(store.list(args.run_id))
    _emit_json(
        {
            "run_id": args.run_id,
            "checkpoints": [
                {
                    "id": item.id,
                    "sequence": item.sequence,
                    "ts": item.ts,
                    "metadata": item.metadata.to_dict(),
                }
                for item in checkpoints
            ],
        }
    )
    return ExitCode.SUCCESS


def _cmd_checkpoints_show(args: argparse.Namespace) -> int:
    store = _checkpoint_store(args)
    try:
        checkpoint = asyncio.run(store.get(args.run_id, args.checkpoint_id))
    except CheckpointError as exc:
        raise CLIError(str(exc)) from exc
    if checkpoint is None:
        target = f"checkpoint {args.checkpoint_id}" if args.checkpoint_id else "no checkpoints"
        raise CLIError(f"{target} for run {args.run_id}")
    _emit_json(checkpoint.to_dict())
    return ExitCode.SUCCESS


def _cmd_checkpoints_prune(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    keep = args.keep if args.keep is not None else ExecutorSettings.from_config(config).keep_last
    store = build_checkpoint_store(config)
    try:
        removed = asyncio.run(store.prune(args.run_id, keep))
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.CONFIG_ERROR) from exc
    _emit_json({"run_id": args.run_id, "removed": removed, "kept": keep})
    return ExitCode.SUCCESS


def _cmd_ledger_verify(args: argparse.Namespace) -> int:
    try:
        ledger = _read_ledger(args.path)
    except LedgerIntegrityError as exc:
        _emit_json({"valid": False, "seq": exc.seq, "reason": exc.reason})
        return ExitCode.INTEGRITY_ERROR
    _emit_json({"valid": True, "entries": len(ledger.entries()), "head": ledger.head})
    return ExitCode.SUCCESS


def _cmd_ledger_transcript(args: argparse.Namespace) -> int:
    try:
        ledger = _read_ledger(args.path)
    except LedgerIntegrityError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.INTEGRITY_ERROR) from exc
    transcript = ExecutionTranscript()
    transcript.replay(ledger)
    text = transcript.render_text()
    if text:
        print(text)
    return ExitCode.SUCCESS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str))


def _print_transcript_event(event: TranscriptEvent) -> None:
    print(json.dumps(event.to_dict(), sort_keys=True, default=str), file=sys.stderr)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides = _parse_overrides(getattr(args, "overrides", None) or [])
    return load_config(getattr(args, "config_path", None), cli_overrides=overrides)


def _parse_overrides(items: Sequence[str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise CLIError(f"--set expects KEY=VALUE, got {item!r}", exit_code=ExitCode.CONFIG_ERROR)
        try:
            value: object = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        overrides[key.strip()] = value
    return overrides


def _checkpoint_store(args: argparse.Namespace) -> CheckpointStore:
    return build_checkpoint_store(_load_effective_config(args))


def _read_ledger(path: str) -> Ledger:
    try:
        return Ledger.load_jsonl(path)
    except OSError as exc:
        raise CLIError(f"cannot read ledger {path}: {exc}", exit_code=ExitCode.CONFIG_ERROR) from exc
    except (ValueError, KeyError, TypeError) as exc:
        raise CLIError(f"malformed ledger {path}: {exc}", exit_code=ExitCode.INTEGRITY_ERROR) from exc
    except LedgerIntegrityError:
        raise
    except LedgerError as exc:
        raise CLIError(str(exc), exit_code=ExitCode.INTEGRITY_ERROR) from exc


def _import_object(target: str) -> Any:
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise CLIError(f"expected MODULE:ATTR, got {target!r}", exit_code=ExitCode.CONFIG_ERROR)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CLIError(f"cannot import {module_name}: {exc}", exit_code=ExitCode.CONFIG_ERROR) from exc
    obj: Any = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as exc:
            raise CLIError(f"{module_name} has no attribute {attr}", exit_code=ExitCode.CONFIG_ERROR) from exc
    return obj


def _load_capabilities(target: str) -> CapabilityRegistry | Mapping[str, Any]:
    obj = _import_object(target)
    if isinstance(obj, (CapabilityRegistry, Mapping)):
        return obj
    if callable(obj):
        obj = obj()
        if isinstance(obj, (CapabilityRegistry, Mapping)):
            return obj
    raise CLIError(
        f"{target} is not a CapabilityRegistry, a mapping, or a factory for one",
        exit_code=ExitCode.CONFIG_ERROR,
    )


__all__ = ["CLIError", "ExitCode", "build_parser", "cli_entrypoint", "main", "run_cli"]
