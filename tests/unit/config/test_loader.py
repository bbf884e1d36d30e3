"""
nucleus-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var coercion and error messages.
- Path normalization relative to the config file.
- Redacted effective config dumping and checkpoint store construction.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from nucleus_orchestrator.config.loader import (
    ConfigLoadError,
    build_checkpoint_store,
    dump_effective_config,
    load_config,
)
from nucleus_orchestrator.config.schema import ConfigValidationError, default_config, merge_config
from nucleus_orchestrator.persistence.checkpoint_store import FileCheckpointStore, MemoryCheckpointStore
from nucleus_orchestrator.persistence.sqlite_store import SQLiteCheckpointStore


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "nucleus.toml"
    _write_config(
        config_path,
        """
[nucleus]
max_query_rounds = 4
""".strip(),
    )

    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ={"NUCLEUS_NUCLEUS_MAX_QUERY_ROUNDS": "6"})
    cli_loaded = load_config(
        config_path,
        environ={"NUCLEUS_NUCLEUS_MAX_QUERY_ROUNDS": "6"},
        cli_overrides={"nucleus.max_query_rounds": 7},
    )

    assert file_loaded["nucleus"]["max_query_rounds"] == 4
    assert env_loaded["nucleus"]["max_query_rounds"] == 6
    assert cli_loaded["nucleus"]["max_query_rounds"] == 7


def test_missing_default_file_falls_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    loaded = load_config(environ={})
    assert loaded["nucleus"] == default_config()["nucleus"]
    assert loaded["executor"]["checkpoint_dir"] == (tmp_path / "state" / "checkpoints").resolve().as_posix()


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path: Path) -> None:
    config_path = tmp_path / "nucleus.toml"
    _write_config(config_path, "[nucleus\nmax_query_rounds = ")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_env_coercion_covers_every_scalar_kind(tmp_path: Path) -> None:
    config_path = tmp_path / "nucleus.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "NUCLEUS_NUCLEUS_POSTCHECK": "yes",
            "NUCLEUS_NUCLEUS_BUDGET_THRESHOLD": "0.5",
            "NUCLEUS_LLM_MODEL": " gpt-test ",
            "NUCLEUS_LLM_SEED": "11",
        },
    )

    assert loaded["nucleus"]["postcheck"] is True
    assert loaded["nucleus"]["budget_threshold"] == 0.5
    assert loaded["llm"]["model"] == "gpt-test"
    assert loaded["llm"]["seed"] == 11


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("NUCLEUS_EXECUTOR_KEEP_LAST", "many", "must be an integer"),
        ("NUCLEUS_NUCLEUS_BUDGET_THRESHOLD", "high", "must be a number"),
        ("NUCLEUS_NUCLEUS_PREFLIGHT", "maybe", "must be a boolean"),
    ],
)
def test_env_coercion_errors(tmp_path: Path, name: str, value: str, message: str) -> None:
    config_path = tmp_path / "nucleus.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={name: value})


def test_cli_overrides_are_validated(tmp_path: Path) -> None:
    config_path = tmp_path / "nucleus.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigValidationError, match="executor.checkpoint_backend"):
        load_config(config_path, environ={}, cli_overrides={"executor.checkpoint_backend": "redis"})
    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(config_path, environ={}, cli_overrides={"..": 1})


def test_file_secrets_are_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "nucleus.toml"
    _write_config(config_path, '[llm]\nprovider = "openai"\nmodel = "m"\napi_key = "sk-live"\n')
    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        load_config(config_path, environ={})


def test_paths_resolve_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "nucleus.toml"
    _write_config(config_path, '[executor]\ncheckpoint_dir = "../runs/checkpoints"\n')

    loaded = load_config(config_path, environ={})

    assert loaded["executor"]["checkpoint_dir"] == (tmp_path / "runs" / "checkpoints").resolve().as_posix()


def test_dump_effective_config_is_deterministic_and_redacted() -> None:
    config = merge_config(default_config(), {"llm": {"model": "gpt-test"}})
    config["llm"]["token"] = "sk-live"

    dumped = dump_effective_config(config)

    assert dumped == dump_effective_config(config)
    payload = json.loads(dumped)
    assert payload["llm"]["token"] == "***REDACTED***"
    assert payload["llm"]["model"] == "gpt-test"
    assert "sk-live" not in dumped


def test_build_checkpoint_store_per_backend(tmp_path: Path) -> None:
    config = default_config()
    config["executor"]["checkpoint_dir"] = tmp_path.as_posix()

    assert isinstance(build_checkpoint_store(config), MemoryCheckpointStore)

    config["executor"]["checkpoint_backend"] = "file"
    file_store = build_checkpoint_store(config)
    assert isinstance(file_store, FileCheckpointStore)
    assert file_store.base_dir == tmp_path

    config["executor"]["checkpoint_backend"] = "sqlite"
    assert isinstance(build_checkpoint_store(config), SQLiteCheckpointStore)

    config["executor"]["checkpoint_backend"] = "redis"
    with pytest.raises(ConfigLoadError, match="unsupported checkpoint backend"):
        build_checkpoint_store(config)
