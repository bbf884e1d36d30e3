"""
nucleus-orchestrator — runtime config loader

File: src/nucleus_orchestrator/config/loader.py
Last updated: 2026-10-19

Purpose
- Assemble the effective runtime config and build the checkpoint store it
  names.

Layers, lowest first
1. ``DEFAULT_CONFIG`` from ``config.schema``.
2. A TOML file (``nucleus.toml`` in the working directory unless a path is
   given; only an explicitly given path must exist).
3. ``NUCLEUS_*`` environment variables. Each scalar setting ``a.b_c`` maps to
   ``NUCLEUS_A_B_C`` and the raw string is coerced to the setting's type.
4. Dotted ``--set key=value`` overrides from the CLI.

Path settings resolve against the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final

from nucleus_orchestrator.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from nucleus_orchestrator.constants import ENV_PREFIX
from nucleus_orchestrator.persistence.checkpoint_store import (
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
)
from nucleus_orchestrator.persistence.sqlite_store import SQLiteCheckpointStore

DEFAULT_CONFIG_FILE: Final[str] = "nucleus.toml"
SQLITE_FILENAME: Final[str] = "checkpoints.sqlite3"

# Settings that have no default value but may still come from the environment.
_OPTIONAL_SETTINGS: Final[dict[str, type]] = {
    "llm.max_tokens": int,
    "llm.seed": int,
    "llm.temperature": float,
}

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Effective config; CLI beats env, env beats file, file beats defaults."""

    if config_path is None:
        source = (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    else:
        source = Path(config_path).expanduser().resolve()

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    config = merge_config(config, _env_layer(config, os.environ if environ is None else environ))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    return normalize_paths(assert_valid_config(config), base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with every path setting made absolute against ``base_dir``."""

    resolved = merge_config({}, config)
    for dotted in PATH_FIELDS:
        section = resolved
        for key in dotted[:-1]:
            section = section.get(key) if isinstance(section, dict) else None
        if not isinstance(section, dict):
            continue
        raw = section.get(dotted[-1])
        if isinstance(raw, str):
            section[dotted[-1]] = _absolute(raw, base_dir)
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def build_checkpoint_store(config: Mapping[str, Any]) -> CheckpointStore:
    settings = config.get("executor", {})
    backend = settings.get("checkpoint_backend", "memory")
    if backend == "memory":
        return MemoryCheckpointStore()

    directory = Path(str(settings.get("checkpoint_dir")))
    factories: dict[str, Callable[[], CheckpointStore]] = {
        "file": lambda: FileCheckpointStore(directory),
        "sqlite": lambda: SQLiteCheckpointStore(directory / SQLITE_FILENAME),
    }
    factory = factories.get(backend)
    if factory is None:
        raise ConfigLoadError(f"unsupported checkpoint backend: {backend!r}")
    return factory()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _env_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    settings = dict(_OPTIONAL_SETTINGS)
    settings.update(
        (dotted, type(value))
        for dotted, value in _flatten(config).items()
        if isinstance(value, (bool, int, float, str))
    )

    layer: dict[str, Any] = {}
    for dotted in sorted(settings):
        variable = ENV_PREFIX + dotted.replace(".", "_").upper()
        raw = environ.get(variable)
        if raw is not None:
            _assign(layer, dotted.split("."), _coerce(raw.strip(), settings[dotted], f"{variable} -> {dotted}"))
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = overrides[key]
        _assign(layer, parts, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def _flatten(payload: Mapping[str, object], prefix: str = "") -> dict[str, object]:
    flat: dict[str, object] = {}
    for key, value in payload.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, dotted + "."))
        else:
            flat[dotted] = value
    return flat


def _coerce(raw: str, target: type, label: str) -> object:
    if target is bool:
        if raw.lower() in _TRUTHY:
            return True
        if raw.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")
    if target is int:
        try:
            return int(raw)
        except ValueError:
            raise ConfigLoadError(f"{label} must be an integer") from None
    if target is float:
        try:
            return float(raw)
        except ValueError:
            raise ConfigLoadError(f"{label} must be a number") from None
    return raw


def _assign(target: dict[str, Any], parts: list[str], value: object) -> None:
    *parents, leaf = parts
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[leaf] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    return Path(os.path.normpath(base_dir / candidate)).as_posix()


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "SQLITE_FILENAME",
    "ConfigLoadError",
    "build_checkpoint_store",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
