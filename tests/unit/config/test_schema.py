"""
nucleus-orchestrator — unit tests for config schema

File: tests/unit/config/test_schema.py
Last updated: 2026-10-19

Purpose
- Validate default config shape, strict validation with dotted issue paths,
  secret detection and the settings objects built from config.
"""

from __future__ import annotations

import pytest

from nucleus_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ExecutorSettings,
    NucleusSettings,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)
from nucleus_orchestrator.constants import DEFAULT_KEEP_CHECKPOINTS, DEFAULT_MAX_QUERY_ROUNDS


def _issues_by_path(config: object) -> dict[str, str]:
    normalized, issues = validate_config(config)
    assert normalized is None
    return {issue.path: issue.message for issue in issues}


def test_defaults_are_valid_and_copied() -> None:
    first = default_config()
    first["nucleus"]["max_query_rounds"] = 99

    assert default_config()["nucleus"]["max_query_rounds"] == DEFAULT_MAX_QUERY_ROUNDS
    assert DEFAULT_CONFIG["nucleus"]["max_query_rounds"] == DEFAULT_MAX_QUERY_ROUNDS

    normalized, issues = validate_config(default_config())
    assert issues == ()
    assert normalized == default_config()


def test_merge_is_deep_and_does_not_mutate_inputs() -> None:
    base = default_config()
    merged = merge_config(base, {"nucleus": {"postcheck": True}, "llm": {"seed": 7}})

    assert merged["nucleus"]["postcheck"] is True
    assert merged["nucleus"]["max_query_rounds"] == DEFAULT_MAX_QUERY_ROUNDS
    assert merged["llm"] == {"provider": "unspecified", "model": "unspecified", "seed": 7}
    assert base["nucleus"]["postcheck"] is False


def test_issues_are_collected_with_dotted_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "nucleus": {"max_query_rounds": -1, "budget_threshold": 1.5, "preflight": "yes"},
            "executor": {"checkpoint_backend": "redis", "keep_last": 0},
            "observability": {"log_level": "TRACE"},
            "extras": {},
        },
    )

    issues = _issues_by_path(config)

    assert issues["nucleus.max_query_rounds"] == "must be >= 0"
    assert issues["nucleus.budget_threshold"] == "must be in (0, 1]"
    assert issues["nucleus.preflight"] == "expected boolean, got str"
    assert issues["executor.checkpoint_backend"].startswith("invalid value 'redis'")
    assert issues["executor.keep_last"] == "must be >= 1"
    assert "expected one of: DEBUG, ERROR, INFO, WARNING" in issues["observability.log_level"]
    assert issues["extras"] == "unknown field"


def test_missing_sections_and_fields_are_reported() -> None:
    config = default_config()
    del config["executor"]
    del config["nucleus"]["postcheck"]

    issues = _issues_by_path(config)

    assert issues["executor"] == "missing required section"
    assert issues["nucleus.postcheck"] == "missing required field"


def test_non_mapping_root_is_rejected() -> None:
    assert _issues_by_path(["not", "a", "mapping"]) == {"<root>": "expected object, got list"}


@pytest.mark.parametrize("key", ["api_key", "apiKey", "password", "llm_token", "client_secret"])
def test_embedded_secrets_are_forbidden(key: str) -> None:
    config = merge_config(default_config(), {"llm": {key: "sk-live"}})
    issues = _issues_by_path(config)
    assert issues[f"llm.{key}"].startswith("embedded secret values are forbidden")


def test_credential_indirection_keys_are_unknown_fields() -> None:
    issues = _issues_by_path(merge_config(default_config(), {"llm": {"api_key_env": "MY_LLM_KEY"}}))
    assert issues["llm.api_key_env"].startswith("embedded secret values are forbidden")


def test_unsupported_schema_version() -> None:
    issues = _issues_by_path(merge_config(default_config(), {"meta": {"schema_version": 2}}))
    assert issues["meta.schema_version"] == "schema version 2 is not supported (expected 1)"


def test_assert_valid_config_renders_every_issue() -> None:
    config = merge_config(default_config(), {"llm": {"model": ""}, "executor": {"checkpoint_interval": 0}})
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    message = str(excinfo.value)
    assert message.startswith("invalid config:\n")
    assert "- executor.checkpoint_interval: must be >= 1" in message
    assert "- llm.model: must not be empty" in message
    assert len(excinfo.value.issues) == 2


def test_redaction_masks_secret_looking_values_only() -> None:
    redacted = redact_config({"llm": {"model": "m", "api_key": "sk-live", "seed": 3}})
    assert redacted == {"llm": {"api_key": "***REDACTED***", "model": "m", "seed": 3}}


def test_nucleus_settings_from_config() -> None:
    config = merge_config(
        default_config(),
        {
            "nucleus": {"max_query_rounds": 5, "postcheck": True},
            "llm": {"provider": "openai", "model": "gpt", "temperature": 0.2},
        },
    )
    settings = NucleusSettings.from_config(config)

    assert settings.max_query_rounds == 5
    assert settings.postcheck is True
    assert settings.max_context_tokens is None
    assert settings.llm.provider == "openai"
    assert settings.llm.temperature == 0.2

    budgeted = NucleusSettings.from_config(merge_config(config, {"nucleus": {"max_context_tokens": 4000}}))
    assert budgeted.max_context_tokens == 4000


def test_executor_settings() -> None:
    assert ExecutorSettings.from_config(default_config()) == ExecutorSettings()
    assert ExecutorSettings().keep_last == DEFAULT_KEEP_CHECKPOINTS
    with pytest.raises(ValueError, match="checkpoint_interval"):
        ExecutorSettings(checkpoint_interval=0)
    with pytest.raises(ValueError, match="keep_last"):
        ExecutorSettings(keep_last=0)
