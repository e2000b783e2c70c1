"""
incident-diagnosis: unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict schema checks, profile overlays, merging, and redaction.

What this test file should cover
- Built-in defaults are valid and round-trip through validation unchanged.
- Unknown keys, embedded secrets, type and range errors with dotted paths.
- Schema version migration guidance.
- Profile overlay semantics and profile validation.
- Deterministic, redacted rendering.
"""

from __future__ import annotations

import pytest

from incident_diagnosis.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    looks_sensitive_key,
    merge_config,
    redact_config,
    validate_config,
)


def _issue_map(config: dict[str, object], **kwargs: object) -> dict[str, str]:
    result = validate_config(config, **kwargs)  # type: ignore[arg-type]
    assert result.config is None
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_defaults_are_valid_and_stable() -> None:
    assert assert_valid_config(default_config()) == default_config()
    assert set(BUILTIN_PROFILE_NAMES) <= set(default_config()["profiles"])


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["analysis"]["token_budget"] = 1

    assert default_config()["analysis"]["token_budget"] == 3000


def test_unknown_field_is_reported_with_path() -> None:
    config = default_config()
    config["analysis"]["bogus"] = 1

    issues = _issue_map(config)

    assert issues == {"analysis.bogus": "unknown field"}


def test_embedded_api_key_is_rejected() -> None:
    config = default_config()
    config["providers"]["anthropic"]["api_key"] = "sk-ant-not-a-real-key"

    issues = _issue_map(config)

    assert "embedded secret values are forbidden" in issues["providers.anthropic.api_key"]


def test_type_and_range_errors_are_collected() -> None:
    config = default_config()
    config["analysis"]["token_budget"] = "big"
    config["diagnosis"]["priority_threshold"] = 1.5
    config["diagnosis"]["include_solutions"] = "yes"
    config["providers"]["default"] = "azure"

    issues = _issue_map(config)

    assert issues["analysis.token_budget"] == "expected integer, got str"
    assert issues["diagnosis.priority_threshold"] == "must be <= 1"
    assert issues["diagnosis.include_solutions"] == "expected boolean, got str"
    assert issues["providers.default"].startswith("invalid value 'azure'")


def test_missing_required_field_is_reported() -> None:
    config = default_config()
    del config["analysis"]["token_budget"]

    assert _issue_map(config) == {"analysis.token_budget": "missing required field"}


def test_api_key_env_must_look_like_env_var() -> None:
    config = default_config()
    config["providers"]["openai"]["api_key_env"] = "sk-live-value"

    issues = _issue_map(config)

    assert "env var name" in issues["providers.openai.api_key_env"]


def test_newer_schema_version_gets_migration_guidance() -> None:
    config = default_config()
    config["meta"]["schema_version"] = 2

    issues = _issue_map(config)

    assert "newer than supported" in issues["meta.schema_version"]


def test_profile_overlay_merges_onto_base() -> None:
    fast = apply_profile_overlay(default_config(), "fast")
    thorough = apply_profile_overlay(default_config(), "thorough")

    assert fast["analysis"]["token_budget"] == 2000
    assert fast["analysis"]["max_fragments"] == 5
    assert fast["diagnosis"]["include_solutions"] is False
    assert fast["analysis"]["chars_per_token"] == 4
    assert thorough["analysis"]["token_budget"] == 6000
    assert thorough["diagnosis"]["max_code_explanations"] == 5


def test_blank_profile_is_a_no_op() -> None:
    assert apply_profile_overlay(default_config(), " ") == default_config()


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ConfigValidationError, match="profile 'turbo' is not defined"):
        apply_profile_overlay(default_config(), "turbo")


def test_active_profile_is_checked_by_validation() -> None:
    issues = _issue_map(default_config(), active_profile="turbo")

    assert issues == {"profiles": "profile 'turbo' is not defined"}


def test_profiles_cannot_nest_or_use_bad_names() -> None:
    config = default_config()
    config["profiles"]["fast"]["profiles"] = {}
    config["profiles"]["Loud"] = {}

    issues = _issue_map(config)

    assert issues["profiles.fast.profiles"] == "profiles cannot be nested inside a profile"
    assert "profile name must match" in issues["profiles.Loud"]


def test_profile_values_are_validated() -> None:
    config = default_config()
    config["profiles"]["fast"]["analysis"]["token_budget"] = 0

    issues = _issue_map(config)

    assert issues == {"profiles.fast.analysis.token_budget": "must be >= 1"}


def test_validation_error_lists_every_issue() -> None:
    config = default_config()
    config["analysis"]["token_budget"] = -1
    config["scoring"]["content_weight"] = "x"

    with pytest.raises(ConfigValidationError) as exc_info:
        assert_valid_config(config)

    paths = [issue.path for issue in exc_info.value.issues]
    assert paths == ["analysis.token_budget", "scoring.content_weight"]
    assert str(exc_info.value).startswith("invalid config:\n- analysis.token_budget")


def test_merge_config_is_deep_and_non_mutating() -> None:
    base = {"a": {"b": 1, "c": 2}, "d": [1]}

    merged = merge_config(base, {"a": {"c": 3}, "e": True})

    assert merged == {"a": {"b": 1, "c": 3}, "d": [1], "e": True}
    assert base == {"a": {"b": 1, "c": 2}, "d": [1]}


@pytest.mark.parametrize(
    ("key", "expected"),
    [
        ("api_key", True),
        ("apiKey", True),
        ("client_secret", True),
        ("password", True),
        ("api_key_env", False),
        ("max_output_tokens", False),
        ("token_budget", False),
        ("model", False),
    ],
)
def test_sensitive_key_detection(key: str, expected: bool) -> None:
    assert looks_sensitive_key(key) is expected


def test_redaction_masks_env_names_and_secrets_only() -> None:
    config = default_config()
    config["extra"] = {"password": "hunter2", "items": [{"apiKey": "x"}]}

    redacted = redact_config(config)

    assert redacted["providers"]["anthropic"]["api_key_env"] == "<redacted>"
    assert redacted["extra"]["password"] == "<redacted>"
    assert redacted["extra"]["items"] == [{"apiKey": "<redacted>"}]
    assert redacted["analysis"]["token_budget"] == 3000
    assert redact_config("not a mapping") == {}
