"""Strict schema, defaults, profile overlays and redaction for ``diagnosis.toml``.

Validation never stops at the first problem: every issue is collected with a
dotted path (``analysis.token_budget``) so a caller can show them all at once.
Scalar sections are described by a rule table; providers and profiles need
nested handling and have their own validators.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict, cast

from incident_diagnosis.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CHARS_PER_TOKEN,
    DEFAULT_COLLABORATOR_TIMEOUT_SECONDS,
    DEFAULT_FALLBACK_MAX_LINES,
    DEFAULT_FORMATTING_RESERVE_TOKENS,
    DEFAULT_MAX_CODE_EXPLANATIONS,
    DEFAULT_MAX_CONCURRENT_SESSIONS,
    DEFAULT_MAX_FRAGMENTS,
    DEFAULT_MIN_TRUNCATION_TOKENS,
    DEFAULT_RESPONSE_RESERVE_TOKENS,
    DEFAULT_SESSION_RETENTION_SECONDS,
    DEFAULT_TOKEN_BUDGET,
)

PROVIDER_NAMES: Final[tuple[str, ...]] = ("anthropic", "openai")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("fast", "thorough")

_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# "token" is not listed: token counts are ordinary settings.
_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "password", "passwd", "apikey", "credential", "credentials", "private", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "refresh_token",
    "bearer_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

_REDACTED: Final[str] = "<redacted>"


class MetaConfig(TypedDict):
    schema_version: int


class AnalysisConfig(TypedDict):
    token_budget: int
    response_reserve_tokens: int
    chars_per_token: int
    min_truncation_tokens: int
    formatting_reserve_tokens: int
    max_fragments: int
    fallback_max_lines: int


class ScoringConfig(TypedDict):
    technical_term_weight: float
    long_term_weight: float
    long_term_min_length: int
    default_term_weight: float
    error_keyword_bonus: float
    identifier_match_bonus: float
    path_term_weight: float
    content_weight: float
    critical_path_bonus: float


class DiagnosisSettingsConfig(TypedDict):
    include_solutions: bool
    include_code_explanation: bool
    max_code_explanations: int
    priority_threshold: float
    collaborator_timeout_seconds: float
    session_retention_seconds: float
    max_concurrent_sessions: int


class ProviderSettings(TypedDict, total=False):
    api_key_env: str
    model: str
    max_output_tokens: int
    temperature: float
    base_url: str


class ProvidersConfig(TypedDict):
    default: str
    anthropic: ProviderSettings
    openai: ProviderSettings


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class DiagnosisConfig(TypedDict):
    meta: MetaConfig
    analysis: AnalysisConfig
    scoring: ScoringConfig
    diagnosis: DiagnosisSettingsConfig
    providers: ProvidersConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, Any]]


DEFAULT_CONFIG: Final[DiagnosisConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "analysis": {
        "token_budget": DEFAULT_TOKEN_BUDGET,
        "response_reserve_tokens": DEFAULT_RESPONSE_RESERVE_TOKENS,
        "chars_per_token": DEFAULT_CHARS_PER_TOKEN,
        "min_truncation_tokens": DEFAULT_MIN_TRUNCATION_TOKENS,
        "formatting_reserve_tokens": DEFAULT_FORMATTING_RESERVE_TOKENS,
        "max_fragments": DEFAULT_MAX_FRAGMENTS,
        "fallback_max_lines": DEFAULT_FALLBACK_MAX_LINES,
    },
    "scoring": {
        "technical_term_weight": 2.0,
        "long_term_weight": 1.5,
        "long_term_min_length": 9,
        "default_term_weight": 1.0,
        "error_keyword_bonus": 2.0,
        "identifier_match_bonus": 5.0,
        "path_term_weight": 3.0,
        "content_weight": 0.1,
        "critical_path_bonus": 2.0,
    },
    "diagnosis": {
        "include_solutions": True,
        "include_code_explanation": True,
        "max_code_explanations": DEFAULT_MAX_CODE_EXPLANATIONS,
        "priority_threshold": 0.0,
        "collaborator_timeout_seconds": DEFAULT_COLLABORATOR_TIMEOUT_SECONDS,
        "session_retention_seconds": DEFAULT_SESSION_RETENTION_SECONDS,
        "max_concurrent_sessions": DEFAULT_MAX_CONCURRENT_SESSIONS,
    },
    "providers": {
        "default": "anthropic",
        "anthropic": {
            "api_key_env": "ANTHROPIC_API_KEY",
            "model": "claude-3-5-sonnet-latest",
            "max_output_tokens": 4000,
            "temperature": 0.1,
        },
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "model": "gpt-4o",
            "max_output_tokens": 4000,
            "temperature": 0.1,
        },
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "fast": {
            "analysis": {"token_budget": 2000, "max_fragments": 5},
            "diagnosis": {"include_solutions": False, "include_code_explanation": False},
        },
        "thorough": {
            "analysis": {"token_budget": 6000, "max_fragments": 15},
            "diagnosis": {"max_code_explanations": 5},
        },
    },
}


RuleKind = Literal["int", "float", "bool", "str", "env", "path", "enum"]


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: RuleKind
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    required: bool = True


_SCALAR_SECTIONS: Final[dict[str, dict[str, _Rule]]] = {
    "analysis": {
        "token_budget": _Rule("int", minimum=1),
        "response_reserve_tokens": _Rule("int", minimum=0),
        "chars_per_token": _Rule("int", minimum=1),
        "min_truncation_tokens": _Rule("int", minimum=0),
        "formatting_reserve_tokens": _Rule("int", minimum=0),
        "max_fragments": _Rule("int", minimum=0),
        "fallback_max_lines": _Rule("int", minimum=1),
    },
    "scoring": {
        "technical_term_weight": _Rule("float", minimum=0.0),
        "long_term_weight": _Rule("float", minimum=0.0),
        "long_term_min_length": _Rule("int", minimum=1),
        "default_term_weight": _Rule("float", minimum=0.0),
        "error_keyword_bonus": _Rule("float", minimum=0.0),
        "identifier_match_bonus": _Rule("float", minimum=0.0),
        "path_term_weight": _Rule("float", minimum=0.0),
        "content_weight": _Rule("float", minimum=0.0),
        "critical_path_bonus": _Rule("float", minimum=0.0),
    },
    "diagnosis": {
        "include_solutions": _Rule("bool"),
        "include_code_explanation": _Rule("bool"),
        "max_code_explanations": _Rule("int", minimum=0),
        "priority_threshold": _Rule("float", minimum=0.0, maximum=1.0),
        "collaborator_timeout_seconds": _Rule("float", minimum=0.001),
        "session_retention_seconds": _Rule("float", minimum=0.0),
        "max_concurrent_sessions": _Rule("int", minimum=1),
    },
    "observability": {
        "log_level": _Rule("enum", choices=LOG_LEVELS),
        "log_dir": _Rule("path"),
        "log_to_stdout": _Rule("bool"),
        "redact_secrets": _Rule("bool"),
    },
}

_PROVIDER_RULES: Final[dict[str, _Rule]] = {
    "api_key_env": _Rule("env"),
    "model": _Rule("str"),
    "max_output_tokens": _Rule("int", minimum=1, required=False),
    "temperature": _Rule("float", minimum=0.0, maximum=2.0, required=False),
    "base_url": _Rule("str", required=False),
}

_ROOT_KEYS: Final[frozenset[str]] = frozenset(
    {"meta", "analysis", "scoring", "diagnosis", "providers", "observability", "profiles"}
)
_REQUIRED_ROOT_KEYS: Final[frozenset[str]] = _ROOT_KEYS - {"profiles"}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Carries every collected issue; ``str()`` lists them one per line."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


def default_config() -> dict[str, Any]:
    """Deep copy of the built-in defaults."""
    return copy.deepcopy(dict(DEFAULT_CONFIG))


def migration_guidance(found_version: int) -> str:
    current = CONFIG_SCHEMA_VERSION
    if found_version == current:
        return "schema version is current"
    if found_version < current:
        direction, remedy = "older", "upgrade diagnosis.toml to the current schema"
    else:
        direction, remedy = "newer", "upgrade incident-diagnosis"
    return f"schema version {found_version} is {direction} than supported {current}; {remedy}"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested mappings merge, scalars replace."""

    merged = _copy_tree(base)
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge a named profile onto ``config`` and validate the result.

    A blank or ``None`` profile returns an unvalidated copy.
    """

    base = _copy_tree(config)
    name = profile.strip() if isinstance(profile, str) else ""
    if not name:
        return base

    profiles = base.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(base, overlay))


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate a full config, collecting every issue with its dotted path.

    With ``active_profile`` the profile must exist and the merged result must
    validate too.
    """

    validator = _Validator()
    root = validator.mapping(config, "<root>")
    if root is None:
        return validator.result(None)

    normalized = validator.root(root)
    name = active_profile.strip() if isinstance(active_profile, str) else ""
    if name:
        profiles = normalized.get("profiles", {})
        if name in profiles:
            validator.root(merge_config(normalized, profiles[name]))
        else:
            validator.report("profiles", f"profile {name!r} is not defined")
    return validator.result(normalized)


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with secret-looking keys and env var names masked."""

    if not isinstance(config, Mapping):
        return {}
    return cast("dict[str, Any]", _redact(config))


def looks_sensitive_key(key: str) -> bool:
    """``api_key``, ``apiKey``, ``client_secret``... but never an ``*_env`` name."""

    normalized = _snake_key(key)
    if normalized.endswith("_env"):
        return False
    words = {word for word in normalized.split("_") if word}
    return bool(words & _SENSITIVE_KEY_TOKENS) or any(
        phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES
    )


class _Validator:
    """Walks a raw config tree and records every problem under its dotted path."""

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def report(self, path: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(path=path, message=message))

    def result(self, normalized: dict[str, Any] | None) -> ConfigValidationResult:
        issues = tuple(self.issues)
        return ConfigValidationResult(config=None if issues else normalized, issues=issues)

    # -- structure -----------------------------------------------------------

    def root(
        self, payload: Mapping[str, object], path: str = "", *, partial: bool = False
    ) -> dict[str, Any]:
        """Full config when ``partial`` is false; a profile overlay otherwise."""

        required = () if partial else _REQUIRED_ROOT_KEYS
        self.check_keys(payload, path, allowed=_ROOT_KEYS, required=required)
        out: dict[str, Any] = {}

        if "meta" in payload:
            meta = self.meta(payload["meta"], _join(path, "meta"), partial=partial)
            self._keep(out, "meta", meta)
        for name, rules in _SCALAR_SECTIONS.items():
            if name in payload:
                section = self.section(payload[name], rules, _join(path, name), partial=partial)
                self._keep(out, name, section)
        if "providers" in payload:
            providers_path = _join(path, "providers")
            providers = self.providers(payload["providers"], providers_path, partial=partial)
            self._keep(out, "providers", providers)
        if "profiles" in payload:
            profiles_path = _join(path, "profiles")
            if partial:
                self.report(profiles_path, "profiles cannot be nested inside a profile")
            else:
                self._keep(out, "profiles", self.profiles(payload["profiles"], profiles_path))
        return out

    def meta(self, raw: object, path: str, *, partial: bool) -> dict[str, Any] | None:
        payload = self.mapping(raw, path)
        if payload is None:
            return None
        required = () if partial else {"schema_version"}
        self.check_keys(payload, path, allowed={"schema_version"}, required=required)
        if "schema_version" not in payload:
            return {}
        version_path = _join(path, "schema_version")
        version = self.scalar(payload["schema_version"], _Rule("int", minimum=1), version_path)
        if version is None:
            return {}
        if version != CONFIG_SCHEMA_VERSION:
            self.report(version_path, migration_guidance(cast("int", version)))
        return {"schema_version": version}

    def section(
        self, raw: object, rules: Mapping[str, _Rule], path: str, *, partial: bool
    ) -> dict[str, Any] | None:
        payload = self.mapping(raw, path)
        if payload is None:
            return None
        required = () if partial else {key for key, rule in rules.items() if rule.required}
        self.check_keys(payload, path, allowed=rules.keys(), required=required)
        out: dict[str, Any] = {}
        for key in sorted(payload.keys() & rules.keys()):
            self._keep(out, key, self.scalar(payload[key], rules[key], _join(path, key)))
        return out

    def providers(self, raw: object, path: str, *, partial: bool) -> dict[str, Any] | None:
        payload = self.mapping(raw, path)
        if payload is None:
            return None
        required = () if partial else {"default"}
        self.check_keys(payload, path, allowed={"default", *PROVIDER_NAMES}, required=required)
        out: dict[str, Any] = {}
        default_path = _join(path, "default")
        if "default" in payload:
            rule = _Rule("enum", choices=PROVIDER_NAMES)
            self._keep(out, "default", self.scalar(payload["default"], rule, default_path))
        for name in PROVIDER_NAMES:
            if name in payload:
                section_path = _join(path, name)
                section = self.section(
                    payload[name], _PROVIDER_RULES, section_path, partial=partial
                )
                self._keep(out, name, section)

        chosen = out.get("default")
        if not partial and isinstance(chosen, str) and chosen not in out:
            self.report(default_path, f"default provider {chosen!r} has no config section")
        return out

    def profiles(self, raw: object, path: str) -> dict[str, Any] | None:
        payload = self.mapping(raw, path)
        if payload is None:
            return None
        out: dict[str, Any] = {}
        for name in sorted(payload):
            profile_path = _join(path, name)
            if not _PROFILE_NAME.fullmatch(name):
                self.report(profile_path, f"profile name must match {_PROFILE_NAME.pattern}")
                continue
            overlay = self.mapping(payload[name], profile_path)
            if overlay is not None:
                out[name] = self.root(overlay, profile_path, partial=True)
        return out

    def check_keys(
        self,
        payload: Mapping[str, object],
        path: str,
        *,
        allowed: Collection[str],
        required: Collection[str],
    ) -> None:
        for key in sorted(set(payload) - set(allowed)):
            if looks_sensitive_key(key):
                self.report(
                    _join(path, key),
                    "embedded secret values are forbidden; use api_key_env with an env var name",
                )
            else:
                self.report(_join(path, key), "unknown field")
        for key in sorted(set(required) - set(payload)):
            self.report(_join(path, key), "missing required field")

    # -- values --------------------------------------------------------------

    def mapping(self, value: object, path: str) -> dict[str, object] | None:
        if not isinstance(value, Mapping):
            self.report(path, f"expected object, got {type(value).__name__}")
            return None
        out: dict[str, object] = {}
        for key, item in value.items():
            if isinstance(key, str):
                out[key] = item
            else:
                self.report(path, f"object key must be string, got {type(key).__name__}")
        return out

    def scalar(self, value: object, rule: _Rule, path: str) -> object | None:
        if rule.kind == "bool":
            if isinstance(value, bool):
                return value
            return self._reject(path, "expected boolean", value)
        if rule.kind in ("int", "float"):
            return self._number(value, rule, path)

        if not isinstance(value, str):
            return self._reject(path, "expected string", value)
        text = value.strip()
        if not text:
            self.report(path, "must not be empty")
            return None
        if rule.kind == "path" and "\x00" in text:
            self.report(path, "must not contain NUL bytes")
            return None
        if rule.kind == "env" and not _ENV_NAME.fullmatch(text):
            self.report(path, "must be an env var name (example: ANTHROPIC_API_KEY)")
            return None
        if rule.kind == "enum" and text not in rule.choices:
            expected = ", ".join(sorted(rule.choices))
            self.report(path, f"invalid value {text!r}; expected one of: {expected}")
            return None
        return text

    def _number(self, value: object, rule: _Rule, path: str) -> int | float | None:
        if isinstance(value, bool):
            return self._reject(path, _NUMBER_EXPECTATION[rule.kind], value)
        if rule.kind == "int" and not isinstance(value, int):
            return self._reject(path, "expected integer", value)
        if not isinstance(value, (int, float)):
            return self._reject(path, "expected number", value)

        number: int | float = value if rule.kind == "int" else float(value)
        if not math.isfinite(number):
            self.report(path, "must be finite")
        elif rule.minimum is not None and number < rule.minimum:
            self.report(path, f"must be >= {rule.minimum:g}")
        elif rule.maximum is not None and number > rule.maximum:
            self.report(path, f"must be <= {rule.maximum:g}")
        else:
            return number
        return None

    def _reject(self, path: str, expectation: str, value: object) -> None:
        self.report(path, f"{expectation}, got {type(value).__name__}")

    @staticmethod
    def _keep(out: dict[str, Any], key: str, value: object | None) -> None:
        if value is not None:
            out[key] = value


_NUMBER_EXPECTATION: Final[dict[str, str]] = {"int": "expected integer", "float": "expected number"}


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _snake_key(key: str) -> str:
    spaced = _CAMEL_BOUNDARY.sub("_", key.strip()).lower()
    return _NON_ALNUM.sub("_", spaced).strip("_")


def _copy_tree(value: Mapping[str, object]) -> dict[str, Any]:
    return {
        key: _copy_tree(item) if isinstance(item, Mapping) else copy.deepcopy(item)
        for key, item in sorted(value.items())
        if isinstance(key, str)
    }


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        masked: dict[str, object] = {}
        for key in sorted(value):
            hidden = isinstance(key, str) and (
                _snake_key(key).endswith("_env") or looks_sensitive_key(key)
            )
            masked[key] = _REDACTED if hidden else _redact(value[key])
        return masked
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DiagnosisConfig",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "PROVIDER_NAMES",
    "ProviderSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "looks_sensitive_key",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
