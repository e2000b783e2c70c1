"""Resolve the effective configuration from defaults, ``diagnosis.toml``, env and CLI.

Precedence, lowest first: built-in defaults, the TOML file, the selected
profile overlay, ``INCIDENT_DIAG_*`` environment variables, CLI overrides.
Environment variable names are derived from config paths, so
``analysis.token_budget`` is ``INCIDENT_DIAG_ANALYSIS_TOKEN_BUDGET`` and the
value is coerced to the type of the default it replaces.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final, NamedTuple

from incident_diagnosis.config.schema import (
    PATH_FIELDS,
    PROVIDER_NAMES,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE: Final[str] = "diagnosis.toml"
ENV_PREFIX: Final[str] = "INCIDENT_DIAG_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Config file unreadable, or an override could not be coerced."""


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if lowered in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError(raw)


class _Coercion(NamedTuple):
    parse: Callable[[str], object]
    expectation: str


# bool is checked before int because bool subclasses int.
_COERCIONS: Final[tuple[tuple[type, _Coercion], ...]] = (
    (bool, _Coercion(_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)")),
    (int, _Coercion(int, "an integer")),
    (float, _Coercion(float, "a number")),
    (str, _Coercion(str, "a string")),
)

# Keys that are optional in the defaults but still overridable from the environment.
_OPTIONAL_PROVIDER_KEYS: Final[tuple[tuple[str, type], ...]] = (
    ("base_url", str),
    ("temperature", float),
    ("max_output_tokens", int),
)


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    require_api_key: bool = False,
) -> dict[str, Any]:
    """Return the validated effective config.

    A missing file is an error only when ``config_path`` was given explicitly.
    ``cli_overrides`` accepts dotted keys (``"analysis.token_budget": 2000``) or
    nested mappings; the ``profile`` key selects a profile like the keyword does.
    """

    source = (
        Path.cwd() / DEFAULT_CONFIG_FILE if config_path is None else Path(config_path).expanduser()
    ).resolve()
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})

    selected = _select_profile(profile, overrides.pop("profile", None), env.get(PROFILE_ENV))
    effective = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    if selected is not None:
        effective = apply_profile_overlay(effective, selected)
    effective = merge_config(effective, _env_layer(effective, env))
    effective = merge_config(effective, _cli_layer(overrides))
    effective = assert_valid_config(normalize_paths(effective, base_dir=source.parent))

    if require_api_key:
        env_name = resolve_api_key_env(effective)
        if env_name is None:
            raise ConfigLoadError("default provider has no api_key_env configured")
        if not env.get(env_name, "").strip():
            raise ConfigLoadError(f"missing API key: environment variable {env_name} is not set")

    logger.debug(
        "configuration resolved",
        extra={"config_path": str(source), "profile": selected or "none"},
    )
    return effective


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields against the directory holding the config file."""

    normalized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        raw = _dig(normalized, field_path)
        if not isinstance(raw, str):
            continue
        candidate = Path(os.path.expandvars(raw)).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        _plant(normalized, field_path, Path(os.path.normpath(candidate)).as_posix())
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic, redacted JSON rendering for ``config`` CLI output and logs."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def resolve_api_key_env(config: Mapping[str, object], provider: str | None = None) -> str | None:
    """Name of the env var holding the API key for ``provider`` (default provider if omitted)."""

    name = provider or _dig(config, ("providers", "default"))
    if not isinstance(name, str):
        return None
    env_name = _dig(config, ("providers", name, "api_key_env"))
    return env_name if isinstance(env_name, str) else None


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(*candidates: object) -> str | None:
    """First non-``None`` of keyword, CLI ``profile`` key, and ``INCIDENT_DIAG_PROFILE``."""

    chosen = next((item for item in candidates if item is not None), None)
    if chosen is None:
        return None
    if not isinstance(chosen, str):
        raise ConfigLoadError("profile must be a string")
    return chosen.strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, value_type in sorted(_env_bindings(config).items()):
        env_name = _env_name(path)
        raw = env.get(env_name)
        if raw is None:
            continue
        coercion = _coercion_for(value_type)
        try:
            value = coercion.parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(
                f"{env_name} -> {'.'.join(path)} must be {coercion.expectation}"
            ) from exc
        _plant(layer, path, value)
    return layer


def _env_bindings(config: Mapping[str, object]) -> dict[ConfigPath, type]:
    bindings: dict[ConfigPath, type] = {}
    for path, value in _scalar_leaves(config):
        # Profiles are selected, not overridden; key env names are never read from env.
        if path[0] == "profiles" or path[-1] == "api_key_env":
            continue
        if isinstance(value, (bool, int, float, str)):
            bindings[path] = type(value)
    for provider in PROVIDER_NAMES:
        for key, value_type in _OPTIONAL_PROVIDER_KEYS:
            bindings.setdefault(("providers", provider, key), value_type)
    return bindings


def _coercion_for(value_type: type) -> _Coercion:
    return next(coercion for kind, coercion in _COERCIONS if issubclass(value_type, kind))


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = overrides[key]
        _plant(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


# ---------------------------------------------------------------------------
# Nested-path helpers
# ---------------------------------------------------------------------------


def _scalar_leaves(
    payload: Mapping[str, object], prefix: ConfigPath = ()
) -> Iterator[tuple[ConfigPath, object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _scalar_leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _dig(payload: Mapping[str, object], path: ConfigPath) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(part)
    return node


def _plant(payload: dict[str, Any], path: ConfigPath, value: object) -> None:
    *parents, leaf = path
    node = payload
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value


def _env_name(path: ConfigPath) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
    "resolve_api_key_env",
]
