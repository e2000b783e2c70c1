"""Stable constants shared across the diagnosis pipeline."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Token budgeting.
DEFAULT_TOKEN_BUDGET: Final[int] = 3000
DEFAULT_RESPONSE_RESERVE_TOKENS: Final[int] = 500
DEFAULT_CHARS_PER_TOKEN: Final[int] = 4
DEFAULT_MIN_TRUNCATION_TOKENS: Final[int] = 100
DEFAULT_FORMATTING_RESERVE_TOKENS: Final[int] = 50
TRUNCATION_MARKER: Final[str] = "..."
WORD_BOUNDARY_RATIO: Final[float] = 0.8

# Context selection.
DEFAULT_MAX_FRAGMENTS: Final[int] = 10
DEFAULT_FALLBACK_MAX_LINES: Final[int] = 50

# Sessions.
DEFAULT_SESSION_RETENTION_SECONDS: Final[float] = 300.0
DEFAULT_COLLABORATOR_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_MAX_CONCURRENT_SESSIONS: Final[int] = 4
DEFAULT_MAX_CODE_EXPLANATIONS: Final[int] = 3
DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS: Final[float] = 60.0
DEFAULT_PROGRESS_DRAIN_SECONDS: Final[float] = 5.0

# Provider requests.
DEFAULT_MAX_OUTPUT_TOKENS: Final[int] = 4000

# Severity ordering used for deterministic comparisons.
SEVERITY_LEVELS: Final[tuple[str, ...]] = ("low", "medium", "high", "critical")
SEVERITY_RANK: Final[dict[str, int]] = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CHARS_PER_TOKEN",
    "DEFAULT_COLLABORATOR_TIMEOUT_SECONDS",
    "DEFAULT_FALLBACK_MAX_LINES",
    "DEFAULT_FORMATTING_RESERVE_TOKENS",
    "DEFAULT_MAX_CODE_EXPLANATIONS",
    "DEFAULT_MAX_CONCURRENT_SESSIONS",
    "DEFAULT_MAX_FRAGMENTS",
    "DEFAULT_MAX_OUTPUT_TOKENS",
    "DEFAULT_MIN_TRUNCATION_TOKENS",
    "DEFAULT_PROGRESS_DRAIN_SECONDS",
    "DEFAULT_RATE_LIMIT_RETRY_AFTER_SECONDS",
    "DEFAULT_RESPONSE_RESERVE_TOKENS",
    "DEFAULT_SESSION_RETENTION_SECONDS",
    "DEFAULT_TOKEN_BUDGET",
    "SEVERITY_LEVELS",
    "SEVERITY_RANK",
    "TRUNCATION_MARKER",
    "WORD_BOUNDARY_RATIO",
]
