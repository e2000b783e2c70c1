"""Keyword and identifier relevance scoring of code against an issue report.

Scores are unbounded, higher meaning more pertinent. Everything here is a pure
function of its inputs so ranking is reproducible across runs.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, fields
from functools import lru_cache
from typing import Final

from incident_diagnosis.domain.models import CodeFile, CodeFragment, IssueReport, Severity

STOP_WORDS: Final[frozenset[str]] = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had", "her",
        "was", "one", "our", "out", "day", "get", "has", "him", "his", "how", "its",
        "may", "new", "now", "old", "see", "two", "who", "boy", "did", "man", "men",
        "put", "say", "she", "too", "use",
    }
)  # fmt: skip
TECHNICAL_TERMS: Final[frozenset[str]] = frozenset(
    {
        "function", "method", "class", "variable", "api", "database", "query",
        "request", "response", "error", "exception",
    }
)  # fmt: skip
ERROR_KEYWORDS: Final[tuple[str, ...]] = ("error", "exception", "throw", "catch", "try")
CRITICAL_PATH_NAMES: Final[tuple[str, ...]] = ("main", "index", "app", "server", "api")
LANGUAGE_KEYWORDS: Final[frozenset[str]] = frozenset(
    {
        "if", "for", "while", "switch", "catch", "return", "function", "typeof",
        "else", "elif", "def", "class", "new", "await", "async", "with", "not",
        "and", "or", "in", "is", "import", "from", "export", "const", "let", "var",
        "public", "private", "protected", "static", "void", "super", "this", "self",
        "throw", "throws", "try", "except", "finally", "yield", "lambda", "print",
        "sizeof", "delete",
    }
)  # fmt: skip
MIN_TERM_LENGTH: Final[int] = 3
MIN_IDENTIFIER_LENGTH: Final[int] = 3

_WORD_RE: Final[re.Pattern[str]] = re.compile(r"\b\w{3,}\b")
_QUOTED_RE: Final[re.Pattern[str]] = re.compile(r'"([^"]+)"')
_CAMEL_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:[a-z][a-zA-Z0-9]*[A-Z]|[A-Z][a-z0-9]+[A-Z])[a-zA-Z0-9]*\b"
)
_IDENTIFIER_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"function\s+(\w+)"),
    re.compile(r"(\w+)\s*:\s*function"),
    re.compile(r"(\w+)\s*=\s*function"),
    re.compile(r"(\w+)\s*=\s*\("),
    re.compile(r"(\w+)\s*\("),
    re.compile(r"def\s+(\w+)"),
    re.compile(r"(?:public|private|protected)?\s*(?:static)?\s*\w+\s+(\w+)\s*\("),
)
_ELEVATED_SEVERITIES: Final[frozenset[Severity]] = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass(frozen=True, slots=True)
class ScoringWeights:
    """Empirical weights for relevance scoring, loaded from the ``[scoring]`` section."""

    technical_term_weight: float = 2.0
    long_term_weight: float = 1.5
    long_term_min_length: int = 9
    default_term_weight: float = 1.0
    error_keyword_bonus: float = 2.0
    identifier_match_bonus: float = 5.0
    path_term_weight: float = 3.0
    content_weight: float = 0.1
    critical_path_bonus: float = 2.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> ScoringWeights:
        known = {item.name for item in fields(cls)}
        unknown = sorted(key for key in data if key not in known)
        if unknown:
            raise ValueError(f"scoring: unexpected fields: {unknown}")
        return cls(**{key: value for key, value in data.items()})  # type: ignore[arg-type]

    def term_weight(self, term: str) -> float:
        if term.lower() in TECHNICAL_TERMS:
            return self.technical_term_weight
        if len(term) >= self.long_term_min_length:
            return self.long_term_weight
        return self.default_term_weight


def extract_search_terms(text: str) -> tuple[str, ...]:
    """Return deduplicated lowercase search terms in first-occurrence order.

    Terms are words of three or more characters, quoted substrings, and
    camelCase/PascalCase identifiers, minus a small stop-word set.
    """

    return _search_terms_cached(text)


@lru_cache(maxsize=256)
def _search_terms_cached(text: str) -> tuple[str, ...]:
    candidates: list[str] = []
    candidates.extend(match.group(0) for match in _WORD_RE.finditer(text))
    candidates.extend(match.group(1) for match in _QUOTED_RE.finditer(text))
    candidates.extend(match.group(0) for match in _CAMEL_RE.finditer(text))

    terms: dict[str, None] = {}
    for candidate in candidates:
        term = candidate.strip().lower()
        if len(term) < MIN_TERM_LENGTH or term in STOP_WORDS:
            continue
        terms.setdefault(term, None)
    return tuple(terms)


def extract_identifiers(content: str) -> tuple[str, ...]:
    """Candidate function/method names from language-agnostic call/definition patterns."""

    names: dict[str, None] = {}
    for pattern in _IDENTIFIER_PATTERNS:
        for match in pattern.finditer(content):
            name = match.group(1)
            if not name or len(name) < MIN_IDENTIFIER_LENGTH:
                continue
            if name.lower() in LANGUAGE_KEYWORDS:
                continue
            names.setdefault(name, None)
    return tuple(names)


def count_occurrences(term: str, text: str) -> int:
    """Non-overlapping occurrences of ``term`` in already-lowercased ``text``."""
    if not term:
        return 0
    return len(re.findall(re.escape(term.lower()), text))


class KeywordRelevanceScorer:
    """Weighted keyword/identifier scorer for fragments and whole files."""

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        self._weights = weights if weights is not None else ScoringWeights()

    @property
    def weights(self) -> ScoringWeights:
        return self._weights

    def score_fragment(self, fragment: CodeFragment, issue: IssueReport) -> float:
        return self.score_text(fragment.content, issue)

    def score_text(self, content: str, issue: IssueReport) -> float:
        weights = self._weights
        lowered = content.lower()
        issue_text = issue.search_text
        score = 0.0

        for term in extract_search_terms(issue_text):
            occurrences = count_occurrences(term, lowered)
            if occurrences:
                score += occurrences * weights.term_weight(term)

        if issue.has_error_logs:
            for keyword in ERROR_KEYWORDS:
                if keyword in lowered:
                    score += weights.error_keyword_bonus

        issue_lowered = issue_text.lower()
        for name in extract_identifiers(content):
            if name.lower() in issue_lowered:
                score += weights.identifier_match_bonus

        return score

    def score_file(self, file: CodeFile, issue: IssueReport) -> float:
        weights = self._weights
        path = file.path.lower()
        score = 0.0

        for term in extract_search_terms(issue.search_text):
            if term in path:
                score += weights.path_term_weight

        score += weights.content_weight * self.score_text(file.content, issue)

        if issue.severity in _ELEVATED_SEVERITIES:
            for name in CRITICAL_PATH_NAMES:
                if name in path:
                    score += weights.critical_path_bonus

        return score


__all__ = [
    "CRITICAL_PATH_NAMES",
    "ERROR_KEYWORDS",
    "KeywordRelevanceScorer",
    "LANGUAGE_KEYWORDS",
    "STOP_WORDS",
    "ScoringWeights",
    "TECHNICAL_TERMS",
    "count_occurrences",
    "extract_identifiers",
    "extract_search_terms",
]
