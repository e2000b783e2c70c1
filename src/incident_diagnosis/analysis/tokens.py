"""Character-ratio token estimation and budget truncation."""

from __future__ import annotations

import math
from typing import Final, Protocol, runtime_checkable

from incident_diagnosis.constants import (
    DEFAULT_CHARS_PER_TOKEN,
    TRUNCATION_MARKER,
    WORD_BOUNDARY_RATIO,
)


@runtime_checkable
class TokenEstimator(Protocol):
    """Approximates model-token cost of text and trims text to a token ceiling."""

    def estimate_tokens(self, text: str) -> int: ...

    def truncate(self, text: str, max_tokens: int) -> str: ...


class CharRatioTokenEstimator:
    """Fixed characters-per-token heuristic.

    ``truncate`` never returns more than ``max_tokens * chars_per_token``
    characters (marker included) and is idempotent: a truncated result already
    fits, so truncating it again returns it unchanged.
    """

    def __init__(
        self,
        *,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        marker: str = TRUNCATION_MARKER,
        word_boundary_ratio: float = WORD_BOUNDARY_RATIO,
    ) -> None:
        if isinstance(chars_per_token, bool) or not isinstance(chars_per_token, int):
            raise TypeError("chars_per_token must be an integer")
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        if not 0.0 <= word_boundary_ratio <= 1.0:
            raise ValueError("word_boundary_ratio must be within [0, 1]")
        self._chars_per_token = chars_per_token
        self._marker = marker
        self._word_boundary_ratio = word_boundary_ratio

    @property
    def chars_per_token(self) -> int:
        return self._chars_per_token

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)

    def max_chars(self, max_tokens: int) -> int:
        return max(max_tokens, 0) * self._chars_per_token

    def truncate(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        limit = self.max_chars(max_tokens)
        if len(text) <= limit:
            return text

        cut = limit - len(self._marker)
        if cut <= 0:
            return text[:limit]

        head = text[:cut]
        last_space = head.rfind(" ")
        if last_space > cut * self._word_boundary_ratio:
            head = head[:last_space]
        return head + self._marker


DEFAULT_ESTIMATOR: Final[CharRatioTokenEstimator] = CharRatioTokenEstimator()


def estimate_tokens(text: str) -> int:
    """Estimate tokens with the default four-characters-per-token ratio."""
    return DEFAULT_ESTIMATOR.estimate_tokens(text)


def truncate(text: str, max_tokens: int) -> str:
    """Truncate with the default estimator; see :meth:`CharRatioTokenEstimator.truncate`."""
    return DEFAULT_ESTIMATOR.truncate(text, max_tokens)


__all__ = [
    "CharRatioTokenEstimator",
    "DEFAULT_ESTIMATOR",
    "TokenEstimator",
    "estimate_tokens",
    "truncate",
]
