"""Rank a codebase snapshot against an issue and extract bounded code fragments."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from incident_diagnosis.analysis.scoring import KeywordRelevanceScorer
from incident_diagnosis.constants import DEFAULT_FALLBACK_MAX_LINES, DEFAULT_MAX_FRAGMENTS
from incident_diagnosis.domain.models import CodebaseProject, CodeFile, CodeFragment, IssueReport

logger = logging.getLogger(__name__)


class RelevanceScorer(Protocol):
    def score_fragment(self, fragment: CodeFragment, issue: IssueReport) -> float: ...

    def score_file(self, file: CodeFile, issue: IssueReport) -> float: ...


class ContextSelector:
    """Score files, derive function/class fragments, and keep the best ones.

    All sorts are stable, so equal scores keep file order and then
    function-before-class order within a file.
    """

    def __init__(
        self,
        scorer: RelevanceScorer | None = None,
        *,
        max_fragments: int = DEFAULT_MAX_FRAGMENTS,
        fallback_max_lines: int = DEFAULT_FALLBACK_MAX_LINES,
    ) -> None:
        if max_fragments < 0:
            raise ValueError("max_fragments must be >= 0")
        if fallback_max_lines <= 0:
            raise ValueError("fallback_max_lines must be > 0")
        self._scorer = scorer if scorer is not None else KeywordRelevanceScorer()
        self._max_fragments = max_fragments
        self._fallback_max_lines = fallback_max_lines

    @property
    def max_fragments(self) -> int:
        return self._max_fragments

    def rank_files(self, issue: IssueReport, project: CodebaseProject) -> list[tuple[CodeFile, float]]:
        """Files with a positive score, best first."""
        scored = [(item, self._scorer.score_file(item, issue)) for item in project.files]
        relevant = [pair for pair in scored if pair[1] > 0]
        relevant.sort(key=lambda pair: pair[1], reverse=True)
        return relevant

    def select_relevant_code(
        self,
        issue: IssueReport,
        project: CodebaseProject,
        *,
        max_fragments: int | None = None,
    ) -> list[CodeFragment]:
        limit = self._max_fragments if max_fragments is None else max_fragments
        if limit < 0:
            raise ValueError("max_fragments must be >= 0")

        ranked_files = self.rank_files(issue, project)
        seeded: list[CodeFragment] = []
        for code_file, file_score in ranked_files:
            seeded.extend(
                fragment.with_relevance(file_score) for fragment in self.extract_fragments(code_file)
            )

        rescored = [
            fragment.with_relevance(self._scorer.score_fragment(fragment, issue))
            for fragment in seeded
        ]
        rescored.sort(key=lambda fragment: fragment.relevance, reverse=True)
        selected = rescored[:limit]

        logger.debug(
            "selected %d of %d fragment(s) from %d relevant file(s)",
            len(selected),
            len(rescored),
            len(ranked_files),
        )
        return selected

    def extract_fragments(self, code_file: CodeFile) -> list[CodeFragment]:
        """One fragment per indexed function and class, else the leading lines."""

        lines = code_file.lines
        fragments = [
            _fragment_for_range(code_file, lines, item.start_line, item.end_line)
            for item in code_file.functions
        ]
        fragments.extend(
            _fragment_for_range(code_file, lines, item.start_line, item.end_line)
            for item in code_file.classes
        )
        if fragments:
            return fragments

        end_line = max(1, min(len(lines), self._fallback_max_lines))
        return [_fragment_for_range(code_file, lines, 1, end_line)]


def _fragment_for_range(
    code_file: CodeFile,
    lines: Sequence[str],
    start_line: int,
    end_line: int,
) -> CodeFragment:
    start = max(0, start_line - 1)
    end = min(len(lines), end_line)
    return CodeFragment(
        file=code_file.path,
        language=code_file.language,
        start_line=start_line,
        end_line=end_line,
        content="\n".join(lines[start:end]),
    )


__all__ = ["ContextSelector", "RelevanceScorer"]
