"""Token-budget-fitted analysis request assembly.

The request is a fixed-structure narrative (issue details and project context)
followed by a ``## Relevant Code:`` section. Fragments are packed greedily in
rank order; the first one that does not fit is either truncated into the
remaining budget or dropped, and nothing after it is considered.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from incident_diagnosis.analysis.tokens import CharRatioTokenEstimator, TokenEstimator
from incident_diagnosis.constants import (
    DEFAULT_FORMATTING_RESERVE_TOKENS,
    DEFAULT_MIN_TRUNCATION_TOKENS,
    DEFAULT_RESPONSE_RESERVE_TOKENS,
)
from incident_diagnosis.domain.models import (
    AnalysisContext,
    CodeFragment,
    EmptyPayload,
    IssueReport,
    ProjectSummary,
)

logger = logging.getLogger(__name__)

CODE_SECTION_HEADER = "\n\n## Relevant Code:\n"


class PromptAssembler:
    """Builds :class:`AnalysisContext` objects whose request text fits a token budget."""

    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        *,
        response_reserve_tokens: int = DEFAULT_RESPONSE_RESERVE_TOKENS,
        min_truncation_tokens: int = DEFAULT_MIN_TRUNCATION_TOKENS,
        formatting_reserve_tokens: int = DEFAULT_FORMATTING_RESERVE_TOKENS,
    ) -> None:
        if response_reserve_tokens < 0:
            raise ValueError("response_reserve_tokens must be >= 0")
        if min_truncation_tokens < 0:
            raise ValueError("min_truncation_tokens must be >= 0")
        if formatting_reserve_tokens < 0:
            raise ValueError("formatting_reserve_tokens must be >= 0")
        self._estimator = estimator if estimator is not None else CharRatioTokenEstimator()
        self._response_reserve = response_reserve_tokens
        self._min_truncation = min_truncation_tokens
        self._formatting_reserve = formatting_reserve_tokens

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    def build_context(
        self,
        issue: IssueReport,
        fragments: Sequence[CodeFragment],
        summary: ProjectSummary,
        token_budget: int,
    ) -> AnalysisContext:
        if token_budget <= 0:
            raise ValueError("token_budget must be > 0")

        base = render_base_narrative(issue, summary)
        available = token_budget - self._estimator.estimate_tokens(base) - self._response_reserve
        if available <= 0:
            logger.warning(
                "base narrative exceeds token budget %d; omitting all code fragments",
                token_budget,
            )
            context = AnalysisContext(
                issue=issue,
                fragments=(),
                summary=summary,
                token_budget=token_budget,
                degraded=True,
            )
        else:
            packed = self._pack_fragments(fragments, available)
            context = AnalysisContext(
                issue=issue,
                fragments=tuple(packed),
                summary=summary,
                token_budget=token_budget,
            )

        request_text = self.build_request_text(context)
        return AnalysisContext(
            issue=context.issue,
            fragments=context.fragments,
            summary=context.summary,
            token_budget=context.token_budget,
            request_text=request_text,
            estimated_tokens=self._estimator.estimate_tokens(request_text),
            degraded=context.degraded,
        )

    def build_request_text(self, context: AnalysisContext) -> str:
        """Render the request text for an already-fitted context."""

        base = render_base_narrative(context.issue, context.summary)
        if context.degraded:
            return self._estimator.truncate(base, context.token_budget - self._response_reserve)
        if not context.fragments:
            return base

        parts = [base, CODE_SECTION_HEADER]
        parts.extend(
            render_fragment_block(index, fragment)
            for index, fragment in enumerate(context.fragments, start=1)
        )
        return "".join(parts)

    def _pack_fragments(
        self,
        fragments: Sequence[CodeFragment],
        available: int,
    ) -> list[CodeFragment]:
        if not fragments:
            return []

        remaining = available - self._estimator.estimate_tokens(CODE_SECTION_HEADER)
        packed: list[CodeFragment] = []
        for index, fragment in enumerate(fragments, start=1):
            cost = self._estimator.estimate_tokens(render_fragment_block(index, fragment))
            if cost <= remaining:
                packed.append(fragment)
                remaining -= cost
                continue

            if remaining > self._min_truncation:
                overhead = self._estimator.estimate_tokens(
                    render_fragment_block(index, fragment.with_content(""))
                )
                content_budget = remaining - max(self._formatting_reserve, overhead)
                truncated = self._estimator.truncate(fragment.content, content_budget)
                if truncated:
                    packed.append(fragment.with_content(truncated))
            break

        if len(packed) < len(fragments):
            logger.debug("packed %d of %d fragment(s) within budget", len(packed), len(fragments))
        return packed


def render_base_narrative(issue: IssueReport, summary: ProjectSummary) -> str:
    lines = [
        "You are an expert software engineer analyzing a production issue.",
        "",
        "## Issue Details:",
        f"- Title: {issue.title}",
        f"- Description: {issue.description}",
        f"- Severity: {issue.severity.value}",
        f"- Status: {issue.status.value}",
    ]
    if not isinstance(issue.input_data, EmptyPayload):
        lines.append(f"- Input Data: {issue.input_data.render()}")
    if not isinstance(issue.output_data, EmptyPayload):
        lines.append(f"- Output Data: {issue.output_data.render()}")
    if issue.error_logs:
        lines.append("- Error Logs:")
        lines.extend(issue.error_logs)
    lines.extend(
        [
            "",
            "## Project Context:",
            f"- Name: {summary.name}",
            f"- Languages: {', '.join(summary.languages)}",
            f"- Total Files: {summary.total_files}",
        ]
    )
    return "\n".join(lines)


def render_fragment_block(index: int, fragment: CodeFragment) -> str:
    return (
        f"\n### Code Snippet {index} ({fragment.file}, lines "
        f"{fragment.start_line}-{fragment.end_line}):\n"
        f"```{fragment.language}\n{fragment.content}\n```\n"
    )


__all__ = [
    "CODE_SECTION_HEADER",
    "PromptAssembler",
    "render_base_narrative",
    "render_fragment_block",
]
