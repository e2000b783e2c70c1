"""Model-backed analysis collaborator built on a :class:`CompletionProvider`.

The collaborator owns the prompt wording sent to the model and the parsing of
its free-text replies. Replies that do not contain usable JSON degrade to
low-confidence results instead of failing the session.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Mapping, Sequence
from typing import Final

from incident_diagnosis.domain.models import (
    Action,
    AnalysisContext,
    Cause,
    CodeLocation,
    DiagnosisResult,
    Priority,
    Solution,
)
from incident_diagnosis.providers.base import (
    AnalysisReport,
    CompletionProvider,
    CompletionRequest,
    ProviderError,
)

logger = logging.getLogger(__name__)

CONNECTION_TEST_PROMPT: Final[str] = 'Test connection. Please respond with "OK".'
FALLBACK_CONFIDENCE: Final[float] = 0.3
DEFAULT_PROBABILITY: Final[float] = 0.5
DEFAULT_CONFIDENCE: Final[float] = 0.5
NO_EXPLANATION: Final[str] = "No explanation generated"

_JSON_OBJECT_RE: Final[re.Pattern[str]] = re.compile(r"\{[\s\S]*\}")
_JSON_ARRAY_RE: Final[re.Pattern[str]] = re.compile(r"\[[\s\S]*\]")
_PRIORITY_VALUES: Final[frozenset[str]] = frozenset(item.value for item in Priority)

ANALYSIS_INSTRUCTIONS: Final[str] = """

Please provide your analysis in the following JSON format:
{
  "possibleCauses": [
    {
      "description": "Detailed description of the cause",
      "probability": 0.8
    }
  ],
  "confidence": 0.85,
  "reasoning": "Your detailed reasoning for the diagnosis",
  "suggestedActions": [
    {
      "description": "Action to take",
      "priority": "high",
      "type": "code_fix"
    }
  ]
}"""


class ModelAnalysisCollaborator:
    """Analysis collaborator that prompts a generative model through a provider adapter."""

    def __init__(
        self,
        provider: CompletionProvider,
        *,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        self._provider = provider
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature

    @property
    def provider(self) -> CompletionProvider:
        return self._provider

    async def test_connection(self) -> bool:
        try:
            completion = await self._provider.send(
                CompletionRequest(prompt=CONNECTION_TEST_PROMPT, max_output_tokens=16)
            )
        except ProviderError as exc:
            logger.warning("connection test failed: %s", exc)
            return False
        return bool(completion.text.strip())

    async def analyze(self, context: AnalysisContext) -> AnalysisReport:
        completion = await self._provider.send(self._request(build_analysis_prompt(context)))
        result = parse_analysis_response(completion.text)
        return AnalysisReport(
            result=result,
            model=completion.model,
            tokens_used=completion.usage.total_tokens,
        )

    async def suggest_solutions(self, result: DiagnosisResult) -> list[Solution]:
        completion = await self._provider.send(self._request(build_solution_prompt(result)))
        return parse_solution_response(completion.text)

    async def explain_code(self, code: str, language: str) -> str:
        completion = await self._provider.send(
            self._request(build_code_explanation_prompt(code, language))
        )
        return completion.text.strip() or NO_EXPLANATION

    def _request(self, prompt: str) -> CompletionRequest:
        return CompletionRequest(
            prompt=prompt,
            max_output_tokens=self._max_output_tokens,
            temperature=self._temperature,
        )


def build_analysis_prompt(context: AnalysisContext) -> str:
    return context.request_text + ANALYSIS_INSTRUCTIONS


def build_solution_prompt(result: DiagnosisResult) -> str:
    causes = "\n".join(
        f"- {cause.description} ({round(cause.probability * 100)}% probability)"
        for cause in result.possible_causes
    )
    actions = "\n".join(
        f"- {action.description} ({action.priority.value} priority)"
        for action in result.suggested_actions
    )
    return f"""Based on the following diagnosis, please provide detailed solutions:

## Diagnosis:
- Confidence: {result.confidence}
- Reasoning: {result.reasoning}

## Possible Causes:
{causes}

## Current Suggested Actions:
{actions}

Please provide detailed solutions in the following JSON format:
[
  {{
    "title": "Solution title",
    "description": "Detailed description",
    "steps": ["Step 1", "Step 2", "Step 3"],
    "priority": "high",
    "estimatedTime": "30 minutes"
  }}
]"""


def build_code_explanation_prompt(code: str, language: str) -> str:
    return f"""Please explain the following {language} code in detail, including its purpose, functionality, and any potential issues:

```{language}
{code}
```

Provide a clear, technical explanation that would help a developer understand this code."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def fallback_result(raw_text: str) -> DiagnosisResult:
    """Low-confidence result used when a reply cannot be parsed."""

    return DiagnosisResult(
        possible_causes=(
            Cause(
                title="Analysis Parsing Error",
                description="Analysis could not be parsed properly",
                probability=DEFAULT_PROBABILITY,
                category="general",
            ),
        ),
        confidence=FALLBACK_CONFIDENCE,
        reasoning=raw_text.strip() or "No analysis available",
        suggested_actions=(manual_investigation_action(),),
    )


def manual_investigation_action() -> Action:
    return Action(
        title="Manual Investigation",
        description="Review the raw analysis and investigate manually",
        priority=Priority.MEDIUM,
        category="investigation",
    )


def parse_analysis_response(text: str) -> DiagnosisResult:
    match = _JSON_OBJECT_RE.search(text)
    if match is None:
        logger.warning("analysis reply contained no JSON object; using fallback result")
        return fallback_result(text)
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("analysis reply JSON was malformed: %s", exc.msg)
        return fallback_result(text)
    if not isinstance(parsed, Mapping):
        return fallback_result(text)

    causes = tuple(
        cause for cause in (_parse_cause(item) for item in _as_list(parsed.get("possibleCauses"))) if cause
    )
    if not causes:
        logger.warning("analysis reply listed no usable causes; using fallback result")
        return fallback_result(text)

    actions = tuple(
        action
        for action in (_parse_action(item) for item in _as_list(parsed.get("suggestedActions")))
        if action
    )
    if not actions:
        actions = (manual_investigation_action(),)

    reasoning = parsed.get("reasoning")
    return DiagnosisResult(
        possible_causes=causes,
        confidence=_probability(parsed.get("confidence"), DEFAULT_CONFIDENCE),
        reasoning=reasoning if isinstance(reasoning, str) and reasoning.strip() else text,
        suggested_actions=actions,
    )


def parse_solution_response(text: str) -> list[Solution]:
    if not text.strip():
        return []
    match = _JSON_ARRAY_RE.search(text)
    if match is None:
        return [
            Solution(
                title="General Solution",
                description=text.strip(),
                steps=("Review the provided guidance",),
                priority=Priority.MEDIUM,
            )
        ]
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("solution reply JSON was malformed: %s", exc.msg)
        return [_manual_solution(text)]

    items = parsed if isinstance(parsed, list) else [parsed]
    solutions = [solution for solution in (_parse_solution(item) for item in items) if solution]
    if not solutions:
        return [_manual_solution(text)]
    return solutions


def _manual_solution(text: str) -> Solution:
    return Solution(
        title="Manual Investigation Required",
        description=text.strip() or "No solutions available",
        steps=(
            "Review the analysis manually",
            "Investigate based on the provided information",
        ),
        priority=Priority.MEDIUM,
    )


def _parse_cause(item: object) -> Cause | None:
    if not isinstance(item, Mapping):
        return None
    description = _text(item.get("description")) or _text(item.get("title"))
    if description is None:
        return None
    probability = item.get("probability", item.get("likelihood"))
    try:
        return Cause(
            description=description,
            probability=_probability(probability, DEFAULT_PROBABILITY),
            category=_text(item.get("category")) or "general",
            evidence=_str_items(item.get("evidence")),
            location=_parse_location(item.get("location") or item.get("codeLocation")),
            title=_text(item.get("title")),
        )
    except ValueError as exc:
        logger.debug("skipping malformed cause: %s", exc)
        return None


def _parse_location(value: object) -> CodeLocation | None:
    if not isinstance(value, Mapping):
        return None
    file_name = _text(value.get("file")) or _text(value.get("fileName"))
    if file_name is None:
        return None
    line = value.get("line", value.get("lineNumber"))
    return CodeLocation(
        file=file_name,
        line=line if isinstance(line, int) and not isinstance(line, bool) and line >= 1 else None,
        function=_text(value.get("function")) or _text(value.get("functionName")),
    )


def _parse_action(item: object) -> Action | None:
    if not isinstance(item, Mapping):
        return None
    description = _text(item.get("description")) or _text(item.get("title"))
    if description is None:
        return None
    try:
        return Action(
            description=description,
            priority=_priority(item.get("priority")),
            category=_text(item.get("type")) or _text(item.get("category")) or "investigation",
            steps=_str_items(item.get("steps")),
            title=_text(item.get("title")),
        )
    except ValueError as exc:
        logger.debug("skipping malformed action: %s", exc)
        return None


def _parse_solution(item: object) -> Solution | None:
    if not isinstance(item, Mapping):
        return None
    title = _text(item.get("title"))
    description = _text(item.get("description"))
    if title is None and description is None:
        return None
    return Solution(
        title=title or (description or "")[:50],
        description=description or title or "",
        steps=_str_items(item.get("steps")),
        priority=_priority(item.get("priority")),
        estimated_time=_text(item.get("estimatedTime")),
    )


def _as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return value
    return []


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _str_items(value: object) -> tuple[str, ...]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        return ()
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


def _probability(value: object, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    number = float(value)
    if not math.isfinite(number):
        return default
    return min(max(number, 0.0), 1.0)


def _priority(value: object) -> Priority:
    if isinstance(value, str) and value.strip().lower() in _PRIORITY_VALUES:
        return Priority(value.strip().lower())
    return Priority.MEDIUM


__all__ = [
    "ANALYSIS_INSTRUCTIONS",
    "CONNECTION_TEST_PROMPT",
    "ModelAnalysisCollaborator",
    "build_analysis_prompt",
    "build_code_explanation_prompt",
    "build_solution_prompt",
    "fallback_result",
    "manual_investigation_action",
    "parse_analysis_response",
    "parse_solution_response",
]
