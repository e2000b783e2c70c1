"""Turn a completed diagnosis session into a reviewable report.

The heuristics here (levels, urgency, complexity, risk) are keyword and
threshold based and purely presentational; they never feed back into a
diagnosis. Every output is a deterministic function of the session, so two
renders of the same session are byte-identical.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final

import yaml

from incident_diagnosis.domain.models import (
    Action,
    Cause,
    DiagnosisResult,
    DiagnosisSession,
    Priority,
    SessionStatus,
)

logger = logging.getLogger(__name__)

REPORT_VERSION: Final[str] = "1.0.0"
CAUSE_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"code", "data", "configuration", "infrastructure", "external"}
)

_CATEGORY_KEYWORDS: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("code", ("code", "function", "method")),
    ("data", ("data", "database", "query")),
    ("configuration", ("config", "setting", "parameter")),
    ("infrastructure", ("server", "network", "infrastructure")),
)
_STEP_TYPE_KEYWORDS: Final[tuple[tuple[str, tuple[str, ...]], ...]] = (
    ("testing", ("test", "verify")),
    ("deployment", ("deploy", "release")),
    ("configuration", ("config", "setting")),
    ("investigation", ("investigate", "check")),
)
_PREREQUISITES: Final[tuple[tuple[str, str], ...]] = (
    ("backup", "Create backup of affected data/code"),
    ("test", "Prepare test environment"),
    ("deploy", "Coordinate with deployment team"),
)

_QUOTED_RE: Final[re.Pattern[str]] = re.compile(r'"([^"]+)"')
_ERROR_CODE_RE: Final[re.Pattern[str]] = re.compile(r"\b[A-Z_]+_ERROR\b")
_CALL_RE: Final[re.Pattern[str]] = re.compile(r"\b\w+\(\)")
_LIST_ITEM_RE: Final[re.Pattern[str]] = re.compile(r"^\s*(?:\d+\.|[-*])\s+")

_TITLE_LIMIT: Final[int] = 50


class ExportFormat(StrEnum):
    MARKDOWN = "markdown"
    SUMMARY = "summary"
    JSON = "json"
    YAML = "yaml"


# ---------------------------------------------------------------------------
# Report records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReportSummary:
    title: str
    confidence: float
    confidence_level: str
    primary_cause: str
    urgency: str
    estimated_resolution_time: str
    impact_assessment: str


@dataclass(frozen=True, slots=True)
class FormattedCause:
    cause_id: str
    description: str
    probability: float
    probability_level: str
    category: str
    impact: str
    evidence: tuple[str, ...] = ()
    location: str | None = None


@dataclass(frozen=True, slots=True)
class FormattedStep:
    number: int
    description: str
    step_type: str
    estimated_time: str


@dataclass(frozen=True, slots=True)
class FormattedSolution:
    solution_id: str
    title: str
    description: str
    priority: str
    category: str
    complexity: str
    estimated_time: str
    risk_level: str
    steps: tuple[FormattedStep, ...] = ()
    prerequisites: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Recommendation:
    recommendation_id: str
    horizon: str
    category: str
    title: str
    description: str
    benefits: tuple[str, ...]
    effort: str


@dataclass(frozen=True, slots=True)
class Alert:
    level: str
    title: str
    message: str
    actions: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ReportMetadata:
    session_id: str
    issue_id: str
    project_id: str
    status: str
    model: str
    tokens_used: int
    processing_time_seconds: float
    generated_at: datetime
    version: str = REPORT_VERSION


@dataclass(frozen=True, slots=True)
class DiagnosisReport:
    """Presentation view of one session's result."""

    summary: ReportSummary
    causes: tuple[FormattedCause, ...]
    solutions: tuple[FormattedSolution, ...]
    affected_files: tuple[str, ...]
    recommendations: tuple[Recommendation, ...]
    alerts: tuple[Alert, ...]
    metadata: ReportMetadata
    reasoning: str = ""
    code_explanations: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return _to_plain(self)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class ResultFormatter:
    """Builds :class:`DiagnosisReport` views and renders them for export."""

    def format(self, session: DiagnosisSession) -> DiagnosisReport:
        if session.result is None:
            raise ValueError(f"session {session.session_id} has no diagnosis result")
        result = session.result
        causes = tuple(format_cause(index, cause) for index, cause in enumerate(result.possible_causes, 1))
        solutions = tuple(
            format_solution(index, action) for index, action in enumerate(result.suggested_actions, 1)
        )
        summary = ReportSummary(
            title=f"Diagnosis for Session {session.session_id}",
            confidence=result.confidence,
            confidence_level=confidence_level(result.confidence),
            primary_cause=(
                result.possible_causes[0].description
                if result.possible_causes
                else "Unable to determine primary cause"
            ),
            urgency=determine_urgency(result),
            estimated_resolution_time=estimate_resolution_time(result),
            impact_assessment=assess_impact(result),
        )
        return DiagnosisReport(
            summary=summary,
            causes=causes,
            solutions=solutions,
            affected_files=affected_files(result),
            recommendations=recommendations_for(result),
            alerts=alerts_for(summary),
            metadata=ReportMetadata(
                session_id=session.session_id,
                issue_id=session.issue_id,
                project_id=session.project_id,
                status=session.status.value,
                model=session.model,
                tokens_used=session.tokens_used,
                processing_time_seconds=round(session.processing_time_seconds or 0.0, 3),
                generated_at=session.end_time or datetime.now(tz=UTC),
            ),
            reasoning=result.reasoning,
            code_explanations=result.code_explanations,
        )

    def export(self, session: DiagnosisSession, export_format: ExportFormat | str) -> str:
        report = self.format(session)
        resolved = ExportFormat(export_format)
        logger.debug("exporting diagnosis report as %s", resolved.value)
        if resolved is ExportFormat.MARKDOWN:
            return self.to_markdown(report)
        if resolved is ExportFormat.SUMMARY:
            return self.to_summary(report)
        if resolved is ExportFormat.JSON:
            return self.to_json(report)
        return self.to_yaml(report)

    def to_markdown(self, report: DiagnosisReport) -> str:
        meta = report.metadata
        summary = report.summary
        lines = [
            "# Diagnosis Report",
            "",
            f"**Session ID:** {meta.session_id}",
            f"**Generated:** {_iso(meta.generated_at)}",
            f"**AI Model:** {meta.model or 'unknown'}",
            f"**Processing Time:** {meta.processing_time_seconds:.2f}s",
            f"**Tokens Used:** {meta.tokens_used}",
            "",
            "## Summary",
            "",
            f"- **Confidence:** {_percent(summary.confidence)} ({summary.confidence_level})",
            f"- **Primary Cause:** {summary.primary_cause}",
            f"- **Urgency:** {summary.urgency}",
            f"- **Estimated Resolution Time:** {summary.estimated_resolution_time}",
            f"- **Impact:** {summary.impact_assessment}",
            "",
        ]
        for alert in report.alerts:
            lines.append(f"> **{alert.title}:** {alert.message}")
            lines.append("")

        lines.extend(["## Possible Causes", ""])
        for index, cause in enumerate(report.causes, 1):
            lines.append(f"### {index}. {cause.description}")
            lines.append(f"- **Probability:** {_percent(cause.probability)} ({cause.probability_level})")
            lines.append(f"- **Category:** {cause.category}")
            lines.append(f"- **Impact:** {cause.impact}")
            if cause.location:
                lines.append(f"- **Location:** {cause.location}")
            if cause.evidence:
                lines.append(f"- **Evidence:** {', '.join(cause.evidence)}")
            lines.append("")

        lines.extend(["## Recommended Solutions", ""])
        for index, solution in enumerate(report.solutions, 1):
            lines.append(f"### {index}. {solution.title}")
            lines.append(solution.description)
            lines.append("")
            lines.append(f"- **Priority:** {solution.priority}")
            lines.append(f"- **Complexity:** {solution.complexity}")
            lines.append(f"- **Estimated Time:** {solution.estimated_time}")
            lines.append(f"- **Risk Level:** {solution.risk_level}")
            if solution.prerequisites:
                lines.append(f"- **Prerequisites:** {'; '.join(solution.prerequisites)}")
            lines.append("")
            if solution.steps:
                lines.append("**Steps:**")
                lines.extend(f"{step.number}. {step.description}" for step in solution.steps)
                lines.append("")

        if report.affected_files:
            lines.extend(["## Affected Files", ""])
            lines.extend(f"- `{name}`" for name in report.affected_files)
            lines.append("")

        if report.reasoning:
            lines.extend(["## Reasoning", "", report.reasoning, ""])

        lines.extend(["## Recommendations", ""])
        for item in report.recommendations:
            lines.append(f"- **{item.title}** ({item.horizon}, {item.effort} effort): {item.description}")
        return "\n".join(lines).rstrip() + "\n"

    def to_summary(self, report: DiagnosisReport) -> str:
        summary = report.summary
        lines = [
            "Diagnosis Summary:",
            "",
            f"Primary Cause: {summary.primary_cause}",
            f"Confidence: {_percent(summary.confidence)}",
            f"Urgency: {summary.urgency}",
            f"Estimated Resolution: {summary.estimated_resolution_time}",
            "",
            "Key Actions:",
        ]
        for index, solution in enumerate(report.solutions[:3], 1):
            lines.append(f"{index}. {solution.title} ({solution.priority} priority)")
        return "\n".join(lines) + "\n"

    def to_json(self, report: DiagnosisReport) -> str:
        return json.dumps(report.to_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    def to_yaml(self, report: DiagnosisReport) -> str:
        return yaml.safe_dump(report.to_dict(), sort_keys=True, allow_unicode=True)


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


def confidence_level(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "medium"
    return "low"


def probability_level(probability: float) -> str:
    if probability >= 0.7:
        return "high"
    if probability >= 0.4:
        return "medium"
    return "low"


def cause_impact(probability: float) -> str:
    if probability > 0.8:
        return "critical"
    if probability > 0.6:
        return "high"
    if probability > 0.4:
        return "medium"
    return "low"


def categorize_cause(cause: Cause) -> str:
    """Keep a recognised collaborator category, otherwise infer one from the text."""

    if cause.category in CAUSE_CATEGORIES:
        return cause.category
    lowered = cause.description.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return "external"


def extract_evidence(description: str) -> tuple[str, ...]:
    """Quoted strings, ``*_ERROR`` codes and ``name()`` calls mentioned in a description."""
    found = [
        *_QUOTED_RE.findall(description),
        *_ERROR_CODE_RE.findall(description),
        *_CALL_RE.findall(description),
    ]
    return tuple(dict.fromkeys(found))


def determine_urgency(result: DiagnosisResult) -> str:
    likely = any(cause.probability > 0.7 for cause in result.possible_causes)
    pressing = any(action.priority is Priority.HIGH for action in result.suggested_actions)
    if likely and pressing:
        return "critical"
    if pressing:
        return "high"
    if result.confidence > 0.7:
        return "medium"
    return "low"


def estimate_resolution_time(result: DiagnosisResult) -> str:
    high = sum(1 for action in result.suggested_actions if action.priority is Priority.HIGH)
    medium = sum(1 for action in result.suggested_actions if action.priority is Priority.MEDIUM)
    if high > 2:
        return "4-8 hours"
    if high > 0 or medium > 3:
        return "2-4 hours"
    if medium > 0:
        return "1-2 hours"
    return "30 minutes - 1 hour"


def assess_impact(result: DiagnosisResult) -> str:
    actions = len(result.suggested_actions)
    if result.confidence > 0.8 and actions > 3:
        return "High impact issue requiring immediate attention and multiple fixes"
    if result.confidence > 0.6 and actions > 1:
        return "Medium impact issue with clear resolution path"
    return "Low to medium impact issue with straightforward resolution"


def solution_title(action: Action) -> str:
    if action.title:
        return action.title
    first_sentence = action.description.split(".")[0].strip()
    if len(first_sentence) > _TITLE_LIMIT:
        return first_sentence[: _TITLE_LIMIT - 3] + "..."
    return first_sentence or action.description


def step_type(text: str) -> str:
    lowered = text.lower()
    for kind, keywords in _STEP_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return "code_change"


def solution_steps(action: Action) -> tuple[FormattedStep, ...]:
    """Explicit steps first, then list items in the description, then one catch-all step."""

    if action.steps:
        items = list(action.steps)
    else:
        items = [
            _LIST_ITEM_RE.sub("", line).strip()
            for line in action.description.splitlines()
            if _LIST_ITEM_RE.match(line)
        ]
    if items:
        return tuple(
            FormattedStep(
                number=index,
                description=text,
                step_type=step_type(text),
                estimated_time="15-30 minutes",
            )
            for index, text in enumerate(items, 1)
        )
    return (
        FormattedStep(
            number=1,
            description=action.description,
            step_type=step_type(action.description),
            estimated_time="30-60 minutes",
        ),
    )


def assess_complexity(action: Action) -> str:
    lowered = action.description.lower()
    if any(word in lowered for word in ("refactor", "architecture", "redesign")):
        return "complex"
    if any(word in lowered for word in ("modify", "update", "change")):
        return "moderate"
    return "simple"


def estimate_solution_time(action: Action) -> str:
    complexity = assess_complexity(action)
    if complexity == "complex":
        return "4-8 hours"
    if complexity == "moderate":
        return "2-4 hours" if action.priority is Priority.HIGH else "1-2 hours"
    return "30 minutes - 1 hour"


def assess_risk(action: Action) -> str:
    lowered = action.description.lower()
    if any(word in lowered for word in ("database", "production", "critical")):
        return "high"
    if any(word in lowered for word in ("config", "api", "service")):
        return "medium"
    return "low"


def prerequisites_for(action: Action) -> tuple[str, ...]:
    lowered = action.description.lower()
    return tuple(text for keyword, text in _PREREQUISITES if keyword in lowered)


def format_cause(index: int, cause: Cause) -> FormattedCause:
    location = None
    if cause.location is not None:
        location = cause.location.file
        if cause.location.line is not None:
            location = f"{location}:{cause.location.line}"
        if cause.location.function:
            location = f"{location} ({cause.location.function})"
    return FormattedCause(
        cause_id=f"cause_{index}",
        description=cause.description,
        probability=cause.probability,
        probability_level=probability_level(cause.probability),
        category=categorize_cause(cause),
        impact=cause_impact(cause.probability),
        evidence=tuple(dict.fromkeys((*cause.evidence, *extract_evidence(cause.description)))),
        location=location,
    )


def format_solution(index: int, action: Action) -> FormattedSolution:
    return FormattedSolution(
        solution_id=f"solution_{index}",
        title=solution_title(action),
        description=action.description,
        priority=action.priority.value,
        category=action.category,
        complexity=assess_complexity(action),
        estimated_time=estimate_solution_time(action),
        risk_level=assess_risk(action),
        steps=solution_steps(action),
        prerequisites=prerequisites_for(action),
    )


def affected_files(result: DiagnosisResult) -> tuple[str, ...]:
    names = (cause.location.file for cause in result.possible_causes if cause.location is not None)
    return tuple(dict.fromkeys(names))


def recommendations_for(result: DiagnosisResult) -> tuple[Recommendation, ...]:
    items = [
        Recommendation(
            recommendation_id="immediate_monitoring",
            horizon="immediate",
            category="monitoring",
            title="Enhance Error Monitoring",
            description="Implement comprehensive error tracking and alerting for similar issues",
            benefits=("Early detection", "Faster response time", "Better visibility"),
            effort="low",
        )
    ]
    if result.confidence < 0.8:
        items.append(
            Recommendation(
                recommendation_id="short_term_testing",
                horizon="short_term",
                category="testing",
                title="Improve Test Coverage",
                description="Add automated tests to cover the scenarios identified in this diagnosis",
                benefits=("Prevent regression", "Increase confidence", "Better code quality"),
                effort="medium",
            )
        )
    items.append(
        Recommendation(
            recommendation_id="long_term_architecture",
            horizon="long_term",
            category="architecture",
            title="Architecture Review",
            description="Conduct a comprehensive review of system architecture to prevent similar issues",
            benefits=("Improved reliability", "Better maintainability", "Reduced technical debt"),
            effort="high",
        )
    )
    return tuple(items)


def alerts_for(summary: ReportSummary) -> tuple[Alert, ...]:
    alerts: list[Alert] = []
    if summary.confidence_level == "low":
        alerts.append(
            Alert(
                level="warning",
                title="Low Confidence Diagnosis",
                message=(
                    "The AI has low confidence in this diagnosis. Consider gathering more "
                    "information or consulting with experts."
                ),
            )
        )
    if summary.urgency == "critical":
        alerts.append(
            Alert(
                level="error",
                title="Critical Issue Detected",
                message="This issue requires immediate attention. Consider implementing emergency measures.",
                actions=("Escalate to senior team", "Implement emergency fix"),
            )
        )
    return tuple(alerts)


def describe_session(session: DiagnosisSession) -> str:
    """One-line status used by the CLI for sessions without a result."""

    if session.status is SessionStatus.FAILED:
        detail = session.error_message or "unknown error"
        return f"{session.session_id}: failed at {session.stage} ({detail})"
    if session.status is SessionStatus.COMPLETED:
        return f"{session.session_id}: completed in {session.processing_time_seconds or 0.0:.2f}s"
    return f"{session.session_id}: running ({session.stage})"


def _to_plain(value: object) -> object:
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _to_plain(item) for key, item in value.items()}
    dataclass_fields = getattr(type(value), "__dataclass_fields__", None)
    if dataclass_fields is not None:
        return {name: _to_plain(getattr(value, name)) for name in dataclass_fields}
    return value


def _iso(moment: datetime) -> str:
    aware = moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _percent(value: float) -> str:
    return f"{round(value * 100)}%"


__all__ = [
    "Alert",
    "DiagnosisReport",
    "ExportFormat",
    "FormattedCause",
    "FormattedSolution",
    "FormattedStep",
    "Recommendation",
    "ReportMetadata",
    "ReportSummary",
    "ResultFormatter",
    "affected_files",
    "alerts_for",
    "assess_complexity",
    "assess_impact",
    "assess_risk",
    "categorize_cause",
    "cause_impact",
    "confidence_level",
    "describe_session",
    "determine_urgency",
    "estimate_resolution_time",
    "estimate_solution_time",
    "extract_evidence",
    "format_cause",
    "format_solution",
    "prerequisites_for",
    "probability_level",
    "recommendations_for",
    "solution_steps",
    "solution_title",
]
