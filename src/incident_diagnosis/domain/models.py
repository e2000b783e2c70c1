"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeAlias, TypeVar, cast

from incident_diagnosis.constants import SEVERITY_RANK

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 1_000_000
_MAX_JSON_DEPTH = 32


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self.value]


class IssueStatus(StrEnum):
    DRAFT = "draft"
    ANALYZING = "analyzing"
    COMPLETED = "completed"


class ProjectSource(StrEnum):
    UPLOADED = "uploaded"
    FETCHED = "fetched"


class SessionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.RUNNING


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ---------------------------------------------------------------------------
# Issue payloads: tagged union of text, structured document, or nothing.
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextPayload:
    """Free-text input/output sample; rendered verbatim."""

    text: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "text", _as_str(self.text, "TextPayload.text", min_len=0, strip=False))

    @property
    def kind(self) -> str:
        return "text"

    def render(self) -> str:
        return self.text

    def to_value(self) -> JSONValue:
        return self.text


@dataclass(frozen=True, slots=True)
class DocumentPayload:
    """Structured JSON-like sample; rendered as indented JSON."""

    document: JSONValue

    def __post_init__(self) -> None:
        object.__setattr__(self, "document", _as_json_value(self.document, "DocumentPayload.document"))

    @property
    def kind(self) -> str:
        return "document"

    def render(self) -> str:
        return json.dumps(self.document, indent=2, ensure_ascii=False)

    def to_value(self) -> JSONValue:
        return self.document


@dataclass(frozen=True, slots=True)
class EmptyPayload:
    """Absent payload; omitted from rendered narratives."""

    @property
    def kind(self) -> str:
        return "empty"

    def render(self) -> str:
        return ""

    def to_value(self) -> JSONValue:
        return None


Payload: TypeAlias = TextPayload | DocumentPayload | EmptyPayload
_PAYLOAD_TYPES: tuple[type, ...] = (TextPayload, DocumentPayload, EmptyPayload)


def payload_from_value(value: object, path: str = "payload") -> Payload:
    """Classify a raw JSON-like value into the payload union.

    ``None`` and blank strings become :class:`EmptyPayload`; strings become
    :class:`TextPayload`; every other JSON value (objects, arrays, numbers,
    booleans) becomes :class:`DocumentPayload`.
    """

    if isinstance(value, _PAYLOAD_TYPES):
        return cast("Payload", value)
    if value is None:
        return EmptyPayload()
    if isinstance(value, str):
        if not value.strip():
            return EmptyPayload()
        return TextPayload(value)
    return DocumentPayload(_as_json_value(value, path))


# ---------------------------------------------------------------------------
# Issue report and codebase snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IssueReport(CanonicalModel):
    """Structured description of a production problem.

    Title and description are only type-checked here; emptiness is a diagnosis
    pre-flight failure so that incomplete reports can still be represented.
    """

    issue_id: str
    title: str
    description: str
    severity: Severity
    status: IssueStatus = IssueStatus.DRAFT
    input_data: Payload = field(default_factory=EmptyPayload)
    output_data: Payload = field(default_factory=EmptyPayload)
    error_logs: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "issue_id", _as_str(self.issue_id, "IssueReport.issue_id"))
        object.__setattr__(self, "title", _as_str(self.title, "IssueReport.title", min_len=0))
        object.__setattr__(
            self,
            "description",
            _as_str(self.description, "IssueReport.description", min_len=0),
        )
        object.__setattr__(self, "severity", _as_enum(Severity, self.severity, "IssueReport.severity"))
        object.__setattr__(self, "status", _as_enum(IssueStatus, self.status, "IssueReport.status"))
        object.__setattr__(
            self, "input_data", payload_from_value(self.input_data, "IssueReport.input_data")
        )
        object.__setattr__(
            self, "output_data", payload_from_value(self.output_data, "IssueReport.output_data")
        )
        object.__setattr__(
            self,
            "error_logs",
            _as_str_tuple(self.error_logs, "IssueReport.error_logs", min_len=0),
        )
        object.__setattr__(self, "created_at", _as_datetime(self.created_at, "IssueReport.created_at"))

    @property
    def search_text(self) -> str:
        return f"{self.title} {self.description}"

    @property
    def has_error_logs(self) -> bool:
        return any(line.strip() for line in self.error_logs)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> IssueReport:
        parsed = _expect_object(
            data,
            "IssueReport",
            required={"title", "description", "severity"},
            optional={
                "issue_id",
                "id",
                "status",
                "input_data",
                "output_data",
                "error_logs",
                "created_at",
            },
        )
        issue_id = parsed.get("issue_id", parsed.get("id", "issue-unassigned"))
        kwargs: dict[str, object] = {
            "issue_id": issue_id,
            "title": parsed["title"],
            "description": parsed["description"],
            "severity": parsed["severity"],
            "status": parsed.get("status", IssueStatus.DRAFT.value),
            "input_data": parsed.get("input_data"),
            "output_data": parsed.get("output_data"),
            "error_logs": tuple(_as_sequence(parsed.get("error_logs", ()), "IssueReport.error_logs")),
        }
        if "created_at" in parsed:
            kwargs["created_at"] = parsed["created_at"]
        return cls(**kwargs)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class FunctionInfo(CanonicalModel):
    name: str
    start_line: int
    end_line: int
    complexity: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "FunctionInfo.name"))
        start, end = _as_line_range(self.start_line, self.end_line, "FunctionInfo")
        object.__setattr__(self, "start_line", start)
        object.__setattr__(self, "end_line", end)
        object.__setattr__(
            self, "complexity", _as_int(self.complexity, "FunctionInfo.complexity", minimum=0)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FunctionInfo:
        parsed = _expect_object(
            data,
            "FunctionInfo",
            required={"name", "start_line", "end_line"},
            optional={"complexity"},
        )
        return cls(
            name=cast("str", parsed["name"]),
            start_line=cast("int", parsed["start_line"]),
            end_line=cast("int", parsed["end_line"]),
            complexity=cast("int", parsed.get("complexity", 1)),
        )


@dataclass(frozen=True, slots=True)
class ClassInfo(CanonicalModel):
    name: str
    start_line: int
    end_line: int
    methods: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "ClassInfo.name"))
        start, end = _as_line_range(self.start_line, self.end_line, "ClassInfo")
        object.__setattr__(self, "start_line", start)
        object.__setattr__(self, "end_line", end)
        object.__setattr__(self, "methods", _as_str_tuple(self.methods, "ClassInfo.methods"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ClassInfo:
        parsed = _expect_object(
            data,
            "ClassInfo",
            required={"name", "start_line", "end_line"},
            optional={"methods"},
        )
        return cls(
            name=cast("str", parsed["name"]),
            start_line=cast("int", parsed["start_line"]),
            end_line=cast("int", parsed["end_line"]),
            methods=tuple(_as_sequence(parsed.get("methods", ()), "ClassInfo.methods")),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class CodeFile(CanonicalModel):
    """One indexed source file. ``size`` defaults to the UTF-8 byte length."""

    path: str
    language: str
    content: str
    size: int | None = None
    functions: tuple[FunctionInfo, ...] = ()
    classes: tuple[ClassInfo, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _as_str(self.path, "CodeFile.path"))
        object.__setattr__(self, "language", _as_str(self.language, "CodeFile.language"))
        object.__setattr__(
            self,
            "content",
            _as_str(self.content, "CodeFile.content", min_len=0, max_len=None, strip=False),
        )
        if self.size is None:
            object.__setattr__(self, "size", len(self.content.encode("utf-8")))
        else:
            object.__setattr__(self, "size", _as_int(self.size, "CodeFile.size", minimum=0))
        object.__setattr__(
            self,
            "functions",
            _as_model_tuple(self.functions, FunctionInfo, "CodeFile.functions"),
        )
        object.__setattr__(
            self,
            "classes",
            _as_model_tuple(self.classes, ClassInfo, "CodeFile.classes"),
        )

    @property
    def lines(self) -> list[str]:
        return self.content.split("\n")

    @property
    def line_count(self) -> int:
        return len(self.lines)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CodeFile:
        parsed = _expect_object(
            data,
            "CodeFile",
            required={"path", "language", "content"},
            optional={"size", "functions", "classes"},
        )
        return cls(
            path=cast("str", parsed["path"]),
            language=cast("str", parsed["language"]),
            content=cast("str", parsed["content"]),
            size=cast("int | None", parsed.get("size")),
            functions=tuple(
                FunctionInfo.from_dict(_as_mapping(item, f"CodeFile.functions[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed.get("functions", ()), "CodeFile.functions")
                )
            ),
            classes=tuple(
                ClassInfo.from_dict(_as_mapping(item, f"CodeFile.classes[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed.get("classes", ()), "CodeFile.classes")
                )
            ),
        )


@dataclass(frozen=True, slots=True)
class CodebaseProject(CanonicalModel):
    """Snapshot of indexed source files.

    ``languages`` and ``total_size`` are derived from ``files`` when omitted.
    """

    project_id: str
    name: str
    files: tuple[CodeFile, ...]
    source: ProjectSource = ProjectSource.UPLOADED
    languages: tuple[str, ...] = ()
    total_size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "project_id", _as_str(self.project_id, "CodebaseProject.project_id"))
        object.__setattr__(self, "name", _as_str(self.name, "CodebaseProject.name"))
        object.__setattr__(
            self, "files", _as_model_tuple(self.files, CodeFile, "CodebaseProject.files")
        )
        object.__setattr__(
            self, "source", _as_enum(ProjectSource, self.source, "CodebaseProject.source")
        )
        languages = _as_str_tuple(self.languages, "CodebaseProject.languages")
        if not languages:
            languages = tuple(dict.fromkeys(item.language for item in self.files))
        object.__setattr__(self, "languages", languages)
        if self.total_size is None:
            object.__setattr__(self, "total_size", sum(item.size or 0 for item in self.files))
        else:
            object.__setattr__(
                self,
                "total_size",
                _as_int(self.total_size, "CodebaseProject.total_size", minimum=0),
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CodebaseProject:
        parsed = _expect_object(
            data,
            "CodebaseProject",
            required={"name", "files"},
            optional={"project_id", "id", "source", "languages", "total_size"},
        )
        return cls(
            project_id=cast("str", parsed.get("project_id", parsed.get("id", "project-unassigned"))),
            name=cast("str", parsed["name"]),
            files=tuple(
                CodeFile.from_dict(_as_mapping(item, f"CodebaseProject.files[{index}]"))
                for index, item in enumerate(_as_sequence(parsed["files"], "CodebaseProject.files"))
            ),
            source=cast("ProjectSource", parsed.get("source", ProjectSource.UPLOADED.value)),
            languages=tuple(
                _as_sequence(parsed.get("languages", ()), "CodebaseProject.languages")
            ),  # type: ignore[arg-type]
            total_size=cast("int | None", parsed.get("total_size")),
        )


# ---------------------------------------------------------------------------
# Analysis inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CodeFragment(CanonicalModel):
    """Scored, line-bounded excerpt of a :class:`CodeFile`."""

    file: str
    language: str
    start_line: int
    end_line: int
    content: str
    relevance: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "file", _as_str(self.file, "CodeFragment.file"))
        object.__setattr__(self, "language", _as_str(self.language, "CodeFragment.language"))
        start, end = _as_line_range(self.start_line, self.end_line, "CodeFragment")
        object.__setattr__(self, "start_line", start)
        object.__setattr__(self, "end_line", end)
        object.__setattr__(
            self,
            "content",
            _as_str(self.content, "CodeFragment.content", min_len=0, max_len=None, strip=False),
        )
        object.__setattr__(self, "relevance", _as_float(self.relevance, "CodeFragment.relevance"))

    def with_relevance(self, relevance: float) -> CodeFragment:
        return replace(self, relevance=relevance)

    def with_content(self, content: str) -> CodeFragment:
        return replace(self, content=content)


@dataclass(frozen=True, slots=True)
class ProjectSummary(CanonicalModel):
    name: str
    languages: tuple[str, ...]
    total_files: int
    total_lines: int
    total_functions: int
    total_classes: int
    average_complexity: float
    language_distribution: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "ProjectSummary.name"))
        object.__setattr__(self, "languages", _as_str_tuple(self.languages, "ProjectSummary.languages"))
        for name in ("total_files", "total_lines", "total_functions", "total_classes"):
            object.__setattr__(
                self, name, _as_int(getattr(self, name), f"ProjectSummary.{name}", minimum=0)
            )
        object.__setattr__(
            self,
            "average_complexity",
            _as_float(self.average_complexity, "ProjectSummary.average_complexity", minimum=0.0),
        )
        distribution: dict[str, int] = {}
        for key, value in dict(self.language_distribution).items():
            distribution[_as_str(key, "ProjectSummary.language_distribution.<key>")] = _as_int(
                value, f"ProjectSummary.language_distribution.{key}", minimum=0
            )
        object.__setattr__(self, "language_distribution", distribution)


@dataclass(frozen=True, slots=True)
class AnalysisContext(CanonicalModel):
    """Token-budgeted request material for one diagnosis.

    ``degraded`` is set when the base narrative alone exhausted the budget and
    every fragment was omitted.
    """

    issue: IssueReport
    fragments: tuple[CodeFragment, ...]
    summary: ProjectSummary
    token_budget: int
    request_text: str = ""
    estimated_tokens: int = 0
    degraded: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "fragments", _as_model_tuple(self.fragments, CodeFragment, "AnalysisContext.fragments")
        )
        object.__setattr__(
            self, "token_budget", _as_int(self.token_budget, "AnalysisContext.token_budget", minimum=0)
        )
        object.__setattr__(
            self,
            "estimated_tokens",
            _as_int(self.estimated_tokens, "AnalysisContext.estimated_tokens", minimum=0),
        )


# ---------------------------------------------------------------------------
# Diagnosis output
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CodeLocation(CanonicalModel):
    file: str
    line: int | None = None
    function: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "file", _as_str(self.file, "CodeLocation.file"))
        if self.line is not None:
            object.__setattr__(self, "line", _as_int(self.line, "CodeLocation.line", minimum=1))
        if self.function is not None:
            object.__setattr__(self, "function", _as_str(self.function, "CodeLocation.function"))


@dataclass(frozen=True, slots=True)
class Cause(CanonicalModel):
    description: str
    probability: float
    category: str = "general"
    evidence: tuple[str, ...] = ()
    location: CodeLocation | None = None
    title: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "description", _as_str(self.description, "Cause.description"))
        object.__setattr__(self, "probability", _as_probability(self.probability, "Cause.probability"))
        object.__setattr__(self, "category", _as_str(self.category, "Cause.category"))
        object.__setattr__(self, "evidence", _as_str_tuple(self.evidence, "Cause.evidence"))
        if self.title is not None:
            object.__setattr__(self, "title", _as_str(self.title, "Cause.title"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Cause:
        parsed = _expect_object(
            data,
            "Cause",
            required={"description", "probability"},
            optional={"category", "evidence", "location", "title"},
        )
        location_raw = parsed.get("location")
        location = None
        if location_raw is not None:
            fields_raw = _expect_object(
                location_raw,
                "Cause.location",
                required={"file"},
                optional={"line", "function"},
            )
            location = CodeLocation(**fields_raw)  # type: ignore[arg-type]
        return cls(
            description=cast("str", parsed["description"]),
            probability=cast("float", parsed["probability"]),
            category=cast("str", parsed.get("category", "general")),
            evidence=tuple(_as_sequence(parsed.get("evidence", ()), "Cause.evidence")),  # type: ignore[arg-type]
            location=location,
            title=cast("str | None", parsed.get("title")),
        )


@dataclass(frozen=True, slots=True)
class Action(CanonicalModel):
    description: str
    priority: Priority
    category: str = "investigation"
    steps: tuple[str, ...] = ()
    title: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "description", _as_str(self.description, "Action.description"))
        object.__setattr__(self, "priority", _as_enum(Priority, self.priority, "Action.priority"))
        object.__setattr__(self, "category", _as_str(self.category, "Action.category"))
        object.__setattr__(self, "steps", _as_str_tuple(self.steps, "Action.steps"))
        if self.title is not None:
            object.__setattr__(self, "title", _as_str(self.title, "Action.title"))

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Action:
        parsed = _expect_object(
            data,
            "Action",
            required={"description", "priority"},
            optional={"category", "steps", "title"},
        )
        return cls(
            description=cast("str", parsed["description"]),
            priority=cast("Priority", parsed["priority"]),
            category=cast("str", parsed.get("category", "investigation")),
            steps=tuple(_as_sequence(parsed.get("steps", ()), "Action.steps")),  # type: ignore[arg-type]
            title=cast("str | None", parsed.get("title")),
        )


@dataclass(frozen=True, slots=True)
class Solution(CanonicalModel):
    title: str
    description: str
    steps: tuple[str, ...] = ()
    priority: Priority = Priority.MEDIUM
    estimated_time: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "title", _as_str(self.title, "Solution.title"))
        object.__setattr__(self, "description", _as_str(self.description, "Solution.description"))
        object.__setattr__(self, "steps", _as_str_tuple(self.steps, "Solution.steps"))
        object.__setattr__(self, "priority", _as_enum(Priority, self.priority, "Solution.priority"))
        if self.estimated_time is not None:
            object.__setattr__(
                self, "estimated_time", _as_str(self.estimated_time, "Solution.estimated_time")
            )

    def to_action(self) -> Action:
        return Action(
            title=self.title,
            description=self.description,
            priority=self.priority,
            category="code_fix",
            steps=self.steps,
        )


@dataclass(frozen=True, slots=True)
class DiagnosisResult(CanonicalModel):
    """Ranked causes and remediation produced once per session; immutable."""

    possible_causes: tuple[Cause, ...]
    confidence: float
    reasoning: str
    suggested_actions: tuple[Action, ...]
    code_explanations: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "possible_causes",
            _as_model_tuple(self.possible_causes, Cause, "DiagnosisResult.possible_causes"),
        )
        object.__setattr__(
            self, "confidence", _as_probability(self.confidence, "DiagnosisResult.confidence")
        )
        object.__setattr__(
            self,
            "reasoning",
            _as_str(self.reasoning, "DiagnosisResult.reasoning", min_len=0, strip=False),
        )
        object.__setattr__(
            self,
            "suggested_actions",
            _as_model_tuple(self.suggested_actions, Action, "DiagnosisResult.suggested_actions"),
        )
        object.__setattr__(
            self,
            "code_explanations",
            _as_str_tuple(self.code_explanations, "DiagnosisResult.code_explanations"),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DiagnosisResult:
        parsed = _expect_object(
            data,
            "DiagnosisResult",
            required={"possible_causes", "confidence", "reasoning", "suggested_actions"},
            optional={"code_explanations"},
        )
        return cls(
            possible_causes=tuple(
                Cause.from_dict(_as_mapping(item, f"DiagnosisResult.possible_causes[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed["possible_causes"], "DiagnosisResult.possible_causes")
                )
            ),
            confidence=cast("float", parsed["confidence"]),
            reasoning=cast("str", parsed["reasoning"]),
            suggested_actions=tuple(
                Action.from_dict(_as_mapping(item, f"DiagnosisResult.suggested_actions[{index}]"))
                for index, item in enumerate(
                    _as_sequence(parsed["suggested_actions"], "DiagnosisResult.suggested_actions")
                )
            ),
            code_explanations=tuple(
                _as_sequence(parsed.get("code_explanations", ()), "DiagnosisResult.code_explanations")
            ),  # type: ignore[arg-type]
        )


@dataclass(slots=True)
class DiagnosisSession(CanonicalModel):
    """Stateful record of one orchestration run; mutated only by the orchestrator."""

    session_id: str
    issue_id: str
    project_id: str
    start_time: datetime
    status: SessionStatus = SessionStatus.RUNNING
    end_time: datetime | None = None
    model: str = ""
    tokens_used: int = 0
    stage: str = "initializing"
    result: DiagnosisResult | None = None
    error_type: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        self.session_id = _as_str(self.session_id, "DiagnosisSession.session_id")
        self.issue_id = _as_str(self.issue_id, "DiagnosisSession.issue_id")
        self.project_id = _as_str(self.project_id, "DiagnosisSession.project_id")
        self.start_time = _as_datetime(self.start_time, "DiagnosisSession.start_time")
        self.status = _as_enum(SessionStatus, self.status, "DiagnosisSession.status")
        if self.end_time is not None:
            self.end_time = _as_datetime(self.end_time, "DiagnosisSession.end_time")
        self.tokens_used = _as_int(self.tokens_used, "DiagnosisSession.tokens_used", minimum=0)

    @property
    def processing_time_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return max((self.end_time - self.start_time).total_seconds(), 0.0)

    def snapshot(self) -> DiagnosisSession:
        """Return a detached copy safe to hand to callers."""

        return replace(self)


@dataclass(frozen=True, slots=True)
class DiagnosisOptions:
    """Per-request overrides; ``None`` fields fall back to configured defaults."""

    include_code_explanation: bool = True
    include_solutions: bool = True
    max_fragments: int | None = None
    priority_threshold: float = 0.0
    token_budget: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "include_code_explanation",
            _as_bool(self.include_code_explanation, "DiagnosisOptions.include_code_explanation"),
        )
        object.__setattr__(
            self,
            "include_solutions",
            _as_bool(self.include_solutions, "DiagnosisOptions.include_solutions"),
        )
        if self.max_fragments is not None:
            object.__setattr__(
                self,
                "max_fragments",
                _as_int(self.max_fragments, "DiagnosisOptions.max_fragments", minimum=0),
            )
        object.__setattr__(
            self,
            "priority_threshold",
            _as_probability(self.priority_threshold, "DiagnosisOptions.priority_threshold"),
        )
        if self.token_budget is not None:
            object.__setattr__(
                self,
                "token_budget",
                _as_int(self.token_budget, "DiagnosisOptions.token_budget", minimum=1),
            )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int | None = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if max_len is not None and len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_probability(value: object, path: str) -> float:
    parsed = _as_float(value, path, minimum=0.0)
    if parsed > 1.0:
        _fail(path, "must be <= 1.0")
    return parsed


def _as_line_range(start: object, end: object, path: str) -> tuple[int, int]:
    start_line = _as_int(start, f"{path}.start_line", minimum=1)
    end_line = _as_int(end, f"{path}.end_line", minimum=1)
    if end_line < start_line:
        _fail(path, f"end_line {end_line} precedes start_line {start_line}")
    return start_line, end_line


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str, *, min_len: int = 1) -> tuple[str, ...]:
    values = _as_sequence(value, path)
    return tuple(
        _as_str(item, f"{path}[{index}]", min_len=min_len, strip=min_len > 0)
        for index, item in enumerate(values)
    )


def _as_model_tuple(value: object, model_type: type[TModel], path: str) -> tuple[TModel, ...]:
    values = _as_sequence(value, path)
    for index, item in enumerate(values):
        if not isinstance(item, model_type):
            _fail(f"{path}[{index}]", f"expected {model_type.__name__}, got {type(item).__name__}")
    return cast("tuple[TModel, ...]", tuple(values))


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, _PAYLOAD_TYPES):
        return cast("Payload", value).to_value()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "Action",
    "AnalysisContext",
    "CanonicalModel",
    "Cause",
    "ClassInfo",
    "CodeFile",
    "CodeFragment",
    "CodeLocation",
    "CodebaseProject",
    "DiagnosisOptions",
    "DiagnosisResult",
    "DiagnosisSession",
    "DocumentPayload",
    "EmptyPayload",
    "FunctionInfo",
    "IssueReport",
    "IssueStatus",
    "JSONScalar",
    "JSONValue",
    "Payload",
    "Priority",
    "ProjectSource",
    "ProjectSummary",
    "SessionStatus",
    "Severity",
    "Solution",
    "TextPayload",
    "payload_from_value",
]
