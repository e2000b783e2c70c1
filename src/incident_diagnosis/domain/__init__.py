"""Domain types shared across the pipeline: issues, codebase snapshots, sessions, results."""

from incident_diagnosis.domain.errors import (
    CollaboratorUnreachableError,
    DiagnosisError,
    DiagnosisValidationError,
    SessionCancelledError,
)
from incident_diagnosis.domain.ids import (
    IdGenerator,
    SequentialIdGenerator,
    UlidIdGenerator,
    generate_session_id,
)
from incident_diagnosis.domain.models import (
    Action,
    AnalysisContext,
    Cause,
    ClassInfo,
    CodebaseProject,
    CodeFile,
    CodeFragment,
    CodeLocation,
    DiagnosisOptions,
    DiagnosisResult,
    DiagnosisSession,
    DocumentPayload,
    EmptyPayload,
    FunctionInfo,
    IssueReport,
    IssueStatus,
    Payload,
    Priority,
    ProjectSource,
    ProjectSummary,
    SessionStatus,
    Severity,
    Solution,
    TextPayload,
    payload_from_value,
)

__all__ = [
    "Action",
    "AnalysisContext",
    "Cause",
    "ClassInfo",
    "CodeFile",
    "CodeFragment",
    "CodeLocation",
    "CodebaseProject",
    "CollaboratorUnreachableError",
    "DiagnosisError",
    "DiagnosisOptions",
    "DiagnosisResult",
    "DiagnosisSession",
    "DiagnosisValidationError",
    "DocumentPayload",
    "EmptyPayload",
    "FunctionInfo",
    "IdGenerator",
    "IssueReport",
    "IssueStatus",
    "Payload",
    "Priority",
    "ProjectSource",
    "ProjectSummary",
    "SequentialIdGenerator",
    "SessionCancelledError",
    "SessionStatus",
    "Severity",
    "Solution",
    "TextPayload",
    "UlidIdGenerator",
    "generate_session_id",
    "payload_from_value",
]
