"""Domain-level exception types for the diagnosis pipeline."""

from __future__ import annotations

from collections.abc import Sequence


class DiagnosisError(RuntimeError):
    """Base class for failures raised by the diagnosis core."""


class DiagnosisValidationError(DiagnosisError, ValueError):
    """Issue report or codebase snapshot failed pre-flight validation.

    Raised before any collaborator call. ``problems`` lists every violated rule in
    deterministic order so callers can render all of them at once.
    """

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = tuple(problems)
        if not self.problems:
            rendered = "unknown validation failure"
        else:
            rendered = "; ".join(self.problems)
        super().__init__(f"invalid diagnosis input: {rendered}")


class CollaboratorUnreachableError(DiagnosisValidationError):
    """The analysis collaborator did not report itself reachable."""

    def __init__(self, detail: str = "analysis collaborator is not reachable") -> None:
        super().__init__((detail,))


class SessionCancelledError(DiagnosisError):
    """A running session was cancelled while a stage was in flight."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"diagnosis session {session_id} was cancelled")


__all__ = [
    "CollaboratorUnreachableError",
    "DiagnosisError",
    "DiagnosisValidationError",
    "SessionCancelledError",
]
