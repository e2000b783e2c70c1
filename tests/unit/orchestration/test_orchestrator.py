"""
incident-diagnosis: unit tests for the diagnosis orchestrator

File: tests/unit/orchestration/test_orchestrator.py

Purpose
- Validate the session stage machine against a scripted analysis collaborator.

What this test file should cover
- Stage order, progress events, and the completed session record.
- Pre-flight validation failures that never reach the collaborator.
- Fatal provider failures (rate limits, timeouts) and non-fatal supplementary failures.
- Per-request options: budgets, fragment limits, priority threshold.
- Cancellation (including from worker threads), statistics, retention, session cap.
- Async progress callbacks never hold up the stage sequence.
- Completion property over arbitrary valid inputs.

Non-functional requirements
- Deterministic: sequential ids and a ticking clock.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from random import Random

import pytest

from incident_diagnosis.domain.errors import (
    CollaboratorUnreachableError,
    DiagnosisValidationError,
    SessionCancelledError,
)
from incident_diagnosis.domain.ids import SequentialIdGenerator
from incident_diagnosis.domain.models import (
    Action,
    AnalysisContext,
    Cause,
    CodebaseProject,
    CodeFile,
    DiagnosisOptions,
    DiagnosisResult,
    FunctionInfo,
    IssueReport,
    Priority,
    SessionStatus,
    Severity,
    Solution,
)
from incident_diagnosis.orchestration.orchestrator import (
    CODE_ANALYSIS_HEADER,
    DiagnosisOrchestrator,
    OrchestratorSettings,
    apply_priority_threshold,
)
from incident_diagnosis.orchestration.progress import ProgressBus, ProgressEvent, ProgressStage
from incident_diagnosis.orchestration.registry import SessionRegistry
from incident_diagnosis.providers.base import (
    AnalysisReport,
    ProviderRateLimitError,
    ProviderServiceError,
    ProviderTimeoutError,
)

try:
    from hypothesis import given, seed, settings
    from hypothesis import strategies as st

    HYPOTHESIS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - fallback path
    HYPOTHESIS_AVAILABLE = False


def _result(*probabilities: float, confidence: float = 0.8) -> DiagnosisResult:
    causes = tuple(
        Cause(description=f"cause {index}", probability=probability)
        for index, probability in enumerate(probabilities or (0.7,), start=1)
    )
    return DiagnosisResult(
        possible_causes=causes,
        confidence=confidence,
        reasoning="Pool checkout times out under load.",
        suggested_actions=(Action(description="Raise pool size", priority=Priority.HIGH),),
    )


def _report(result: DiagnosisResult | None = None, *, tokens: int = 120) -> AnalysisReport:
    return AnalysisReport(result=result or _result(), model="fake-model", tokens_used=tokens)


@dataclass
class FakeCollaborator:
    outcomes: deque[AnalysisReport | Exception] = field(default_factory=deque)
    solutions: deque[list[Solution] | Exception] = field(default_factory=deque)
    explanations: deque[str | Exception] = field(default_factory=deque)
    reachable: bool = True
    gate: asyncio.Event | None = None
    calls: list[str] = field(default_factory=list)
    contexts: list[AnalysisContext] = field(default_factory=list)

    async def test_connection(self) -> bool:
        self.calls.append("test_connection")
        return self.reachable

    async def analyze(self, context: AnalysisContext) -> AnalysisReport:
        self.calls.append("analyze")
        self.contexts.append(context)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.popleft() if self.outcomes else _report()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def suggest_solutions(self, result: DiagnosisResult) -> list[Solution]:
        self.calls.append("suggest_solutions")
        outcome = self.solutions.popleft() if self.solutions else []
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def explain_code(self, code: str, language: str) -> str:
        self.calls.append("explain_code")
        outcome = self.explanations.popleft() if self.explanations else "Opens a pooled connection."
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _ticking_clock() -> Callable[[], datetime]:
    start = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


def _orchestrator(
    collaborator: FakeCollaborator,
    *,
    registry: SessionRegistry | None = None,
    bus: ProgressBus | None = None,
    **settings_kwargs: object,
) -> DiagnosisOrchestrator:
    return DiagnosisOrchestrator(
        collaborator,
        registry=registry,
        progress_bus=bus,
        id_generator=SequentialIdGenerator(),
        settings=OrchestratorSettings(**settings_kwargs),  # type: ignore[arg-type]
        clock=_ticking_clock(),
    )


def _issue(title: str = "API timeout", description: str = "Database connection fails for users") -> IssueReport:
    return IssueReport(
        issue_id="issue-1",
        title=title,
        description=description,
        severity=Severity.HIGH,
        error_logs=("TimeoutError: database connection pool exhausted",),
    )


def _project(files: tuple[CodeFile, ...] | None = None) -> CodebaseProject:
    if files is None:
        files = (
            CodeFile(
                path="src/database.py",
                language="python",
                content=(
                    "import pool\n"
                    "\n"
                    "def connect():\n"
                    "    # database connection with timeout\n"
                    "    return pool.acquire(timeout=5)\n"
                ),
                functions=(FunctionInfo(name="connect", start_line=3, end_line=5, complexity=2),),
            ),
            CodeFile(path="src/utils.py", language="python", content="def add(a, b):\n    return a + b\n"),
        )
    return CodebaseProject(project_id="proj-1", name="shop", files=files)


async def _wait_for(predicate: Callable[[], bool]) -> None:
    for _ in range(1000):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


async def test_successful_session_walks_every_stage() -> None:
    collaborator = FakeCollaborator(
        solutions=deque([[Solution(title="Bigger pool", description="Raise max connections")]])
    )
    orchestrator = _orchestrator(collaborator)
    events: list[ProgressEvent] = []

    session = await orchestrator.start_diagnosis(
        _issue(), _project(), progress_callback=events.append
    )

    assert session.session_id == "diag-000001"
    assert session.status is SessionStatus.COMPLETED
    assert session.stage == "completed"
    assert session.model == "fake-model"
    assert session.tokens_used == 120
    assert session.processing_time_seconds == 1.0
    assert [event.stage for event in events] == [
        ProgressStage.INITIALIZING,
        ProgressStage.ANALYZING_CODE,
        ProgressStage.OPTIMIZING_CONTEXT,
        ProgressStage.AI_ANALYSIS,
        ProgressStage.GENERATING_SOLUTIONS,
        ProgressStage.COMPLETED,
    ]
    assert [event.progress for event in events] == [10, 25, 40, 60, 80, 100]
    assert collaborator.calls == ["test_connection", "analyze", "explain_code", "suggest_solutions"]

    assert session.result is not None
    actions = session.result.suggested_actions
    assert [action.description for action in actions] == ["Raise pool size", "Raise max connections"]
    assert actions[1].category == "code_fix"
    assert session.result.code_explanations == (
        "**src/database.py** (lines 3-5):\nOpens a pooled connection.",
    )
    assert CODE_ANALYSIS_HEADER in session.result.reasoning


async def test_analysis_context_carries_selected_fragments() -> None:
    collaborator = FakeCollaborator()
    orchestrator = _orchestrator(collaborator)

    await orchestrator.start_diagnosis(_issue(), _project())

    context = collaborator.contexts[0]
    assert [fragment.file for fragment in context.fragments] == ["src/database.py"]
    assert context.token_budget == 3000
    assert "- Title: API timeout" in context.request_text


async def test_empty_title_is_rejected_before_any_collaborator_call() -> None:
    collaborator = FakeCollaborator()
    orchestrator = _orchestrator(collaborator)
    events: list[ProgressEvent] = []

    with pytest.raises(DiagnosisValidationError) as exc_info:
        await orchestrator.start_diagnosis(
            _issue(title="  "), _project(), progress_callback=events.append
        )

    assert exc_info.value.problems == ("issue title is required",)
    assert collaborator.calls == []
    (session,) = orchestrator.list_active_sessions()
    assert session.status is SessionStatus.FAILED
    assert session.error_type == "DiagnosisValidationError"
    assert [event.stage for event in events] == [ProgressStage.INITIALIZING, ProgressStage.FAILED]


async def test_all_validation_problems_are_reported_together() -> None:
    orchestrator = _orchestrator(FakeCollaborator())

    with pytest.raises(DiagnosisValidationError) as exc_info:
        await orchestrator.start_diagnosis(_issue(title="", description=""), _project(files=()))

    assert exc_info.value.problems == (
        "issue title is required",
        "issue description is required",
        "project must contain at least one code file",
    )


async def test_unreachable_collaborator_fails_before_analysis() -> None:
    collaborator = FakeCollaborator(reachable=False)
    orchestrator = _orchestrator(collaborator)

    with pytest.raises(CollaboratorUnreachableError, match="AI service is not available"):
        await orchestrator.start_diagnosis(_issue(), _project())

    assert collaborator.calls == ["test_connection"]


async def test_rate_limit_fails_session_and_keeps_retry_hint() -> None:
    collaborator = FakeCollaborator(
        outcomes=deque(
            [ProviderRateLimitError("too many requests", provider="fake", retry_after_seconds=30)]
        )
    )
    orchestrator = _orchestrator(collaborator)
    events: list[ProgressEvent] = []

    with pytest.raises(ProviderRateLimitError) as exc_info:
        await orchestrator.start_diagnosis(_issue(), _project(), progress_callback=events.append)

    assert exc_info.value.retry_after_seconds == 30.0
    session = orchestrator.get_session("diag-000001")
    assert session is not None
    assert session.status is SessionStatus.FAILED
    assert session.stage == "failed"
    assert session.error_type == "ProviderRateLimitError"
    assert session.result is None
    assert events[-1].stage is ProgressStage.FAILED
    assert events[-1].message.startswith("Diagnosis failed:")


async def test_slow_collaborator_times_out() -> None:
    collaborator = FakeCollaborator(gate=asyncio.Event())
    orchestrator = _orchestrator(collaborator, collaborator_timeout_seconds=0.05)

    with pytest.raises(ProviderTimeoutError, match="analysis timed out after 0.05 seconds"):
        await orchestrator.start_diagnosis(_issue(), _project())

    session = orchestrator.get_session("diag-000001")
    assert session is not None
    assert session.error_type == "ProviderTimeoutError"


async def test_supplementary_failures_do_not_fail_the_session() -> None:
    collaborator = FakeCollaborator(
        solutions=deque([ProviderServiceError("boom", provider="fake", http_status=500)]),
        explanations=deque([ProviderTimeoutError("slow", provider="fake")]),
    )
    orchestrator = _orchestrator(collaborator)

    session = await orchestrator.start_diagnosis(_issue(), _project())

    assert session.status is SessionStatus.COMPLETED
    assert session.result is not None
    assert [action.description for action in session.result.suggested_actions] == ["Raise pool size"]
    assert session.result.code_explanations == (
        "**src/database.py**: Code explanation unavailable",
    )


@pytest.mark.parametrize(
    ("solution_error", "explanation_error"),
    [
        (RuntimeError("boom"), None),
        (None, ConnectionError("reset")),
        (ValueError("bad payload"), KeyError("language")),
    ],
)
async def test_unexpected_supplementary_errors_are_recovered(
    solution_error: Exception | None,
    explanation_error: Exception | None,
) -> None:
    collaborator = FakeCollaborator(
        solutions=deque([solution_error] if solution_error is not None else []),
        explanations=deque([explanation_error] if explanation_error is not None else []),
    )
    orchestrator = _orchestrator(collaborator)
    events: list[ProgressEvent] = []

    session = await orchestrator.start_diagnosis(
        _issue(), _project(), progress_callback=events.append
    )

    assert session.status is SessionStatus.COMPLETED
    assert session.error_type is None
    assert session.result is not None
    assert [action.description for action in session.result.suggested_actions] == ["Raise pool size"]
    if explanation_error is not None:
        assert session.result.code_explanations == (
            "**src/database.py**: Code explanation unavailable",
        )
    assert events[-1].stage is ProgressStage.COMPLETED
    assert collaborator.calls == ["test_connection", "analyze", "explain_code", "suggest_solutions"]


async def test_options_can_skip_supplementary_stages() -> None:
    collaborator = FakeCollaborator()
    orchestrator = _orchestrator(collaborator)
    events: list[ProgressEvent] = []
    options = DiagnosisOptions(include_code_explanation=False, include_solutions=False)

    session = await orchestrator.start_diagnosis(
        _issue(), _project(), options, progress_callback=events.append
    )

    assert collaborator.calls == ["test_connection", "analyze"]
    assert ProgressStage.GENERATING_SOLUTIONS not in [event.stage for event in events]
    assert session.result is not None
    assert session.result.code_explanations == ()
    assert CODE_ANALYSIS_HEADER not in session.result.reasoning


async def test_options_override_budget_and_fragment_limit() -> None:
    collaborator = FakeCollaborator()
    orchestrator = _orchestrator(collaborator)

    await orchestrator.start_diagnosis(
        _issue(), _project(), DiagnosisOptions(token_budget=1234, max_fragments=0)
    )

    context = collaborator.contexts[0]
    assert context.token_budget == 1234
    assert context.fragments == ()
    assert "explain_code" not in collaborator.calls


async def test_priority_threshold_filters_low_probability_causes() -> None:
    collaborator = FakeCollaborator(outcomes=deque([_report(_result(0.9, 0.4, 0.1))]))
    orchestrator = _orchestrator(collaborator)

    session = await orchestrator.start_diagnosis(
        _issue(), _project(), DiagnosisOptions(priority_threshold=0.5)
    )

    assert session.result is not None
    assert [cause.probability for cause in session.result.possible_causes] == [0.9]


def test_priority_threshold_keeps_most_probable_cause() -> None:
    result = _result(0.2, 0.3, 0.1)

    filtered = apply_priority_threshold(result, 0.8)

    assert [cause.probability for cause in filtered.possible_causes] == [0.3]
    assert apply_priority_threshold(result, 0.0) is result
    assert apply_priority_threshold(result, 0.05) is result


async def test_cancel_session_abandons_in_flight_analysis() -> None:
    collaborator = FakeCollaborator(gate=asyncio.Event())
    bus = ProgressBus()
    orchestrator = _orchestrator(collaborator, bus=bus)

    task = asyncio.create_task(orchestrator.start_diagnosis(_issue(), _project()))
    await _wait_for(lambda: "analyze" in collaborator.calls)

    assert orchestrator.cancel_session("diag-000001") is True
    with pytest.raises(SessionCancelledError):
        await task

    session = orchestrator.get_session("diag-000001")
    assert session is not None
    assert session.status is SessionStatus.FAILED
    assert session.error_type == "SessionCancelledError"
    assert session.error_message == "cancelled by caller"
    assert orchestrator.cancel_session("diag-000001") is False
    assert orchestrator.cancel_session("diag-unknown") is False

    failed = [event for event in bus.replay(session_id="diag-000001") if event.stage is ProgressStage.FAILED]
    assert [event.message for event in failed] == ["Diagnosis cancelled"]


async def test_cancelling_caller_task_fails_the_session() -> None:
    collaborator = FakeCollaborator(gate=asyncio.Event())
    orchestrator = _orchestrator(collaborator)

    task = asyncio.create_task(orchestrator.start_diagnosis(_issue(), _project()))
    await _wait_for(lambda: "analyze" in collaborator.calls)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    session = orchestrator.get_session("diag-000001")
    assert session is not None
    assert session.status is SessionStatus.FAILED
    assert session.error_type == "SessionCancelledError"


async def test_statistics_count_retained_sessions() -> None:
    collaborator = FakeCollaborator(
        outcomes=deque([_report(), ProviderRateLimitError("busy", provider="fake"), _report()])
    )
    orchestrator = _orchestrator(collaborator)

    await orchestrator.start_diagnosis(_issue(), _project())
    with pytest.raises(ProviderRateLimitError):
        await orchestrator.start_diagnosis(_issue(), _project())
    await orchestrator.start_diagnosis(_issue(), _project())

    stats = orchestrator.statistics()
    assert stats.to_dict() == {
        "active_sessions": 0,
        "completed_sessions": 2,
        "failed_sessions": 1,
        "average_processing_time_seconds": 1.0,
    }
    assert [item.status for item in orchestrator.list_active_sessions()] == [
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.COMPLETED,
    ]


async def test_get_session_returns_detached_snapshots() -> None:
    orchestrator = _orchestrator(FakeCollaborator())
    session = await orchestrator.start_diagnosis(_issue(), _project())

    session.stage = "tampered"

    stored = orchestrator.get_session(session.session_id)
    assert stored is not None
    assert stored.stage == "completed"
    assert orchestrator.get_session("diag-missing") is None


async def test_terminal_sessions_expire_after_retention() -> None:
    now = [100.0]
    registry = SessionRegistry(retention_seconds=10, clock=lambda: now[0])
    orchestrator = _orchestrator(FakeCollaborator(), registry=registry)

    session = await orchestrator.start_diagnosis(_issue(), _project())
    now[0] += 9.5
    assert orchestrator.get_session(session.session_id) is not None

    now[0] += 1.0
    assert orchestrator.get_session(session.session_id) is None
    assert orchestrator.statistics().completed_sessions == 0


async def test_concurrent_sessions_are_capped() -> None:
    gate = asyncio.Event()
    collaborator = FakeCollaborator(gate=gate)
    orchestrator = _orchestrator(collaborator, max_concurrent_sessions=1)

    first = asyncio.create_task(orchestrator.start_diagnosis(_issue(), _project()))
    second = asyncio.create_task(orchestrator.start_diagnosis(_issue(), _project()))
    await _wait_for(lambda: "analyze" in collaborator.calls)
    for _ in range(20):
        await asyncio.sleep(0)

    assert collaborator.calls.count("analyze") == 1
    assert orchestrator.statistics().active_sessions == 2

    gate.set()
    results = await asyncio.gather(first, second)

    assert [item.status for item in results] == [SessionStatus.COMPLETED] * 2
    assert collaborator.calls.count("analyze") == 2


async def test_failing_progress_callback_does_not_break_session() -> None:
    bus = ProgressBus()
    orchestrator = _orchestrator(FakeCollaborator(), bus=bus)

    def explode(event: ProgressEvent) -> None:
        raise RuntimeError(f"cannot render {event.stage.value}")

    session = await orchestrator.start_diagnosis(_issue(), _project(), progress_callback=explode)

    assert session.status is SessionStatus.COMPLETED
    errors = bus.dispatch_errors()
    assert errors
    assert {error.target for error in errors} == {"explode"}


async def test_hung_async_progress_callback_does_not_stall_the_session() -> None:
    bus = ProgressBus()
    orchestrator = _orchestrator(FakeCollaborator(), bus=bus)
    never = asyncio.Event()
    started: list[ProgressStage] = []

    async def stuck(event: ProgressEvent) -> None:
        started.append(event.stage)
        await never.wait()

    session = await asyncio.wait_for(
        orchestrator.start_diagnosis(_issue(), _project(), progress_callback=stuck),
        timeout=1.0,
    )
    assert session.status is SessionStatus.COMPLETED

    await asyncio.wait_for(orchestrator.shutdown(timeout_seconds=0.05), timeout=1.0)

    assert started == [
        ProgressStage.INITIALIZING,
        ProgressStage.ANALYZING_CODE,
        ProgressStage.OPTIMIZING_CONTEXT,
        ProgressStage.AI_ANALYSIS,
        ProgressStage.GENERATING_SOLUTIONS,
        ProgressStage.COMPLETED,
    ]
    assert bus.dispatch_errors() == ()


async def test_shutdown_reports_async_callback_failures() -> None:
    bus = ProgressBus()
    orchestrator = _orchestrator(FakeCollaborator(), bus=bus)

    async def broken(event: ProgressEvent) -> None:
        raise LookupError(event.stage.value)

    session = await orchestrator.start_diagnosis(_issue(), _project(), progress_callback=broken)
    await orchestrator.shutdown()

    assert session.status is SessionStatus.COMPLETED
    errors = bus.dispatch_errors()
    assert len(errors) == 6
    assert {error.error_type for error in errors} == {"LookupError"}


async def test_cancel_session_from_worker_thread() -> None:
    collaborator = FakeCollaborator(gate=asyncio.Event())
    orchestrator = _orchestrator(collaborator)

    task = asyncio.create_task(orchestrator.start_diagnosis(_issue(), _project()))
    await _wait_for(lambda: "analyze" in collaborator.calls)

    assert await asyncio.to_thread(orchestrator.cancel_session, "diag-000001") is True
    with pytest.raises(SessionCancelledError):
        await asyncio.wait_for(task, timeout=1.0)

    session = orchestrator.get_session("diag-000001")
    assert session is not None
    assert session.status is SessionStatus.FAILED
    assert session.error_message == "cancelled by caller"


async def test_connection_check_never_raises() -> None:
    assert await _orchestrator(FakeCollaborator()).test_connection() is True
    assert await _orchestrator(FakeCollaborator(reachable=False)).test_connection() is False


def test_settings_from_config_and_validation() -> None:
    settings = OrchestratorSettings.from_config(
        {
            "analysis": {"token_budget": 2000, "max_fragments": 4},
            "diagnosis": {"include_solutions": False, "priority_threshold": 0.25},
        }
    )

    assert settings.token_budget == 2000
    assert settings.default_options() == DiagnosisOptions(
        include_code_explanation=True,
        include_solutions=False,
        max_fragments=4,
        priority_threshold=0.25,
        token_budget=2000,
    )
    with pytest.raises(ValueError, match="token_budget"):
        OrchestratorSettings(token_budget=0)
    with pytest.raises(ValueError, match="max_concurrent_sessions"):
        OrchestratorSettings(max_concurrent_sessions=0)


def _assert_completes(
    title: str,
    description: str,
    severity: Severity,
    contents: list[str],
    probabilities: list[float],
    confidence: float,
) -> None:
    files = tuple(
        CodeFile(path=f"src/module_{index}.py", language="python", content=content)
        for index, content in enumerate(contents)
    )
    issue = IssueReport(issue_id="issue-p", title=title, description=description, severity=severity)
    collaborator = FakeCollaborator(
        outcomes=deque([_report(_result(*probabilities, confidence=confidence))])
    )
    orchestrator = _orchestrator(collaborator)

    session = asyncio.run(
        orchestrator.start_diagnosis(issue, CodebaseProject(project_id="proj-p", name="p", files=files))
    )

    assert session.status is SessionStatus.COMPLETED
    assert session.result is not None
    assert session.result.possible_causes
    assert session.result.suggested_actions
    assert 0.0 <= session.result.confidence <= 1.0


if HYPOTHESIS_AVAILABLE:
    _words = st.text(alphabet="abcdefghijklmnopqrstuvwxyz _.()", min_size=1, max_size=60).filter(
        lambda value: bool(value.strip())
    )

    @settings(max_examples=100, derandomize=True, deadline=None)
    @seed(20260213)
    @given(
        title=_words,
        description=_words,
        severity=st.sampled_from(list(Severity)),
        contents=st.lists(st.text(max_size=200), min_size=1, max_size=4),
        probabilities=st.lists(
            st.floats(min_value=0.0, max_value=1.0, allow_nan=False), min_size=1, max_size=4
        ),
        confidence=st.floats(min_value=0.0, max_value=1.0, allow_nan=False),
    )
    def test_property_valid_inputs_complete(
        title: str,
        description: str,
        severity: Severity,
        contents: list[str],
        probabilities: list[float],
        confidence: float,
    ) -> None:
        _assert_completes(title, description, severity, contents, probabilities, confidence)

else:

    def test_seeded_valid_inputs_complete() -> None:
        rng = Random(20260213)
        words = ["api", "timeout", "database", "login", "cache", "queue", "users"]
        for _ in range(100):
            _assert_completes(
                " ".join(rng.choice(words) for _ in range(rng.randint(1, 4))),
                " ".join(rng.choice(words) for _ in range(rng.randint(1, 8))),
                rng.choice(list(Severity)),
                ["\n".join(rng.choice(words) for _ in range(rng.randint(0, 10)))],
                [rng.random() for _ in range(rng.randint(1, 3))],
                rng.random(),
            )
