"""Diagnosis orchestrator: drives one session through its stage machine.

Stages run strictly in order for a session::

    initializing -> analyzing_code -> optimizing_context -> ai_analysis
        -> [generating_solutions] -> completed

Any fatal error moves the session to ``failed`` and is re-raised to the caller.
Solutions and code explanations are supplementary; their failures are logged
and skipped. Cancellation is cooperative: ``cancel_session`` fails the session
immediately, fires its token so an in-flight collaborator call is abandoned, and
every later stage boundary observes it. Progress events are published without
awaiting async subscribers; :meth:`DiagnosisOrchestrator.shutdown` drains them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Final, TypeVar

from incident_diagnosis.analysis.prompt_assembler import PromptAssembler
from incident_diagnosis.analysis.scoring import KeywordRelevanceScorer, ScoringWeights
from incident_diagnosis.analysis.selector import ContextSelector
from incident_diagnosis.analysis.summary import summarize_project
from incident_diagnosis.analysis.tokens import CharRatioTokenEstimator
from incident_diagnosis.constants import (
    DEFAULT_CHARS_PER_TOKEN,
    DEFAULT_COLLABORATOR_TIMEOUT_SECONDS,
    DEFAULT_FALLBACK_MAX_LINES,
    DEFAULT_FORMATTING_RESERVE_TOKENS,
    DEFAULT_MAX_CODE_EXPLANATIONS,
    DEFAULT_MAX_CONCURRENT_SESSIONS,
    DEFAULT_MAX_FRAGMENTS,
    DEFAULT_MIN_TRUNCATION_TOKENS,
    DEFAULT_PROGRESS_DRAIN_SECONDS,
    DEFAULT_RESPONSE_RESERVE_TOKENS,
    DEFAULT_SESSION_RETENTION_SECONDS,
    DEFAULT_TOKEN_BUDGET,
)
from incident_diagnosis.domain.errors import (
    CollaboratorUnreachableError,
    DiagnosisValidationError,
    SessionCancelledError,
)
from incident_diagnosis.domain.ids import (
    EVENT_ID_PREFIX,
    SESSION_ID_PREFIX,
    IdGenerator,
    UlidIdGenerator,
)
from incident_diagnosis.domain.models import (
    AnalysisContext,
    CodebaseProject,
    CodeFragment,
    DiagnosisOptions,
    DiagnosisResult,
    DiagnosisSession,
    IssueReport,
    SessionStatus,
    Severity,
)
from incident_diagnosis.observability.logging import correlation_scope
from incident_diagnosis.orchestration.progress import (
    ProgressBus,
    ProgressCallback,
    ProgressEvent,
    ProgressStage,
)
from incident_diagnosis.orchestration.registry import SessionRegistry
from incident_diagnosis.providers.base import (
    AnalysisCollaborator,
    ProviderError,
    ProviderTimeoutError,
)
from incident_diagnosis.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    run_with_timeout,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]

CODE_ANALYSIS_HEADER: Final[str] = "\n\n## Code Analysis:\n"
CANCELLED_MESSAGE: Final[str] = "cancelled by caller"

_STAGE_MESSAGES: Final[dict[ProgressStage, str]] = {
    ProgressStage.INITIALIZING: "Initializing diagnosis...",
    ProgressStage.ANALYZING_CODE: "Analyzing code structure...",
    ProgressStage.OPTIMIZING_CONTEXT: "Selecting relevant code...",
    ProgressStage.AI_ANALYSIS: "Analyzing issue with AI...",
    ProgressStage.GENERATING_SOLUTIONS: "Generating solutions...",
    ProgressStage.COMPLETED: "Diagnosis completed successfully",
}


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Session-level knobs from the ``[diagnosis]`` and ``[analysis]`` sections."""

    token_budget: int = DEFAULT_TOKEN_BUDGET
    max_fragments: int = DEFAULT_MAX_FRAGMENTS
    include_solutions: bool = True
    include_code_explanation: bool = True
    max_code_explanations: int = DEFAULT_MAX_CODE_EXPLANATIONS
    priority_threshold: float = 0.0
    collaborator_timeout_seconds: float = DEFAULT_COLLABORATOR_TIMEOUT_SECONDS
    max_concurrent_sessions: int = DEFAULT_MAX_CONCURRENT_SESSIONS

    def __post_init__(self) -> None:
        if self.token_budget <= 0:
            raise ValueError("token_budget must be > 0")
        if self.max_fragments < 0:
            raise ValueError("max_fragments must be >= 0")
        if self.max_code_explanations < 0:
            raise ValueError("max_code_explanations must be >= 0")
        if not 0.0 <= self.priority_threshold <= 1.0:
            raise ValueError("priority_threshold must be within [0, 1]")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("collaborator_timeout_seconds must be > 0")
        if self.max_concurrent_sessions <= 0:
            raise ValueError("max_concurrent_sessions must be > 0")

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> OrchestratorSettings:
        analysis = _section(config, "analysis")
        diagnosis = _section(config, "diagnosis")
        return cls(
            token_budget=int(analysis.get("token_budget", DEFAULT_TOKEN_BUDGET)),  # type: ignore[call-overload]
            max_fragments=int(analysis.get("max_fragments", DEFAULT_MAX_FRAGMENTS)),  # type: ignore[call-overload]
            include_solutions=bool(diagnosis.get("include_solutions", True)),
            include_code_explanation=bool(diagnosis.get("include_code_explanation", True)),
            max_code_explanations=int(
                diagnosis.get("max_code_explanations", DEFAULT_MAX_CODE_EXPLANATIONS)  # type: ignore[call-overload]
            ),
            priority_threshold=float(diagnosis.get("priority_threshold", 0.0)),  # type: ignore[arg-type]
            collaborator_timeout_seconds=float(
                diagnosis.get(  # type: ignore[arg-type]
                    "collaborator_timeout_seconds", DEFAULT_COLLABORATOR_TIMEOUT_SECONDS
                )
            ),
            max_concurrent_sessions=int(
                diagnosis.get("max_concurrent_sessions", DEFAULT_MAX_CONCURRENT_SESSIONS)  # type: ignore[call-overload]
            ),
        )

    def default_options(self) -> DiagnosisOptions:
        return DiagnosisOptions(
            include_code_explanation=self.include_code_explanation,
            include_solutions=self.include_solutions,
            max_fragments=self.max_fragments,
            priority_threshold=self.priority_threshold,
            token_budget=self.token_budget,
        )


@dataclass(frozen=True, slots=True)
class DiagnosisStatistics:
    """Counts over the sessions currently retained by the registry."""

    active_sessions: int
    completed_sessions: int
    failed_sessions: int
    average_processing_time_seconds: float

    def to_dict(self) -> dict[str, object]:
        return {
            "active_sessions": self.active_sessions,
            "completed_sessions": self.completed_sessions,
            "failed_sessions": self.failed_sessions,
            "average_processing_time_seconds": self.average_processing_time_seconds,
        }


class DiagnosisOrchestrator:
    """Runs diagnosis sessions against an :class:`AnalysisCollaborator`."""

    def __init__(
        self,
        collaborator: AnalysisCollaborator,
        *,
        selector: ContextSelector | None = None,
        assembler: PromptAssembler | None = None,
        registry: SessionRegistry | None = None,
        progress_bus: ProgressBus | None = None,
        id_generator: IdGenerator | None = None,
        settings: OrchestratorSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._collaborator = collaborator
        self._settings = settings if settings is not None else OrchestratorSettings()
        self._selector = (
            selector
            if selector is not None
            else ContextSelector(max_fragments=self._settings.max_fragments)
        )
        self._assembler = assembler if assembler is not None else PromptAssembler()
        self._registry = registry if registry is not None else SessionRegistry()
        self._bus = progress_bus if progress_bus is not None else ProgressBus()
        self._ids = id_generator if id_generator is not None else UlidIdGenerator()
        self._clock = clock if clock is not None else _utc_now
        self._semaphore = BoundedSemaphore(self._settings.max_concurrent_sessions)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        collaborator: AnalysisCollaborator,
        *,
        progress_bus: ProgressBus | None = None,
        id_generator: IdGenerator | None = None,
    ) -> DiagnosisOrchestrator:
        """Wire estimator, scorer, selector, assembler and registry from a resolved config."""

        diagnosis = _section(config, "diagnosis")
        settings = OrchestratorSettings.from_config(config)
        selector, assembler = build_analysis_components(config, max_fragments=settings.max_fragments)
        registry = SessionRegistry(
            retention_seconds=float(
                diagnosis.get("session_retention_seconds", DEFAULT_SESSION_RETENTION_SECONDS)  # type: ignore[arg-type]
            )
        )
        return cls(
            collaborator,
            selector=selector,
            assembler=assembler,
            registry=registry,
            progress_bus=progress_bus,
            id_generator=id_generator,
            settings=settings,
        )

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    @property
    def progress_bus(self) -> ProgressBus:
        return self._bus

    @property
    def assembler(self) -> PromptAssembler:
        return self._assembler

    @property
    def selector(self) -> ContextSelector:
        return self._selector

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_diagnosis(
        self,
        issue: IssueReport,
        project: CodebaseProject,
        options: DiagnosisOptions | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> DiagnosisSession:
        """Run a full diagnosis and return the completed session.

        Fatal errors are re-raised after the session has been marked ``failed``;
        the session stays queryable through :meth:`get_session` for the retention
        window. A cancelled session raises :class:`SessionCancelledError`.
        """

        resolved = self._resolve_options(options)
        session = DiagnosisSession(
            session_id=self._ids.new_id(SESSION_ID_PREFIX),
            issue_id=issue.issue_id,
            project_id=project.project_id,
            start_time=self._clock(),
        )
        token = CancellationToken()
        self._registry.register(session, token)
        subscription = (
            self._bus.subscribe(progress_callback, session_id=session.session_id)
            if progress_callback is not None
            else None
        )

        with correlation_scope(
            session_id=session.session_id,
            issue_id=issue.issue_id,
            project_id=project.project_id,
        ):
            try:
                async with self._semaphore.permit():
                    await self._run_stages(session, token, issue, project, resolved)
            except asyncio.CancelledError:
                # The caller's task was cancelled; fail the session and keep unwinding.
                event = self._record_failure(session, SessionCancelledError(session.session_id))
                if event is not None:
                    self._publish(event)
                raise
            except Exception as exc:
                _add_session_note(exc, session.session_id)
                event = self._record_failure(session, exc)
                if event is not None:
                    self._publish(event)
                raise
            finally:
                if subscription is not None:
                    self._bus.unsubscribe(subscription)

        return session.snapshot()

    def get_session(self, session_id: str) -> DiagnosisSession | None:
        session = self._registry.get(session_id)
        return session.snapshot() if session is not None else None

    def list_active_sessions(self) -> list[DiagnosisSession]:
        """Every retained session: running ones plus terminal ones still within retention."""
        return [session.snapshot() for session in self._registry.list_sessions()]

    def cancel_session(self, session_id: str) -> bool:
        """Fail a running session and signal its in-flight work to stop.

        Safe to call from any thread; the token is fired on the session's own
        event loop. Returns ``False`` for unknown sessions and sessions already
        terminal.
        """

        session = self._registry.get(session_id)
        token = self._registry.token_for(session_id)
        if session is None or token is None or session.status.is_terminal:
            return False

        self._finish(
            session,
            SessionStatus.FAILED,
            error_type=SessionCancelledError.__name__,
            error_message=CANCELLED_MESSAGE,
        )
        token.cancel(CANCELLED_MESSAGE)
        logger.info("diagnosis session cancelled", extra={"session_id": session_id})
        self._bus.publish(self._event(session, ProgressStage.FAILED, "Diagnosis cancelled"))
        return True

    async def test_connection(self) -> bool:
        try:
            return bool(
                await run_with_timeout(
                    self._collaborator.test_connection(),
                    self._settings.collaborator_timeout_seconds,
                    label="connection test",
                )
            )
        except (ProviderError, TimeoutError) as exc:
            logger.warning("analysis collaborator connection test failed: %s", exc)
            return False

    def statistics(self) -> DiagnosisStatistics:
        sessions = self._registry.list_sessions()
        completed = [item for item in sessions if item.status is SessionStatus.COMPLETED]
        durations = [
            seconds
            for seconds in (item.processing_time_seconds for item in completed)
            if seconds is not None
        ]
        average = sum(durations) / len(durations) if durations else 0.0
        return DiagnosisStatistics(
            active_sessions=sum(1 for item in sessions if item.status is SessionStatus.RUNNING),
            completed_sessions=len(completed),
            failed_sessions=sum(1 for item in sessions if item.status is SessionStatus.FAILED),
            average_processing_time_seconds=average,
        )

    async def shutdown(
        self, *, timeout_seconds: float | None = DEFAULT_PROGRESS_DRAIN_SECONDS
    ) -> None:
        """Let in-flight async progress callbacks finish; stragglers are cancelled."""

        before = len(self._bus.dispatch_errors())
        errors = await self._bus.drain_async(timeout_seconds=timeout_seconds)
        for error in errors[before:]:
            logger.warning(
                "progress callback %s failed: %s: %s",
                error.target,
                error.error_type,
                error.message,
            )

    # ------------------------------------------------------------------
    # Stage machine
    # ------------------------------------------------------------------

    async def _run_stages(
        self,
        session: DiagnosisSession,
        token: CancellationToken,
        issue: IssueReport,
        project: CodebaseProject,
        options: DiagnosisOptions,
    ) -> None:
        await self._enter(session, token, ProgressStage.INITIALIZING)
        validate_inputs(issue, project)
        await self._ensure_reachable(session, token)

        await self._enter(session, token, ProgressStage.ANALYZING_CODE)
        summary = await asyncio.to_thread(summarize_project, project)

        await self._enter(session, token, ProgressStage.OPTIMIZING_CONTEXT)
        fragments = await asyncio.to_thread(
            self._selector.select_relevant_code,
            issue,
            project,
            max_fragments=options.max_fragments,
        )
        logger.debug("selected %d fragment(s)", len(fragments))

        await self._enter(session, token, ProgressStage.AI_ANALYSIS)
        budget = options.token_budget if options.token_budget is not None else self._settings.token_budget
        context = self._assembler.build_context(issue, fragments, summary, budget)
        if context.degraded:
            logger.warning(
                "issue narrative exceeds the token budget; code fragments omitted",
                extra={"token_budget": budget},
            )
        report = await self._call(
            self._collaborator.analyze(context), session, token, label="analysis"
        )
        session.model = report.model
        session.tokens_used += report.tokens_used
        result = apply_priority_threshold(report.result, options.priority_threshold)

        explain = options.include_code_explanation and bool(context.fragments)
        if options.include_solutions or explain:
            await self._enter(session, token, ProgressStage.GENERATING_SOLUTIONS)
            if explain:
                result = await self._explain_fragments(result, context, session, token)
            if options.include_solutions:
                result = await self._append_solutions(result, session, token)

        self._check_cancelled(session, token)
        session.result = result
        self._finish(session, SessionStatus.COMPLETED)
        logger.info(
            "diagnosis completed",
            extra={
                "model": session.model,
                "tokens_used": session.tokens_used,
                "confidence": result.confidence,
                "causes": len(result.possible_causes),
            },
        )
        self._publish(self._event(session, ProgressStage.COMPLETED))

    async def _enter(
        self,
        session: DiagnosisSession,
        token: CancellationToken,
        stage: ProgressStage,
    ) -> None:
        self._check_cancelled(session, token)
        session.stage = stage.value
        logger.info("diagnosis stage %s", stage.value, extra={"progress": stage.percent})
        self._publish(self._event(session, stage))

    async def _ensure_reachable(self, session: DiagnosisSession, token: CancellationToken) -> None:
        try:
            reachable = await self._call(
                self._collaborator.test_connection(), session, token, label="connection test"
            )
        except ProviderError as exc:
            raise CollaboratorUnreachableError(f"AI service is not available: {exc}") from exc
        if not reachable:
            raise CollaboratorUnreachableError("AI service is not available")

    async def _explain_fragments(
        self,
        result: DiagnosisResult,
        context: AnalysisContext,
        session: DiagnosisSession,
        token: CancellationToken,
    ) -> DiagnosisResult:
        explanations: list[str] = []
        for fragment in context.fragments[: self._settings.max_code_explanations]:
            try:
                text = await self._call(
                    self._collaborator.explain_code(fragment.content, fragment.language),
                    session,
                    token,
                    label="code explanation",
                )
            except SessionCancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "code explanation failed for %s: %s",
                    fragment.file,
                    exc,
                    extra=_failure_fields(exc),
                )
                explanations.append(f"**{fragment.file}**: Code explanation unavailable")
                continue
            explanations.append(_explanation_entry(fragment, text))

        if not explanations:
            return result
        return replace(
            result,
            reasoning=result.reasoning + CODE_ANALYSIS_HEADER + "\n\n".join(explanations),
            code_explanations=result.code_explanations + tuple(explanations),
        )

    async def _append_solutions(
        self,
        result: DiagnosisResult,
        session: DiagnosisSession,
        token: CancellationToken,
    ) -> DiagnosisResult:
        try:
            solutions = await self._call(
                self._collaborator.suggest_solutions(result),
                session,
                token,
                label="solution generation",
            )
        except SessionCancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "solution generation failed, keeping analysis actions: %s",
                exc,
                extra=_failure_fields(exc),
            )
            return result
        if not solutions:
            return result
        return replace(
            result,
            suggested_actions=result.suggested_actions
            + tuple(solution.to_action() for solution in solutions),
        )

    async def _call(
        self,
        awaitable: Awaitable[T],
        session: DiagnosisSession,
        token: CancellationToken,
        *,
        label: str,
    ) -> T:
        timeout = self._settings.collaborator_timeout_seconds
        try:
            return await run_with_timeout(awaitable, timeout, token, label=label)
        except TimeoutError as exc:
            raise ProviderTimeoutError(
                f"{label} timed out after {timeout} seconds", provider="collaborator"
            ) from exc
        except asyncio.CancelledError:
            if token.is_cancelled:
                raise SessionCancelledError(session.session_id) from None
            raise

    def _check_cancelled(self, session: DiagnosisSession, token: CancellationToken) -> None:
        if token.is_cancelled or session.status.is_terminal:
            raise SessionCancelledError(session.session_id)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _resolve_options(self, options: DiagnosisOptions | None) -> DiagnosisOptions:
        if options is None:
            return self._settings.default_options()
        return replace(
            options,
            max_fragments=(
                options.max_fragments
                if options.max_fragments is not None
                else self._settings.max_fragments
            ),
            token_budget=(
                options.token_budget
                if options.token_budget is not None
                else self._settings.token_budget
            ),
        )

    def _record_failure(self, session: DiagnosisSession, exc: BaseException) -> ProgressEvent | None:
        """Fail a still-running session; ``None`` when it was already terminal."""

        if session.status.is_terminal:
            return None
        self._finish(
            session,
            SessionStatus.FAILED,
            error_type=exc.__class__.__name__,
            error_message=str(exc),
        )
        if isinstance(exc, SessionCancelledError):
            logger.info("diagnosis session cancelled")
        elif isinstance(exc, DiagnosisValidationError):
            logger.warning("diagnosis rejected: %s", exc)
        else:
            logger.error(
                "diagnosis failed: %s",
                exc,
                extra={"error_type": exc.__class__.__name__, "stage": session.stage},
            )
        return self._event(session, ProgressStage.FAILED, f"Diagnosis failed: {exc}")

    def _finish(
        self,
        session: DiagnosisSession,
        status: SessionStatus,
        *,
        error_type: str | None = None,
        error_message: str | None = None,
    ) -> None:
        session.status = status
        session.end_time = self._clock()
        session.stage = (
            ProgressStage.COMPLETED.value
            if status is SessionStatus.COMPLETED
            else ProgressStage.FAILED.value
        )
        session.error_type = error_type
        session.error_message = error_message
        self._registry.mark_terminal(session.session_id)

    def _event(
        self,
        session: DiagnosisSession,
        stage: ProgressStage,
        message: str | None = None,
    ) -> ProgressEvent:
        return ProgressEvent(
            event_id=self._ids.new_id(EVENT_ID_PREFIX),
            session_id=session.session_id,
            stage=stage,
            message=message if message is not None else _STAGE_MESSAGES[stage],
        )

    def _publish(self, event: ProgressEvent) -> None:
        errors = self._bus.publish(event)
        for error in errors:
            logger.warning(
                "progress callback %s failed: %s: %s",
                error.target,
                error.error_type,
                error.message,
            )


def build_analysis_components(
    config: Mapping[str, object],
    *,
    max_fragments: int | None = None,
) -> tuple[ContextSelector, PromptAssembler]:
    """Selector and assembler configured from the ``analysis`` and ``scoring`` sections."""

    analysis = _section(config, "analysis")
    estimator = CharRatioTokenEstimator(
        chars_per_token=int(analysis.get("chars_per_token", DEFAULT_CHARS_PER_TOKEN)),  # type: ignore[call-overload]
    )
    if max_fragments is None:
        max_fragments = int(analysis.get("max_fragments", DEFAULT_MAX_FRAGMENTS))  # type: ignore[call-overload]
    selector = ContextSelector(
        KeywordRelevanceScorer(ScoringWeights.from_mapping(_section(config, "scoring"))),
        max_fragments=max_fragments,
        fallback_max_lines=int(
            analysis.get("fallback_max_lines", DEFAULT_FALLBACK_MAX_LINES)  # type: ignore[call-overload]
        ),
    )
    assembler = PromptAssembler(
        estimator,
        response_reserve_tokens=int(
            analysis.get("response_reserve_tokens", DEFAULT_RESPONSE_RESERVE_TOKENS)  # type: ignore[call-overload]
        ),
        min_truncation_tokens=int(
            analysis.get("min_truncation_tokens", DEFAULT_MIN_TRUNCATION_TOKENS)  # type: ignore[call-overload]
        ),
        formatting_reserve_tokens=int(
            analysis.get("formatting_reserve_tokens", DEFAULT_FORMATTING_RESERVE_TOKENS)  # type: ignore[call-overload]
        ),
    )
    return selector, assembler


def validate_inputs(issue: IssueReport, project: CodebaseProject) -> None:
    """Raise :class:`DiagnosisValidationError` listing every rule the inputs break."""

    problems: list[str] = []
    if not issue.title.strip():
        problems.append("issue title is required")
    if not issue.description.strip():
        problems.append("issue description is required")
    if not isinstance(issue.severity, Severity):
        problems.append(f"issue severity is invalid: {issue.severity!r}")
    if not project.files:
        problems.append("project must contain at least one code file")
    if problems:
        raise DiagnosisValidationError(problems)


def apply_priority_threshold(result: DiagnosisResult, threshold: float) -> DiagnosisResult:
    """Drop causes below ``threshold`` while always keeping the most probable one."""

    if threshold <= 0.0 or not result.possible_causes:
        return result
    kept = tuple(cause for cause in result.possible_causes if cause.probability >= threshold)
    if not kept:
        kept = (max(result.possible_causes, key=lambda cause: cause.probability),)
    if len(kept) == len(result.possible_causes):
        return result
    return replace(result, possible_causes=kept)


def _explanation_entry(fragment: CodeFragment, explanation: str) -> str:
    return f"**{fragment.file}** (lines {fragment.start_line}-{fragment.end_line}):\n{explanation}"


def _failure_fields(exc: Exception) -> dict[str, object]:
    fields: dict[str, object] = {"error_type": exc.__class__.__name__}
    if isinstance(exc, ProviderError):
        fields["error_code"] = exc.code
    return fields


def _add_session_note(exc: Exception, session_id: str) -> None:
    add_note = getattr(exc, "add_note", None)
    if callable(add_note):
        add_note(f"diagnosis session: {session_id}")


def _section(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    return value if isinstance(value, Mapping) else {}


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "CODE_ANALYSIS_HEADER",
    "DiagnosisOrchestrator",
    "DiagnosisStatistics",
    "OrchestratorSettings",
    "apply_priority_threshold",
    "build_analysis_components",
    "validate_inputs",
]
