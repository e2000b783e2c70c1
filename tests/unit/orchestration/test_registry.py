"""
incident-diagnosis: unit tests for the expiring session registry

File: tests/unit/orchestration/test_registry.py

Purpose
- Validate registration, retention after terminal states, and lazy eviction.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from incident_diagnosis.domain.models import DiagnosisSession, SessionStatus
from incident_diagnosis.orchestration.registry import SessionRegistry
from incident_diagnosis.utils.concurrency import CancellationToken


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _session(session_id: str) -> DiagnosisSession:
    return DiagnosisSession(
        session_id=session_id,
        issue_id="issue-1",
        project_id="proj-1",
        start_time=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_register_and_lookup() -> None:
    registry = SessionRegistry(clock=FakeClock())
    token = CancellationToken()
    session = _session("diag-1")

    registry.register(session, token)

    assert registry.get("diag-1") is session
    assert registry.token_for("diag-1") is token
    assert registry.get("diag-2") is None
    assert registry.token_for("diag-2") is None
    assert len(registry) == 1


def test_duplicate_registration_is_rejected() -> None:
    registry = SessionRegistry(clock=FakeClock())
    registry.register(_session("diag-1"), CancellationToken())

    with pytest.raises(ValueError, match="already registered"):
        registry.register(_session("diag-1"), CancellationToken())


def test_running_sessions_never_expire() -> None:
    clock = FakeClock()
    registry = SessionRegistry(retention_seconds=5, clock=clock)
    registry.register(_session("diag-1"), CancellationToken())

    clock.advance(10_000)

    assert registry.get("diag-1") is not None
    assert [item.session_id for item in registry.list_running()] == ["diag-1"]


def test_terminal_sessions_expire_after_retention() -> None:
    clock = FakeClock()
    registry = SessionRegistry(retention_seconds=5, clock=clock)
    for session_id in ("diag-1", "diag-2", "diag-3"):
        registry.register(_session(session_id), CancellationToken())

    first = registry.get("diag-1")
    assert first is not None
    first.status = SessionStatus.COMPLETED
    registry.mark_terminal("diag-1")
    clock.advance(2)
    registry.mark_terminal("diag-2")

    clock.advance(3)
    assert [item.session_id for item in registry.list_sessions()] == ["diag-2", "diag-3"]

    clock.advance(2)
    assert registry.sweep() == 1
    assert [item.session_id for item in registry.list_sessions()] == ["diag-3"]


def test_mark_terminal_is_idempotent_and_ignores_unknown_ids() -> None:
    clock = FakeClock()
    registry = SessionRegistry(retention_seconds=5, clock=clock)
    registry.register(_session("diag-1"), CancellationToken())

    registry.mark_terminal("diag-1")
    clock.advance(4)
    registry.mark_terminal("diag-1")
    registry.mark_terminal("diag-unknown")
    clock.advance(1)

    assert registry.get("diag-1") is None


def test_removed_sessions_leave_stale_heap_entries_harmless() -> None:
    clock = FakeClock()
    registry = SessionRegistry(retention_seconds=1, clock=clock)
    registry.register(_session("diag-1"), CancellationToken())
    registry.mark_terminal("diag-1")

    assert registry.remove("diag-1") is True
    assert registry.remove("diag-1") is False
    registry.register(_session("diag-1"), CancellationToken())
    clock.advance(5)

    assert registry.sweep() == 0
    assert registry.get("diag-1") is not None


def test_zero_retention_evicts_on_next_access() -> None:
    registry = SessionRegistry(retention_seconds=0, clock=FakeClock())
    registry.register(_session("diag-1"), CancellationToken())

    registry.mark_terminal("diag-1")

    assert registry.get("diag-1") is None


def test_negative_retention_is_rejected() -> None:
    with pytest.raises(ValueError, match="retention_seconds"):
        SessionRegistry(retention_seconds=-1)
