"""Expiring in-memory session registry.

Sessions live in a dict keyed by id. Terminal sessions are additionally indexed
in a ``heapq`` of ``(expires_at, sequence, session_id)`` entries; expired
entries are swept lazily on every access and on explicit :meth:`sweep` calls.
Heap entries whose session was re-registered or removed are skipped, so the
heap never needs in-place updates.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from incident_diagnosis.constants import DEFAULT_SESSION_RETENTION_SECONDS
from incident_diagnosis.domain.models import DiagnosisSession, SessionStatus
from incident_diagnosis.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class _Entry:
    session: DiagnosisSession
    token: CancellationToken
    expires_at: float | None = None


class SessionRegistry:
    """Thread-safe session store with a retention window after terminal states."""

    def __init__(
        self,
        *,
        retention_seconds: float = DEFAULT_SESSION_RETENTION_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        if retention_seconds < 0:
            raise ValueError("retention_seconds must be >= 0")
        self._retention_seconds = float(retention_seconds)
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._expiry: list[tuple[float, int, str]] = []
        self._sequence = 0
        self._lock = threading.RLock()

    @property
    def retention_seconds(self) -> float:
        return self._retention_seconds

    def register(self, session: DiagnosisSession, token: CancellationToken) -> None:
        with self._lock:
            self._sweep_locked()
            if session.session_id in self._entries:
                raise ValueError(f"session already registered: {session.session_id}")
            self._entries[session.session_id] = _Entry(session=session, token=token)

    def get(self, session_id: str) -> DiagnosisSession | None:
        """Live session object, or ``None`` when unknown or evicted."""
        with self._lock:
            self._sweep_locked()
            entry = self._entries.get(session_id)
            return entry.session if entry is not None else None

    def token_for(self, session_id: str) -> CancellationToken | None:
        with self._lock:
            self._sweep_locked()
            entry = self._entries.get(session_id)
            return entry.token if entry is not None else None

    def list_sessions(self) -> list[DiagnosisSession]:
        """All retained sessions in registration order."""
        with self._lock:
            self._sweep_locked()
            return [entry.session for entry in self._entries.values()]

    def list_running(self) -> list[DiagnosisSession]:
        with self._lock:
            self._sweep_locked()
            return [
                entry.session
                for entry in self._entries.values()
                if entry.session.status is SessionStatus.RUNNING
            ]

    def mark_terminal(self, session_id: str) -> None:
        """Start the retention window for a session that reached a terminal state."""

        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or entry.expires_at is not None:
                return
            expires_at = self._clock() + self._retention_seconds
            entry.expires_at = expires_at
            self._sequence += 1
            heapq.heappush(self._expiry, (expires_at, self._sequence, session_id))

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._entries.pop(session_id, None) is not None

    def sweep(self) -> int:
        """Evict expired sessions now; returns how many were removed."""
        with self._lock:
            return self._sweep_locked()

    def __len__(self) -> int:
        with self._lock:
            self._sweep_locked()
            return len(self._entries)

    def _sweep_locked(self) -> int:
        now = self._clock()
        evicted = 0
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, _, session_id = heapq.heappop(self._expiry)
            entry = self._entries.get(session_id)
            if entry is None or entry.expires_at != expires_at:
                continue
            del self._entries[session_id]
            evicted += 1
        if evicted:
            logger.debug("evicted %d expired session(s)", evicted)
        return evicted


__all__ = ["Clock", "SessionRegistry"]
