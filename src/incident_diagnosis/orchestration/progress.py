"""Session progress events, an in-process progress bus, and pull-based channels.

Publishing never raises because of a subscriber: callback failures are captured
as :class:`DispatchError` records and the publisher carries on.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, NamedTuple, TypeVar

_DEFAULT_ERROR_BUFFER: Final[int] = 1024

T = TypeVar("T")


class ProgressStage(StrEnum):
    INITIALIZING = "initializing"
    ANALYZING_CODE = "analyzing_code"
    OPTIMIZING_CONTEXT = "optimizing_context"
    AI_ANALYSIS = "ai_analysis"
    GENERATING_SOLUTIONS = "generating_solutions"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def percent(self) -> int:
        return _STAGE_PERCENT[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStage.COMPLETED, ProgressStage.FAILED)


_STAGE_PERCENT: Final[dict[ProgressStage, int]] = dict(
    zip(ProgressStage, (10, 25, 40, 60, 80, 100, 0), strict=True)
)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One stage transition of a diagnosis session.

    ``progress`` defaults to the stage's fixed percentage.
    """

    event_id: str
    session_id: str
    stage: ProgressStage
    message: str
    progress: int = -1
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if not isinstance(self.session_id, str) or not self.session_id.strip():
            raise ValueError("ProgressEvent.session_id must be a non-empty string")
        stage = ProgressStage(self.stage)
        object.__setattr__(self, "stage", stage)
        if self.progress == -1:
            object.__setattr__(self, "progress", stage.percent)
        if not 0 <= self.progress <= 100:
            raise ValueError("ProgressEvent.progress must be within [0, 100]")
        if self.timestamp.tzinfo is None:
            raise ValueError("ProgressEvent.timestamp must be timezone-aware")

    def to_dict(self) -> dict[str, object]:
        moment = self.timestamp.astimezone(UTC).isoformat().replace("+00:00", "Z")
        return {
            "event_id": self.event_id,
            "session_id": self.session_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "message": self.message,
            "timestamp": moment,
        }


ProgressCallback = Callable[[ProgressEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    event_id: str
    session_id: str
    target: str
    error_type: str
    message: str


class _Listener(NamedTuple):
    session_id: str | None
    callback: ProgressCallback

    def wants(self, event: ProgressEvent) -> bool:
        return self.session_id is None or self.session_id == event.session_id


class ProgressBus:
    """Fans progress events out to subscribers and keeps a bounded replay buffer.

    Synchronous callbacks run inline. A callback returning an awaitable is
    awaited by :meth:`publish_async`, or scheduled on the running loop by
    :meth:`publish` and collected by :meth:`drain_async`.
    """

    def __init__(self, *, buffer_size: int = 512) -> None:
        if not isinstance(buffer_size, int) or isinstance(buffer_size, bool) or buffer_size <= 0:
            raise ValueError(f"buffer_size must be a positive integer, got {buffer_size!r}")

        self._history: deque[ProgressEvent] = deque(maxlen=buffer_size)
        self._listeners: dict[int, _Listener] = {}
        self._scheduled: set[asyncio.Task[None]] = set()
        self._failures: deque[DispatchError] = deque(maxlen=_DEFAULT_ERROR_BUFFER)
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(self, callback: ProgressCallback, *, session_id: str | None = None) -> int:
        """Listen to one session, or to every session when ``session_id`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            token = next(self._tokens)
            self._listeners[token] = _Listener(session_id, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._listeners.pop(token, None) is not None

    def publish(self, event: ProgressEvent) -> tuple[DispatchError, ...]:
        """Deliver ``event`` without awaiting anything; safe from sync code."""

        loop = _running_loop()
        failures: list[DispatchError] = []
        for listener in self._admit(event):
            try:
                outcome = listener.callback(event)
                if inspect.isawaitable(outcome):
                    self._schedule(outcome, listener, event, loop)
            except Exception as exc:  # noqa: BLE001 - subscriber faults are recorded.
                failures.append(_failure(event, listener.callback, exc))
        return self._record(failures)

    async def publish_async(self, event: ProgressEvent) -> tuple[DispatchError, ...]:
        """Deliver ``event`` and await awaitable results in subscription order."""

        failures: list[DispatchError] = []
        for listener in self._admit(event):
            try:
                outcome = listener.callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:  # noqa: BLE001 - subscriber faults are recorded.
                failures.append(_failure(event, listener.callback, exc))
        return self._record(failures)

    async def drain_async(
        self, *, timeout_seconds: float | None = None
    ) -> tuple[DispatchError, ...]:
        """Wait for callbacks scheduled by :meth:`publish`; returns every recorded failure.

        Callbacks still pending after ``timeout_seconds`` are cancelled.
        """

        with self._lock:
            scheduled, self._scheduled = self._scheduled, set()
        if scheduled:
            _, pending = await asyncio.wait(scheduled, timeout=timeout_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return self.dispatch_errors()

    def replay(
        self,
        *,
        session_id: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> tuple[ProgressEvent, ...]:
        """Buffered events in publish order; ``since`` is exclusive."""

        with self._lock:
            history = tuple(self._history)
        selected = tuple(
            event
            for event in history
            if (session_id is None or event.session_id == session_id)
            and (since is None or event.timestamp > since)
        )
        return _tail(selected, limit)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        with self._lock:
            return _tail(tuple(self._failures), limit)

    def open_channel(self, *, session_id: str | None = None) -> ProgressChannel:
        channel = ProgressChannel(self, session_id=session_id)
        channel._token = self.subscribe(channel._offer, session_id=session_id)
        return channel

    def _admit(self, event: ProgressEvent) -> list[_Listener]:
        if not isinstance(event, ProgressEvent):
            raise ValueError(f"event must be ProgressEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            return [listener for listener in self._listeners.values() if listener.wants(event)]

    def _record(self, failures: list[DispatchError]) -> tuple[DispatchError, ...]:
        if failures:
            with self._lock:
                self._failures.extend(failures)
        return tuple(failures)

    def _schedule(
        self,
        outcome: Awaitable[object],
        listener: _Listener,
        event: ProgressEvent,
        loop: asyncio.AbstractEventLoop | None,
    ) -> None:
        if loop is None:
            asyncio.run(_settle(outcome))
            return
        task = loop.create_task(_settle(outcome))
        with self._lock:
            self._scheduled.add(task)

        def _finished(done: asyncio.Task[None]) -> None:
            with self._lock:
                self._scheduled.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if isinstance(exc, Exception):
                self._record([_failure(event, listener.callback, exc)])

        task.add_done_callback(_finished)


class ProgressChannel:
    """Async iterator over progress events delivered through an ``asyncio.Queue``.

    A channel scoped to one session ends after that session's terminal event;
    an unscoped channel ends when :meth:`close` is called.
    """

    def __init__(self, bus: ProgressBus, *, session_id: str | None) -> None:
        self._bus = bus
        self._session_id = session_id
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._token: int | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._token is not None:
            self._bus.unsubscribe(self._token)
        self._queue.put_nowait(None)

    async def get(self) -> ProgressEvent | None:
        """Next event, or ``None`` once the channel is closed and drained."""
        item = await self._queue.get()
        if item is None:
            # Re-queue the end marker for any later reader.
            self._queue.put_nowait(None)
        return item

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while (item := await self.get()) is not None:
            yield item

    def _offer(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)
        if self._session_id is not None and event.stage.is_terminal:
            self.close()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


async def _settle(outcome: Awaitable[object]) -> None:
    await outcome


def _tail(items: tuple[T, ...], limit: int | None) -> tuple[T, ...]:
    if limit is None:
        return items
    return items[-limit:] if limit > 0 else ()


def _failure(event: ProgressEvent, callback: object, exc: Exception) -> DispatchError:
    target = getattr(callback, "__name__", None) or type(callback).__name__
    return DispatchError(
        event_id=event.event_id,
        session_id=event.session_id,
        target=str(target),
        error_type=type(exc).__name__,
        message=str(exc),
    )


__all__ = [
    "DispatchError",
    "ProgressBus",
    "ProgressCallback",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressStage",
]
