"""Async primitives for bounding and cancelling diagnosis work."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag shared between a session and its stage calls.

    ``cancel`` is synchronous so registry lookups can fire it directly. A token
    created inside a running loop belongs to that loop; ``cancel`` called from
    another thread is handed to it with ``call_soon_threadsafe``, so listeners
    registered with :meth:`on_cancel` always run on the loop thread.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._listeners: list[Callable[[], None]] = []
        self._loop = _running_loop()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        loop = self._loop
        if loop is not None and loop.is_running() and _running_loop() is not loop:
            loop.call_soon_threadsafe(self._fire, reason)
            return
        self._fire(reason)

    def _fire(self, reason: str | None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener()

    def on_cancel(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""

        if self.is_cancelled:
            listener()
            return lambda: None
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def wait(self) -> None:
        await self._event.wait()

    def cancelled_error(self, label: str = "operation") -> asyncio.CancelledError:
        return asyncio.CancelledError(self._reason or f"{label} cancelled")

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise self.cancelled_error()


class BoundedSemaphore:
    """Caps concurrently running sessions and reports usage."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._in_use = 0
        self._gate = asyncio.Semaphore(limit)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self) -> None:
        await self._gate.acquire()
        self._in_use += 1

    def release(self) -> None:
        if not self._in_use:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._gate.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {"limit": self._limit, "in_use": self._in_use, "available": self.available}


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
    *,
    label: str = "operation",
) -> T:
    """Await ``awaitable`` bounded by ``timeout_seconds`` and ``cancel_token``.

    Raises ``TimeoutError`` on expiry and ``asyncio.CancelledError`` when the
    token fires first. The inner work is cancelled in every case, including
    cancellation of the caller's own task.
    """

    if timeout_seconds <= 0 or (cancel_token is not None and cancel_token.is_cancelled):
        # Never scheduled, so a raw coroutine must be closed to avoid a warning.
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        raise cancel_token.cancelled_error(label)  # type: ignore[union-attr]

    work: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    unsubscribe = cancel_token.on_cancel(work.cancel) if cancel_token is not None else None
    try:
        return await asyncio.wait_for(work, timeout=timeout_seconds)
    except asyncio.CancelledError:
        if cancel_token is not None and cancel_token.is_cancelled:
            raise cancel_token.cancelled_error(label) from None
        raise
    except TimeoutError as exc:
        raise TimeoutError(f"{label} timed out after {timeout_seconds} seconds") from exc
    finally:
        if unsubscribe is not None:
            unsubscribe()


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "run_with_timeout",
]
