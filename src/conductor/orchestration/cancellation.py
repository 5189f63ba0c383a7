"""Cooperative cancellation primitives.

Two handles exist:

- :class:`CancelSignal` — handed to the unit of work with every attempt.
  The scheduler sets it when the attempt times out or the run aborts; the
  unit of work is expected to notice (``signal.cancelled``,
  ``signal.wait()``, ``await signal.wait_async()``) and return promptly.
- :class:`RunCancellation` — held by the caller to abort a whole run from any
  thread.

The signal comes first.  Once the timeout or grace period has passed, the
scheduler stops waiting: coroutine units of work are cancelled, and
thread-run ones are left to finish on their own, with their results discarded.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable

from conductor.core.errors import CancellationError


class CancelSignal:
    """Per-attempt cancellation flag, safe to read from threads and coroutines."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._async_event: asyncio.Event | None = None
        try:
            self._loop = asyncio.get_running_loop()
            self._async_event = asyncio.Event()
        except RuntimeError:
            pass

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Set the signal (idempotent; the first reason wins)."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._async_event is not None and self._loop is not None and not self._loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self._loop:
                self._async_event.set()
            else:
                self._loop.call_soon_threadsafe(self._async_event.set)

    def wait(self, timeout: float | None = None) -> bool:
        """Block the calling thread until cancelled or ``timeout`` elapses."""
        return self._event.wait(timeout)

    async def wait_async(self) -> None:
        """Suspend until cancelled (only for signals created inside a running loop)."""
        if self._async_event is None:
            raise RuntimeError("CancelSignal was not created inside an event loop")
        await self._async_event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "cancelled")

    def __repr__(self) -> str:
        return f"CancelSignal(cancelled={self.cancelled}, reason={self._reason!r})"


class RunCancellation:
    """Caller-held handle that aborts a run.

    Example:
        cancellation = RunCancellation()
        task = asyncio.create_task(orchestrator.run(graph, cancellation=cancellation))
        ...
        cancellation.cancel("user pressed stop")
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._cancelled = False
        self._listener: tuple[asyncio.AbstractEventLoop, Callable[[str], None]] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request an abort.  Safe to call from any thread, any number of times."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            listener = self._listener
        if listener is not None:
            loop, callback = listener
            if not loop.is_closed():
                loop.call_soon_threadsafe(callback, reason)

    def bind(self, loop: asyncio.AbstractEventLoop, callback: Callable[[str], None]) -> None:
        """Attach the running scheduler; fires immediately if already cancelled."""
        with self._lock:
            self._listener = (loop, callback)
            fire = self._cancelled
            reason = self._reason
        if fire:
            loop.call_soon_threadsafe(callback, reason or "cancelled by caller")

    def unbind(self) -> None:
        with self._lock:
            self._listener = None
