"""Async single-flight helper.

Used to coordinate concurrent fetches for the same key so only one coroutine
performs the work, while others await the same shared task.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


def consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for coordination futures."""
    try:
        _ = fut.exception()
    except asyncio.CancelledError:
        return


@dataclass
class _Flight:
    task: asyncio.Task[Any]
    waiters: int = 0
    completed_at: float | None = None


class SingleFlight:
    """Registry of in-flight work keyed by cache key.

    - If a flight for the key is running, callers await it instead of
      starting another.
    - A successful flight keeps serving its result for ``window_s`` seconds
      after completion; failures are never reused.
    - A waiter that is cancelled detaches; the shared work is cancelled only
      when its last waiter is gone.
    """

    def __init__(
        self, window_s: float = 0.0, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        """Create an empty registry."""
        self._window_s = window_s
        self._clock = clock
        self._lock = asyncio.Lock()
        self._flights: dict[str, _Flight] = {}

    def __len__(self) -> int:
        return len(self._flights)

    def in_flight(self, key: str) -> bool:
        """Whether work for *key* is currently running."""
        flight = self._flights.get(key)
        return flight is not None and not flight.task.done()

    async def do(self, key: str, work: Callable[[], Awaitable[Any]]) -> Any:
        """Return the result of *work* for *key*, sharing it with concurrent callers."""
        async with self._lock:
            self._prune()
            flight = self._flights.get(key)
            if flight is None:
                task = asyncio.ensure_future(work())
                task.add_done_callback(consume_future_exception)
                flight = _Flight(task=task)
                self._flights[key] = flight
                task.add_done_callback(partial(self._on_done, key, flight))
            flight.waiters += 1

        cancelled = False
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            flight.waiters -= 1
            if cancelled and flight.waiters == 0 and not flight.task.done():
                flight.task.cancel()

    def _on_done(self, key: str, flight: _Flight, task: asyncio.Future[Any]) -> None:
        succeeded = not task.cancelled() and task.exception() is None
        if succeeded and self._window_s > 0:
            flight.completed_at = self._clock()
            return
        if self._flights.get(key) is flight:
            del self._flights[key]

    def _prune(self) -> None:
        now = self._clock()
        expired = [
            k
            for k, f in self._flights.items()
            if f.completed_at is not None and now - f.completed_at >= self._window_s
        ]
        for k in expired:
            del self._flights[k]
