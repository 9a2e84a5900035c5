"""Concurrent fetch scheduling with per-task results in completion order."""

from __future__ import annotations

import asyncio
from functools import partial
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any

from sluice.cache import CacheEntry
from sluice.errors import FetchError, FetchTimeoutError
from sluice.retry import RetryPolicy, retry_async
from sluice.sources import wrap_source_error
from sluice.task import Failure, Success
from sluice.telemetry import TelemetryContext

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from sluice._singleflight import SingleFlight
    from sluice.cache import CacheStore
    from sluice.task import FetchTask, Result
    from sluice.telemetry import TelemetryContextProtocol

    OnResolved = Callable[[str, Result], Awaitable[None] | None]

logger = logging.getLogger(__name__)


def _for_task(err: FetchError, task: FetchTask) -> FetchError:
    """Return a FetchError attributed to *task*.

    A coalesced flight hands the same exception instance to every waiter, so
    attribute a copy instead of mutating it in place.
    """
    if err.task_id is None:
        err.task_id = task.id
    if err.task_id == task.id:
        return err
    return err.replace(task_id=task.id)


async def execute_task(task: FetchTask, *, retry: RetryPolicy) -> Any:
    """Run the task's operation once per attempt, mapping failures to FetchError."""

    async def _attempt() -> Any:
        try:
            return await task.operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            wrapped = wrap_source_error(
                e, source=task.source or task.id, key=task.key, task_id=task.id
            )
            if wrapped is e:
                raise
            raise wrapped from e

    if retry.max_attempts <= 1:
        return await _attempt()
    return await retry_async(_attempt, policy=retry)


async def with_deadline[T](task: FetchTask, awaitable: Awaitable[T]) -> T:
    """Await *awaitable* under the task's deadline, if it has one.

    On expiry the awaited work is cancelled and ``FetchTimeoutError`` raised.
    """
    if task.timeout_s is None:
        return await awaitable
    try:
        async with asyncio.timeout(task.timeout_s):
            return await awaitable
    except TimeoutError as e:
        raise FetchTimeoutError(
            f"Fetch {task.id!r} exceeded its {task.timeout_s}s deadline",
            hint="Raise the fetch timeout_s or speed up the data source.",
            retryable=False,
            source=task.source,
            key=task.key,
            task_id=task.id,
        ) from e


def write_through(store: CacheStore, task: FetchTask, value: Any, ttl: int) -> bool:
    """Install *value* as a fresh entry on top of whatever the store holds now."""
    current = store.peek(task.key)
    entry = CacheEntry(
        key=task.key,
        value=value,
        computed_at=store.now(),
        ttl_seconds=ttl,
    )
    return store.compare_and_swap(
        task.key, None if current is None else current.computed_at, entry
    )


class FetchHandle:
    """Handle on one scheduler run.

    Results are recorded in completion order. Once cancelled, late results are
    discarded and ``on_resolved`` is not called again.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self.results: dict[str, Result] = {}
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return all(t.done() for t in self._tasks.values())

    @property
    def completion_order(self) -> list[str]:
        return list(self.results)

    @property
    def pending(self) -> list[str]:
        return [tid for tid, t in self._tasks.items() if not t.done()]

    def cancel(self) -> None:
        """Request cancellation of every fetch still running."""
        if self._cancelled:
            return
        self._cancelled = True
        for task in self._tasks.values():
            if not task.done():
                task.cancel()

    async def wait(self) -> dict[str, Result]:
        """Wait until every task resolved or was cancelled; return recorded results."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        return dict(self.results)


class DataFetchScheduler:
    """Launch all fetches of a plan at once and report each as it lands.

    Failures resolve as ``Failure(FetchError)`` and never cancel siblings.
    With a ``SingleFlight`` registry, tasks sharing a key reuse one execution,
    also across concurrent requests.
    """

    def __init__(
        self,
        *,
        flights: SingleFlight | None = None,
        retry: RetryPolicy | None = None,
        telemetry: TelemetryContextProtocol | None = None,
    ) -> None:
        self._flights = flights
        self._retry = retry or RetryPolicy()
        self._tele = telemetry if telemetry is not None else TelemetryContext()

    def run(
        self,
        fetch_plan: Sequence[FetchTask],
        on_resolved: OnResolved,
        *,
        store: CacheStore | None = None,
        default_ttl: int = 0,
    ) -> FetchHandle:
        """Start every task in *fetch_plan* concurrently and return a handle.

        When *store* is given, successful results are written through to it.
        """
        ids = [t.id for t in fetch_plan]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate FetchTask ids in plan: {ids}")

        handle = FetchHandle()
        logger.debug("Launching %d fetch(es): %s", len(fetch_plan), ids)
        for task in fetch_plan:
            handle._tasks[task.id] = asyncio.create_task(
                self._run_one(task, handle, on_resolved, store, default_ttl),
                name=f"sluice-fetch-{task.id}",
            )
        return handle

    async def _run_one(
        self,
        task: FetchTask,
        handle: FetchHandle,
        on_resolved: OnResolved,
        store: CacheStore | None,
        default_ttl: int,
    ) -> None:
        start = time.perf_counter()
        ttl = task.ttl_seconds if task.ttl_seconds is not None else default_ttl
        work = partial(self._execute, task, store, ttl)
        result: Result
        try:
            if self._flights is not None:
                value = await with_deadline(task, self._flights.do(task.key, work))
            else:
                value = await with_deadline(task, work())
            result = Success(value)
        except asyncio.CancelledError:
            logger.debug("Fetch %s cancelled", task.id)
            raise
        except FetchError as e:
            result = Failure(_for_task(e, task))
        except Exception as e:
            result = Failure(
                wrap_source_error(
                    e, source=task.source or task.id, key=task.key, task_id=task.id
                )
            )

        if handle.cancelled:
            logger.debug("Discarding result of %s after cancellation", task.id)
            return

        elapsed = time.perf_counter() - start
        self._tele.metric("fetch.seconds", elapsed, task_id=task.id)
        if isinstance(result, Failure):
            self._tele.count("fetch.failed")
            logger.debug(
                "Fetch %s failed after %.3fs: %s", task.id, elapsed, result.error
            )
        else:
            logger.debug("Fetch %s resolved in %.3fs", task.id, elapsed)
        handle.results[task.id] = result

        try:
            maybe = on_resolved(task.id, result)
            if inspect.isawaitable(maybe):
                await maybe
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("on_resolved callback failed for fetch %s", task.id)

    async def _execute(self, task: FetchTask, store: CacheStore | None, ttl: int) -> Any:
        value = await execute_task(task, retry=self._retry)
        if store is not None and not write_through(store, task, value, ttl):
            logger.debug("Write-through for %s lost to a concurrent writer", task.id)
        return value
