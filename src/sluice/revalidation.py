"""Background refresh of stale cache entries (stale-while-revalidate)."""

from __future__ import annotations

import asyncio
from collections import deque
import contextlib
import logging
from typing import TYPE_CHECKING

from sluice.cache import CacheEntry, CacheState
from sluice.errors import RevalidationError
from sluice.retry import RetryPolicy
from sluice.scheduler import execute_task, with_deadline
from sluice.telemetry import TelemetryContext

if TYPE_CHECKING:
    from sluice.cache import CacheStore
    from sluice.task import FetchTask
    from sluice.telemetry import TelemetryContextProtocol

logger = logging.getLogger(__name__)


class RevalidationClock:
    """Process-wide scheduler of background refreshes.

    Every ``interval_s`` the clock scans the store for entries past their
    freshness deadline, marks them STALE and re-runs the fetch that produced
    them. Results land through compare-and-swap, so a refresh that started
    from an older entry never overwrites a newer one. Failures keep the old
    value serving and are recorded in ``failures``; requests never see them.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        interval_s: float = 30.0,
        retry: RetryPolicy | None = None,
        telemetry: TelemetryContextProtocol | None = None,
        max_failures: int = 100,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._store = store
        self._interval_s = interval_s
        self._retry = retry or RetryPolicy()
        self._tele = telemetry if telemetry is not None else TelemetryContext()
        self._origins: dict[str, FetchTask] = {}
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._runner: asyncio.Task[None] | None = None
        self.failures: deque[RevalidationError] = deque(maxlen=max_failures)
        self.refreshed = 0

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def pending(self) -> frozenset[str]:
        """Keys with a refresh queued or running."""
        return frozenset(self._pending)

    def register(self, task: FetchTask) -> None:
        """Remember how to recompute the entry stored under ``task.key``."""
        self._origins[task.key] = task

    def origin(self, key: str) -> FetchTask | None:
        return self._origins.get(key)

    def enqueue(self, key: str) -> bool:
        """Schedule one background refresh of *key*.

        Returns False when nothing was scheduled: the key has no entry or no
        known origin, or a refresh for it is already queued or running.
        """
        if key in self._pending:
            return False
        entry = self._store.peek(key)
        if entry is None or entry.state is CacheState.REVALIDATING:
            return False
        task = self._origins.get(key)
        if task is None:
            logger.debug("No origin registered for stale key %s; serving as-is", key)
            return False

        marked = entry.with_state(CacheState.REVALIDATING)
        if not self._store.compare_and_swap(key, entry.computed_at, marked):
            return False
        self._pending[key] = asyncio.get_running_loop().create_task(
            self._revalidate(task, marked), name=f"sluice-revalidate-{task.id}"
        )
        logger.debug("Enqueued revalidation of %s (%s)", task.id, key)
        return True

    def tick(self) -> int:
        """Scan once: mark expired entries STALE and enqueue refreshes.

        Returns the number of refreshes enqueued.
        """
        enqueued = 0
        for entry in self._store.expired_entries():
            if entry.state is CacheState.FRESH:
                stale = entry.with_state(CacheState.STALE)
                if not self._store.compare_and_swap(entry.key, entry.computed_at, stale):
                    continue
            if self.enqueue(entry.key):
                enqueued += 1

        # Origins of evicted entries are no longer needed.
        for key in [k for k in self._origins if k not in self._store]:
            del self._origins[key]
        return enqueued

    def start(self) -> None:
        """Start the periodic scan on the running event loop."""
        if self.running:
            return
        self._runner = asyncio.get_running_loop().create_task(
            self._loop(), name="sluice-revalidation-clock"
        )

    async def stop(self) -> None:
        """Stop scanning and cancel refreshes still in progress."""
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for every queued refresh to land."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                count = self.tick()
            except Exception:
                logger.exception("Revalidation scan failed")
                continue
            if count:
                logger.debug("Revalidation scan enqueued %d refresh(es)", count)

    async def _revalidate(self, task: FetchTask, entry: CacheEntry) -> None:
        key = task.key
        try:
            with self._tele("revalidation.run", key=key):
                value = await with_deadline(task, execute_task(task, retry=self._retry))
        except asyncio.CancelledError:
            self._store.compare_and_swap(
                key, entry.computed_at, entry.with_state(CacheState.STALE)
            )
            raise
        except Exception as exc:
            err = RevalidationError(
                f"Revalidation of {task.id!r} failed: {exc}",
                key=key,
                hint="The stale value keeps serving until a refresh succeeds.",
            )
            err.__cause__ = exc
            self.failures.append(err)
            self._tele.count("revalidation.failed")
            logger.warning("%s", err)
            self._store.compare_and_swap(
                key, entry.computed_at, entry.with_state(CacheState.STALE)
            )
        else:
            fresh = CacheEntry(
                key=key,
                value=value,
                computed_at=self._store.now(),
                ttl_seconds=entry.ttl_seconds,
            )
            if self._store.compare_and_swap(key, entry.computed_at, fresh):
                self.refreshed += 1
                self._tele.count("revalidation.refreshed")
            else:
                logger.debug("Revalidated %s lost to a newer entry", key)
        finally:
            self._pending.pop(key, None)
