"""Opt-in timings and counters for the render pipeline.

Telemetry is off unless ``SLUICE_TELEMETRY=1`` is set or a context is built
with ``enabled=True``. When off, every call lands on a shared stateless no-op
object. When on, scopes nest per task through a ``ContextVar`` so concurrent
renders keep separate scope paths such as ``render.plan``.

Example:
    reporter = SimpleReporter()
    tele = TelemetryContext(reporter, enabled=True)
    with tele("render", route_id="/home"):
        tele.count("fetch.failed")
    print(reporter.get_report())
"""

from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
import logging
import os
import time
from types import TracebackType
from typing import Any, Protocol, Self, runtime_checkable

log = logging.getLogger(__name__)

_scopes: ContextVar[tuple[str, ...]] = ContextVar("sluice_telemetry_scopes", default=())


@runtime_checkable
class TelemetryReporter(Protocol):
    """Sink for telemetry records."""

    def record_timing(self, scope: str, duration: float, **metadata: Any) -> None: ...  # noqa: D102
    def record_metric(self, scope: str, value: Any, **metadata: Any) -> None: ...  # noqa: D102


class _Disabled:
    """Stateless no-op context; also usable as its own scope."""

    __slots__ = ()

    def __call__(self, name: str, **metadata: Any) -> Self:  # noqa: ARG002
        return self

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        return None

    @property
    def is_enabled(self) -> bool:
        return False

    def metric(self, name: str, value: Any, **metadata: Any) -> None:
        pass

    def count(self, name: str, increment: int = 1, **metadata: Any) -> None:
        pass


class _Enabled:
    """Fans records out to reporters; a failing reporter is logged and skipped."""

    __slots__ = ("reporters",)

    def __init__(self, *reporters: TelemetryReporter) -> None:
        self.reporters = reporters

    @property
    def is_enabled(self) -> bool:
        return True

    @contextmanager
    def __call__(self, name: str, **metadata: Any) -> Iterator[Self]:
        if not name:
            raise ValueError("Telemetry scope name must be a non-empty string")
        parents = _scopes.get()
        token = _scopes.set((*parents, name))
        start = time.perf_counter()
        try:
            yield self
        finally:
            elapsed = time.perf_counter() - start
            _scopes.reset(token)
            path = ".".join((*parents, name))
            self._emit("record_timing", path, elapsed, depth=len(parents), **metadata)

    def metric(self, name: str, value: Any, **metadata: Any) -> None:
        """Record *value* under the current scope path."""
        self._emit("record_metric", ".".join((*_scopes.get(), name)), value, **metadata)

    def count(self, name: str, increment: int = 1, **metadata: Any) -> None:
        self.metric(name, increment, metric_type="counter", **metadata)

    def _emit(self, method: str, scope: str, value: Any, **metadata: Any) -> None:
        for reporter in self.reporters:
            try:
                getattr(reporter, method)(scope, value, **metadata)
            except Exception:
                log.exception("Telemetry reporter %s failed", type(reporter).__name__)


_DISABLED = _Disabled()

type TelemetryContextProtocol = _Enabled | _Disabled


def TelemetryContext(  # noqa: N802
    *reporters: TelemetryReporter, enabled: bool | None = None
) -> TelemetryContextProtocol:
    """Return an enabled context or the shared no-op.

    *enabled* defaults to the ``SLUICE_TELEMETRY`` flag. An enabled context
    without reporters records into a fresh ``SimpleReporter``.
    """
    if enabled is None:
        enabled = os.getenv("SLUICE_TELEMETRY") == "1"
    if not enabled:
        return _DISABLED
    return _Enabled(*(reporters or (SimpleReporter(),)))


class SimpleReporter:
    """Keeps the most recent records per scope in memory."""

    def __init__(self, max_entries_per_scope: int = 1000):
        self.max_entries = max_entries_per_scope
        self.timings: dict[str, deque[tuple[float, dict[str, Any]]]] = {}
        self.metrics: dict[str, deque[tuple[Any, dict[str, Any]]]] = {}

    def _bucket[V](self, table: dict[str, deque[V]], scope: str) -> deque[V]:
        return table.setdefault(scope, deque(maxlen=self.max_entries))

    def record_timing(self, scope: str, duration: float, **metadata: Any) -> None:
        self._bucket(self.timings, scope).append((duration, metadata))

    def record_metric(self, scope: str, value: Any, **metadata: Any) -> None:
        self._bucket(self.metrics, scope).append((value, metadata))

    def total(self, scope: str) -> float:
        """Sum of numeric values recorded under *scope*."""
        return sum(
            v for v, _ in self.metrics.get(scope, ()) if isinstance(v, int | float)
        )

    def reset(self) -> None:
        self.timings.clear()
        self.metrics.clear()

    def get_report(self) -> str:
        """Plain-text summary: timings (calls, mean) then metrics (count, total)."""
        lines = ["=== Sluice telemetry ==="]
        for scope, records in sorted(self.timings.items()):
            mean = sum(d for d, _ in records) / len(records)
            lines.append(f"{scope:<40} calls={len(records):<5} mean={mean:.4f}s")
        for scope, records in sorted(self.metrics.items()):
            lines.append(
                f"{scope:<40} count={len(records):<5} total={self.total(scope):g}"
            )
        return "\n".join(lines)
