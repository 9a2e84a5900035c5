"""FetchTask: one cancellable data retrieval with a deterministic cache key."""

from __future__ import annotations

from collections.abc import Awaitable, Callable  # noqa: TC003 - used at runtime in dataclass
from dataclasses import dataclass
import hashlib
import json
from typing import Any

from sluice.errors import FetchError


@dataclass(frozen=True, slots=True)
class Success[T]:
    """A fetch that produced a value."""

    value: T


@dataclass(frozen=True, slots=True)
class Failure[E: FetchError]:
    """A fetch that failed, containing the error."""

    error: E


type Result = Success[Any] | Failure[FetchError]


def compute_cache_key(source: str, params: dict[str, Any] | None = None) -> str:
    """Compute a deterministic cache key for a source and its parameters.

    Key = hash(source name + canonical JSON of params). Parameters that are
    not JSON-serializable fall back to their ``repr``.
    """
    canonical = json.dumps(
        params or {}, sort_keys=True, separators=(",", ":"), default=repr
    )
    combined = f"{source}|{canonical}"
    return hashlib.sha256(combined.encode()).hexdigest()[:32]


@dataclass(frozen=True)
class FetchTask:
    """A single data retrieval scheduled for one render.

    ``operation`` is a zero-argument coroutine factory so the same task can be
    re-run later (background revalidation looks tasks up by ``key``).
    """

    id: str
    key: str
    operation: Callable[[], Awaitable[Any]]
    ttl_seconds: int | None = None
    #: Deadline for the whole (possibly retried) operation; *None* disables.
    timeout_s: float | None = None
    source: str | None = None

    def __post_init__(self) -> None:
        """Reject tasks that could never resolve sensibly."""
        if not self.id:
            raise ValueError("FetchTask.id must be non-empty")
        if not self.key:
            raise ValueError("FetchTask.key must be non-empty")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("FetchTask.timeout_s must be > 0 or None")
