"""Exception hierarchy for Sluice.

Only ``PlanningError`` and ``ConfigurationError`` reach callers of
``render_route``. A ``FetchError`` is reported inside the stream as an error
fragment, and a ``RevalidationError`` is logged and recorded.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Any, Self

if TYPE_CHECKING:
    from collections.abc import Iterator


class SluiceError(Exception):
    """Base exception for all Sluice errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(SluiceError):
    """Configuration or route declaration is invalid."""


class PlanningError(SluiceError):
    """A route could not be planned; nothing is rendered for the request."""

    def __init__(
        self, message: str, *, hint: str | None = None, route_id: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.route_id = route_id


class InternalError(SluiceError):
    """A Sluice bug or a fragment renderer that raised."""


class FetchError(SluiceError):
    """One fetch failed.

    ``retryable``, ``status_code`` and ``retry_after_s`` drive retry decisions.
    ``source``, ``key`` and ``task_id`` say which fetch of which render failed.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        source: str | None = None,
        key: str | None = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.source = source
        self.key = key
        self.task_id = task_id

    def replace(self, **changes: Any) -> Self:
        """Return a copy of this error (same class and cause) with *changes* applied."""
        fields = {
            name: getattr(self, name)
            for name in (
                "hint",
                "retryable",
                "status_code",
                "retry_after_s",
                "source",
                "key",
                "task_id",
            )
        }
        fields.update(changes)
        message = self.args[0] if self.args else ""
        clone = type(self)(message, **fields)
        clone.__cause__ = self.__cause__
        return clone


class FetchTimeoutError(FetchError):
    """A fetch missed its deadline; the operation was cancelled."""


class RevalidationError(SluiceError):
    """A background refresh of cache entry ``key`` failed."""

    def __init__(self, message: str, *, key: str, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.key = key


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* then its causes and contexts, breadth first, each once."""
    seen: set[int] = set()
    queue: deque[BaseException] = deque([exc])
    while queue:
        current = queue.popleft()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        queue.extend(
            linked
            for linked in (current.__cause__, current.__context__)
            if linked is not None
        )
