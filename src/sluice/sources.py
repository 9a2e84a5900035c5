"""Data source adapters and error mapping.

Sources raise on failure; the scheduler maps anything that is not already a
``FetchError`` through ``wrap_source_error`` so retry decisions use explicit
metadata instead of message matching.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from sluice.errors import FetchError, _walk_exception_chain
from sluice.retry import RETRYABLE_STATUS_CODES

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping


@runtime_checkable
class DataSource(Protocol):
    """Minimal data source protocol.

    ``execute`` must be cancellable, or safe to abandon: a cancelled fetch may
    still run briefly and its result is discarded.
    """

    async def execute(self, params: Mapping[str, Any]) -> Any:
        """Run the query or call and return its value, raising on failure."""
        ...


class FunctionSource:
    """Adapt an async callable ``fn(**params)`` into a data source."""

    def __init__(self, fn: Callable[..., Awaitable[Any]]) -> None:
        self._fn = fn

    async def execute(self, params: Mapping[str, Any]) -> Any:
        return await self._fn(**params)


class HttpSource:
    """GET a JSON document; params become the query string.

    The client is owned by the caller so connection pools can be shared
    across sources.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._client = client
        self._url = url
        self._headers = dict(headers or {})

    async def execute(self, params: Mapping[str, Any]) -> Any:
        response = await self._client.get(
            self._url, params=dict(params), headers=self._headers
        )
        response.raise_for_status()
        return response.json()


def _valid_status(value: Any) -> int | None:
    return value if isinstance(value, int) and 100 <= value <= 599 else None


def _parse_retry_after(raw: str) -> float | None:
    """Parse a ``Retry-After`` header given as seconds or as an HTTP date."""
    raw = raw.strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        seconds = (when - datetime.now(UTC)).total_seconds()
        return max(seconds, 0.0)
    return seconds if seconds >= 0 else None


def _http_details(exc: BaseException) -> tuple[int | None, float | None]:
    """Status code and ``Retry-After`` seconds found along the cause chain."""
    status: int | None = None
    retry_after: float | None = None
    for e in _walk_exception_chain(exc):
        response = getattr(e, "response", None)
        if status is None:
            status = _valid_status(getattr(e, "status_code", None)) or _valid_status(
                getattr(response, "status_code", None)
            )
        if retry_after is None:
            value = getattr(e, "retry_after", None)
            if isinstance(value, int | float) and value >= 0:
                retry_after = float(value)
            elif isinstance(response, httpx.Response):
                header = response.headers.get("Retry-After")
                retry_after = _parse_retry_after(header) if header else None
        if status is not None and retry_after is not None:
            break
    return status, retry_after


def _is_transport_failure(exc: BaseException) -> bool:
    return any(
        isinstance(e, httpx.TimeoutException | httpx.RequestError)
        for e in _walk_exception_chain(exc)
    )


def wrap_source_error(
    exc: BaseException,
    *,
    source: str,
    key: str | None = None,
    task_id: str | None = None,
    message: str | None = None,
) -> FetchError:
    """Describe a data source failure as a ``FetchError``.

    An existing ``FetchError`` is returned as is, with missing context filled
    in. Anything else becomes a new error whose ``retryable`` flag is set for
    transient statuses, ``Retry-After`` responses and transport failures.
    Cancellation is re-raised, never wrapped.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, FetchError):
        exc.source = exc.source or source
        exc.key = exc.key or key
        exc.task_id = exc.task_id or task_id
        return exc

    status_code, retry_after_s = _http_details(exc)
    retryable = (
        retry_after_s is not None
        or status_code in RETRYABLE_STATUS_CODES
        or _is_transport_failure(exc)
    )
    hint = (
        "Check the credentials the data source is configured with."
        if status_code in (401, 403)
        else None
    )

    text = message or f"{source} fetch failed"
    if status_code is not None:
        text += f" (status={status_code})"
    if str(exc):
        text += f": {exc}"
    return FetchError(
        text,
        hint=hint,
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        source=source,
        key=key,
        task_id=task_id,
    )
