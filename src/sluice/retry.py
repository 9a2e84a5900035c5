"""Bounded retries for data source calls.

Retries decide on explicit error metadata (``FetchError.retryable``, status
codes, ``Retry-After``), never on message text. A retried fetch holds back its
fragment, so the default policy makes a single attempt.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from sluice.errors import FetchError, FetchTimeoutError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

#: Upstream statuses worth another attempt.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failing fetch is retried.

    Example:
        RetryPolicy(max_attempts=3, initial_delay_s=0.05, max_elapsed_s=1.0)
    """

    max_attempts: int = 1
    initial_delay_s: float = 0.1
    backoff_multiplier: float = 2.0
    max_delay_s: float = 2.0
    #: Sleep a random fraction of the computed delay.
    jitter: bool = True
    #: Give up once this much time has passed since the first attempt.
    max_elapsed_s: float | None = 10.0

    def __post_init__(self) -> None:
        """Reject policies that could never retry sensibly."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_multiplier <= 0:
            raise ValueError(
                f"backoff_multiplier must be > 0, got {self.backoff_multiplier}"
            )
        for name in ("initial_delay_s", "max_delay_s", "max_elapsed_s"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")

    def delay_before(self, retry_number: int, *, retry_after: float | None = None) -> float:
        """Seconds to sleep before retry *retry_number* (1 for the first retry).

        A server-provided ``Retry-After`` raises the delay but never lowers it.
        """
        ceiling = min(
            self.max_delay_s,
            self.initial_delay_s * self.backoff_multiplier ** (retry_number - 1),
        )
        delay = random.uniform(0, ceiling) if self.jitter and ceiling > 0 else ceiling  # noqa: S311
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(delay, 0.0)


def _is_transient(exc: BaseException) -> bool:
    return any(
        isinstance(e, TimeoutError | httpx.TimeoutException | httpx.RequestError)
        for e in _walk_exception_chain(exc)
    )


def should_retry_fetch(exc: BaseException) -> bool:
    """Return True when a failed fetch is worth another attempt.

    Cancellation and deadline expiry are final. A ``FetchError`` retries when
    its source flagged it retryable or its status is transient. Anything else
    retries only for timeouts and transport failures in its cause chain.
    """
    if isinstance(exc, asyncio.CancelledError | FetchTimeoutError):
        return False
    if isinstance(exc, FetchError):
        return bool(exc.retryable) or exc.status_code in RETRYABLE_STATUS_CODES
    return _is_transient(exc)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_fetch,
) -> T:
    """Await ``factory()`` until it succeeds or the policy is exhausted.

    The last error is re-raised unchanged.
    """
    deadline = (
        None if policy.max_elapsed_s is None else time.monotonic() + policy.max_elapsed_s
    )
    attempt = 1
    while True:
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            retry_after = exc.retry_after_s if isinstance(exc, FetchError) else None
            delay = policy.delay_before(attempt, retry_after=retry_after)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.3fs",
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
        if delay > 0:
            await asyncio.sleep(delay)
        attempt += 1
