"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and shared test
doubles. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from sluice.errors import FetchError

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeSource:
    """Data source test double.

    Counts executions and returns ``value`` (or raises ``error``) after
    ``delay_s``. Records whether a call was cancelled mid-flight.
    """

    value: Any = "ok"
    delay_s: float = 0.0
    error: BaseException | None = None
    calls: int = 0
    cancelled: int = 0
    seen_params: list[dict[str, Any]] = field(default_factory=list)

    async def execute(self, params: Any) -> Any:
        self.calls += 1
        self.seen_params.append(dict(params))
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class FakeClock:
    """Settable wall clock for cache freshness tests."""

    now: float = 1_000_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Return a fresh settable clock (not autouse)."""
    return FakeClock()


def failing(message: str = "boom", **kwargs: Any) -> FetchError:
    """Build a FetchError for scripted failures."""
    return FetchError(message, **kwargs)


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_sluice_env(request, monkeypatch):
    """Clear SLUICE_* env vars so configuration defaults are predictable.

    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith("SLUICE_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def pytest_configure(config):
    config.addinivalue_line("markers", "allow_dotenv: permit loading .env files")
    config.addinivalue_line(
        "markers", "allow_env_pollution: keep SLUICE_* environment variables"
    )
