"""Configuration: Frozen Config with environment fallbacks."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path

import dotenv

from sluice.errors import ConfigurationError
from sluice.retry import RetryPolicy

_ENV_PREFIX = "SLUICE_"


def _env_number[N: (int, float)](name: str, default: N, cast: type[N]) -> N:
    raw = os.environ.get(_ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid value for {_ENV_PREFIX}{name}: {raw!r}",
            hint=f"Expected a value of type {cast.__name__}.",
        ) from e


@dataclass(frozen=True)
class Config:
    """Immutable configuration for a Sluice pipeline.

    Fields left as *None* are resolved from ``SLUICE_*`` environment variables
    (a ``.env`` file found from the working directory is loaded first), then
    from built-in defaults.

    Example:
        config = Config(cache_capacity=512, coalesce_window_s=0.25)
    """

    #: Maximum cache entries before least-recently-used eviction.
    cache_capacity: int | None = None
    #: How long a completed flight keeps serving identical keys; 0 means
    #: coalesce only while the flight is in progress.
    coalesce_window_s: float | None = None
    #: Period of the background stale-entry scan.
    revalidate_interval_s: float | None = None
    #: Per-fetch deadline when the data source declares none; 0 disables.
    default_timeout_s: float | None = None
    #: Write dynamic fetch results back into the cache.
    write_through: bool = True
    #: JSON file the cache is loaded from on start and saved to on stop.
    cache_path: Path | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Resolve environment fallbacks and validate configuration."""
        dotenv.load_dotenv(dotenv.find_dotenv(usecwd=True))
        if self.cache_capacity is None:
            object.__setattr__(
                self, "cache_capacity", _env_number("CACHE_CAPACITY", 1024, int)
            )
        if self.coalesce_window_s is None:
            object.__setattr__(
                self,
                "coalesce_window_s",
                _env_number("COALESCE_WINDOW_S", 0.0, float),
            )
        if self.revalidate_interval_s is None:
            object.__setattr__(
                self,
                "revalidate_interval_s",
                _env_number("REVALIDATE_INTERVAL_S", 30.0, float),
            )
        if self.default_timeout_s is None:
            object.__setattr__(
                self,
                "default_timeout_s",
                _env_number("DEFAULT_TIMEOUT_S", 0.0, float),
            )
        if self.cache_path is None:
            raw_path = os.environ.get(_ENV_PREFIX + "CACHE_PATH")
            if raw_path and raw_path.strip():
                object.__setattr__(self, "cache_path", Path(raw_path.strip()))
        elif not isinstance(self.cache_path, Path):
            object.__setattr__(self, "cache_path", Path(self.cache_path))

        if self.cache_capacity < 1:
            raise ConfigurationError(
                f"cache_capacity must be ≥ 1, got {self.cache_capacity}",
                hint="This bounds how many entries the cache keeps before evicting.",
            )
        if self.coalesce_window_s < 0:
            raise ConfigurationError(
                f"coalesce_window_s must be ≥ 0, got {self.coalesce_window_s}",
                hint="Use 0 to coalesce only while a fetch is in flight.",
            )
        if self.revalidate_interval_s <= 0:
            raise ConfigurationError(
                f"revalidate_interval_s must be > 0, got {self.revalidate_interval_s}",
                hint="This controls how often stale cache entries are scanned.",
            )
        if self.default_timeout_s < 0:
            raise ConfigurationError(
                f"default_timeout_s must be ≥ 0, got {self.default_timeout_s}",
                hint="Use 0 to run fetches without a deadline.",
            )
