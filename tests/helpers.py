"""Test helpers (small, reusable builders).

Keep this file tiny: it exists so suites don't each grow their own route and
pipeline wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sluice.cache import CacheEntry, CacheStore
from sluice.config import Config
from sluice.render import Pipeline
from sluice.routes import FetchSpec, FragmentSpec, RouteConfig, RouteTable
from sluice.task import compute_cache_key

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sluice.sources import DataSource


def echo_render(name: str):
    """Content resolver that renders ``name=value`` for one dependency."""

    def _render(values: Mapping[str, Any]) -> str:
        return f"{name}={values[name]}"

    return _render


def build_table(
    sources: Mapping[str, DataSource],
    *,
    route_id: str = "/page",
    static_shell: bool = False,
    **route_kwargs: Any,
) -> RouteTable:
    """One route requiring every source in *sources*, one fragment per source."""
    table = RouteTable()
    for name, source in sources.items():
        table.add_fetch(FetchSpec(name=name, source=source))
    fragments = [
        FragmentSpec(name=name, depends_on=(name,), render=echo_render(name))
        for name in sources
    ]
    if static_shell:
        fragments.insert(0, FragmentSpec(name="shell", content="<header>"))
    table.add_route(
        RouteConfig(
            route_id=route_id,
            required_fetches=tuple(sources),
            fragments=tuple(fragments),
            **route_kwargs,
        )
    )
    return table


def build_pipeline(
    table: RouteTable,
    *,
    store: CacheStore | None = None,
    **config_kwargs: Any,
) -> Pipeline:
    return Pipeline(table, config=Config(**config_kwargs), store=store)


def seed(
    store: CacheStore,
    name: str,
    value: Any,
    *,
    computed_at: float,
    ttl_seconds: int = 1800,
    params: dict[str, Any] | None = None,
) -> CacheEntry:
    """Install a cache entry for fetch *name* as a previous build would have."""
    key = compute_cache_key(name, params or {})
    entry = CacheEntry(
        key=key, value=value, computed_at=computed_at, ttl_seconds=ttl_seconds
    )
    assert store.compare_and_swap(key, None, entry)
    return entry
