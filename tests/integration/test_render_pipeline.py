"""End-to-end rendering through the Pipeline.

These tests exercise real paths through planning, scheduling, caching and
streaming with fake data sources only.
"""

from __future__ import annotations

import asyncio
import time

import pytest

from sluice import render_route
from sluice.cache import CacheState, CacheStore
from sluice.errors import PlanningError
from sluice.planner import RenderMode
from sluice.render import Pipeline, render_to_bytes
from sluice.request import RequestContext
from sluice.routes import FetchSpec, RouteConfig, RouteTable
from sluice.stream import EventKind
from sluice.telemetry import SimpleReporter, TelemetryContext
from tests.conftest import FakeSource, failing
from tests.helpers import build_pipeline, build_table, seed

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_mixed_latency_page_streams_in_resolution_order() -> None:
    sources = {
        "a": FakeSource(value="A", delay_s=0.05),
        "b": FakeSource(delay_s=0.2, error=failing("b unavailable")),
        "c": FakeSource(value="C", delay_s=0.01),
    }
    pipeline = build_pipeline(build_table(sources))

    start = time.perf_counter()
    session = await pipeline.render_route("/page")
    await session.wait()
    elapsed = time.perf_counter() - start

    terminal = [(e.sequence_index, e.kind) for e in session.events if e.terminal]
    assert terminal == [
        (2, EventKind.PATCH),
        (0, EventKind.PATCH),
        (1, EventKind.ERROR),
    ]
    assert session.payloads()[:1] == [b"a=A"]
    assert session.payloads()[2] == b"c=C"
    assert 0.18 <= elapsed < 0.255  # bounded by the slowest fetch, not the sum


@pytest.mark.asyncio
async def test_initial_page_is_emitted_before_any_fetch_resolves() -> None:
    sources = {"a": FakeSource(value="A", delay_s=0.05)}
    pipeline = build_pipeline(build_table(sources, static_shell=True))

    session = await pipeline.render_route("/page")

    assert [(e.kind, e.sequence_index) for e in session.events] == [
        (EventKind.CONTENT, 0),
        (EventKind.PLACEHOLDER, 1),
    ]
    assert session.events[0].payload == b"<header>"
    await session.wait()
    assert session.payloads() == [b"<header>", b"a=A"]


@pytest.mark.asyncio
async def test_first_render_builds_route_and_second_is_served_from_cache() -> None:
    source = FakeSource(value="A")
    pipeline = build_pipeline(build_table({"a": source}))

    first = await render_to_bytes(pipeline, "/page")
    assert pipeline.planner.plan("/page").mode is RenderMode.STATIC

    for _ in range(3):
        assert await render_to_bytes(pipeline, "/page") == first
    assert source.calls == 1


@pytest.mark.asyncio
async def test_fresh_static_route_performs_no_fetches(clock) -> None:
    store = CacheStore(clock=clock)
    seed(store, "a", "cached-A", computed_at=clock.now)
    seed(store, "b", "cached-B", computed_at=clock.now)
    sources = {"a": FakeSource(), "b": FakeSource()}
    pipeline = build_pipeline(build_table(sources), store=store)

    session = await pipeline.render_route("/page")

    assert session.closed
    assert session.handle is None
    assert session.payloads() == [b"a=cached-A", b"b=cached-B"]
    assert all(e.kind is EventKind.CONTENT for e in session.events)
    assert sources["a"].calls == sources["b"].calls == 0


@pytest.mark.asyncio
async def test_empty_caller_store_is_used_not_replaced(clock) -> None:
    store = CacheStore(capacity=10, clock=clock)
    source = FakeSource(value="A")
    pipeline = build_pipeline(build_table({"a": source}), store=store)

    assert pipeline.store is store
    await render_to_bytes(pipeline, "/page")
    await render_to_bytes(pipeline, "/page")

    assert store.keys() == pipeline.store.keys()
    assert len(store) == 1
    assert store.peek(store.keys()[0]).computed_at == clock.now
    assert source.calls == 1


@pytest.mark.asyncio
async def test_stale_route_serves_old_value_and_refreshes_in_background(clock) -> None:
    store = CacheStore(clock=clock)
    entry = seed(store, "a", "old", computed_at=clock.now - 3600, ttl_seconds=1800)
    source = FakeSource(value="new", delay_s=0.05)
    pipeline = build_pipeline(build_table({"a": source}), store=store)

    session = await pipeline.render_route("/page")

    assert session.closed
    assert session.payloads() == [b"a=old"]
    assert pipeline.revalidation.pending == frozenset({entry.key})
    assert store.peek(entry.key).state is CacheState.REVALIDATING

    await pipeline.revalidation.drain()
    assert source.calls == 1
    assert await render_to_bytes(pipeline, "/page") == [b"a=new"]


@pytest.mark.asyncio
async def test_concurrent_dynamic_requests_share_one_execution_per_key() -> None:
    sources = {
        "a": FakeSource(value="A", delay_s=0.05),
        "b": FakeSource(value="B", delay_s=0.03),
    }
    pipeline = build_pipeline(build_table(sources, mode="dynamic"))

    first, second = await asyncio.gather(
        render_to_bytes(pipeline, "/page"),
        render_to_bytes(pipeline, "/page"),
    )

    assert first == second == [b"a=A", b"b=B"]
    assert sources["a"].calls == 1
    assert sources["b"].calls == 1


@pytest.mark.asyncio
async def test_coalescing_window_spans_back_to_back_requests() -> None:
    source = FakeSource(value="A")
    pipeline = build_pipeline(
        build_table({"a": source}, no_cache=True), coalesce_window_s=60.0
    )

    await render_to_bytes(pipeline, "/page")
    await render_to_bytes(pipeline, "/page")

    assert source.calls == 1


@pytest.mark.asyncio
async def test_disconnect_cancels_outstanding_fetches() -> None:
    sources = {
        "a": FakeSource(value="A", delay_s=0.01),
        "b": FakeSource(value="B", delay_s=0.02),
        "c": FakeSource(value="C", delay_s=1.0),
    }
    pipeline = build_pipeline(build_table(sources, mode="dynamic"))
    session = await pipeline.render_route("/page")

    patches = 0
    async for event in session:
        if event.kind is EventKind.PATCH:
            patches += 1
            if patches == 2:
                session.disconnect()
    await session.handle.wait()
    await asyncio.sleep(0.01)

    assert session.disconnected
    assert session.handle.cancelled
    assert sources["c"].cancelled == 1
    assert session.pending == [2]
    assert sum(1 for e in session.events if e.terminal) == 2


@pytest.mark.asyncio
async def test_request_context_is_threaded_into_fetch_params() -> None:
    source = FakeSource(value="profile")
    table = RouteTable()
    table.add_fetch(
        FetchSpec(name="me", source=source, params=lambda ctx: {"uid": ctx.cookies["uid"]})
    )
    table.add_route(RouteConfig(route_id="/me", required_fetches=("me",)))
    pipeline = build_pipeline(table)

    await render_to_bytes(pipeline, "/me", RequestContext(cookies={"uid": "1"}))
    await render_to_bytes(pipeline, "/me", RequestContext(cookies={"uid": "2"}))

    assert source.seen_params == [{"uid": "1"}, {"uid": "2"}]


@pytest.mark.asyncio
async def test_planning_failure_renders_nothing() -> None:
    pipeline = build_pipeline(build_table({"a": FakeSource()}))
    with pytest.raises(PlanningError):
        await render_route("/nope", pipeline=pipeline)


@pytest.mark.asyncio
async def test_render_to_bytes_timeout_disconnects() -> None:
    source = FakeSource(value="A", delay_s=1.0)
    pipeline = build_pipeline(build_table({"a": source}))

    with pytest.raises(TimeoutError):
        await render_to_bytes(pipeline, "/page", timeout_s=0.05)
    await asyncio.sleep(0.01)

    assert source.cancelled == 1


@pytest.mark.asyncio
async def test_cache_persists_across_pipeline_restarts(tmp_path) -> None:
    path = tmp_path / "cache.json"
    source = FakeSource(value={"n": 1})
    table = build_table({"a": source})

    async with build_pipeline(table, cache_path=path) as pipeline:
        await render_to_bytes(pipeline, "/page")
    assert path.exists()

    async with build_pipeline(table, cache_path=path) as restarted:
        plan = restarted.planner.plan("/page")
        assert plan.mode is RenderMode.STATIC
        assert plan.cached == {"a": {"n": 1}}
    assert source.calls == 1


@pytest.mark.asyncio
async def test_telemetry_counts_render_modes_and_failures() -> None:
    reporter = SimpleReporter()
    table = build_table({"a": FakeSource(error=failing())}, mode="dynamic")
    pipeline = Pipeline(table, telemetry=TelemetryContext(reporter, enabled=True))

    await render_to_bytes(pipeline, "/page")

    assert reporter.total("render.dynamic") == 1
    assert reporter.total("fetch.failed") == 1
    assert "render.plan" in reporter.timings
