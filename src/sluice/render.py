"""Render entry point: plan, fetch and stream one route per request."""

from __future__ import annotations

import asyncio
from functools import partial
import logging
from typing import TYPE_CHECKING, Self

from sluice._singleflight import SingleFlight
from sluice.cache import CacheStore
from sluice.config import Config
from sluice.planner import RouteRenderPlanner
from sluice.revalidation import RevalidationClock
from sluice.scheduler import DataFetchScheduler
from sluice.stream import StreamEmitter, default_error_render, fragments_for_route
from sluice.task import Success
from sluice.telemetry import TelemetryContext

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from sluice.errors import SluiceError
    from sluice.request import RequestContext
    from sluice.routes import RouteTable
    from sluice.stream import StreamSession
    from sluice.telemetry import TelemetryContextProtocol

logger = logging.getLogger(__name__)


class Pipeline:
    """Wires the planner, scheduler, emitter, cache and revalidation clock.

    Example:
        async with Pipeline(routes, config=Config()) as pipeline:
            session = await pipeline.render_route("/dashboard", context)
            async for event in session:
                send(event)
    """

    def __init__(
        self,
        routes: RouteTable,
        *,
        config: Config | None = None,
        store: CacheStore | None = None,
        telemetry: TelemetryContextProtocol | None = None,
        error_render: Callable[[SluiceError], bytes] = default_error_render,
    ) -> None:
        self.config = config if config is not None else Config()
        self.routes = routes
        self.telemetry = telemetry if telemetry is not None else TelemetryContext()
        self.store = (
            store if store is not None else CacheStore(self.config.cache_capacity)
        )
        self.flights = SingleFlight(self.config.coalesce_window_s)
        self.revalidation = RevalidationClock(
            self.store,
            interval_s=self.config.revalidate_interval_s,
            retry=self.config.retry,
            telemetry=self.telemetry,
        )
        self.scheduler = DataFetchScheduler(
            flights=self.flights, retry=self.config.retry, telemetry=self.telemetry
        )
        self.planner = RouteRenderPlanner(
            routes, self.store, config=self.config, revalidation=self.revalidation
        )
        self.emitter = StreamEmitter(error_render=error_render)

    async def start(self) -> None:
        """Load persisted cache entries and start background revalidation."""
        path = self.config.cache_path
        if path is not None:
            loaded = self.store.load(path)
            logger.debug("Loaded %d cache entries from %s", loaded, path)
        self.revalidation.start()

    async def stop(self) -> None:
        """Stop background revalidation and persist the cache."""
        await self.revalidation.stop()
        path = self.config.cache_path
        if path is not None:
            try:
                saved = self.store.save(path)
            except OSError as exc:
                # Save failures are logged, never raised from stop().
                logger.warning("Saving cache to %s failed: %s", path, exc)
            else:
                logger.debug("Saved %d cache entries to %s", saved, path)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def render_route(
        self, route_id: str, request_context: RequestContext | None = None
    ) -> StreamSession:
        """Start rendering *route_id* and return its stream session.

        The initial page (cached content and placeholders) is already emitted
        when this returns; patches follow as fetches resolve. Disconnecting
        the session cancels the request's outstanding fetches.

        Raises:
            PlanningError: If the route cannot be planned; nothing is rendered.
        """
        with self.telemetry("render.plan", route_id=route_id):
            plan = self.planner.plan(route_id, request_context)
        self.telemetry.count(f"render.{plan.mode.value}")

        initial = {task_id: Success(value) for task_id, value in plan.cached.items()}
        session = self.emitter.open(
            fragments_for_route(plan.route), initial, route_id=route_id
        )
        if not plan.fetch_plan:
            return session

        handle = self.scheduler.run(
            plan.fetch_plan,
            partial(self.emitter.attach_resolution, session),
            store=self.store if plan.write_through else None,
            default_ttl=plan.route.ttl_seconds,
        )
        session.handle = handle
        session.on_cancel(handle.cancel)
        return session


async def render_to_bytes(
    pipeline: Pipeline,
    route_id: str,
    request_context: RequestContext | None = None,
    *,
    timeout_s: float | None = None,
) -> list[bytes | None]:
    """Render a route and wait for every fragment; useful for non-streaming callers.

    On timeout the session is disconnected and ``TimeoutError`` raised.
    """
    session = await pipeline.render_route(route_id, request_context)
    try:
        async with asyncio.timeout(timeout_s):
            return await session.collect()
    except TimeoutError:
        session.disconnect()
        raise
