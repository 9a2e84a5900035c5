"""Sluice: render orchestration and streaming for multi-source pages.

Public API:
    - Pipeline: wires planning, fetching, caching and streaming
    - render_route(): start rendering one route for one request
    - RouteTable / RouteConfig / FragmentSpec / FetchSpec: route declarations
    - RequestContext: explicit per-request inputs
    - Config: Configuration dataclass
"""

from __future__ import annotations

import logging

from sluice.cache import CacheEntry, CacheState, CacheStore
from sluice.config import Config
from sluice.errors import (
    ConfigurationError,
    FetchError,
    FetchTimeoutError,
    InternalError,
    PlanningError,
    RevalidationError,
    SluiceError,
)
from sluice.planner import RenderMode, RenderPlan, RouteRenderPlanner
from sluice.render import Pipeline, render_to_bytes
from sluice.request import RequestContext
from sluice.retry import RetryPolicy
from sluice.revalidation import RevalidationClock
from sluice.routes import FetchSpec, FragmentSpec, RouteConfig, RouteTable
from sluice.scheduler import DataFetchScheduler, FetchHandle
from sluice.sources import DataSource, FunctionSource, HttpSource
from sluice.stream import (
    EventKind,
    Fragment,
    StreamEmitter,
    StreamEvent,
    StreamSession,
)
from sluice.task import Failure, FetchTask, Success, compute_cache_key
from sluice.telemetry import SimpleReporter, TelemetryContext

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("sluice-render")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("sluice").addHandler(logging.NullHandler())


async def render_route(
    route_id: str,
    request_context: RequestContext | None = None,
    *,
    pipeline: Pipeline,
) -> StreamSession:
    """Render *route_id* for one request and return its stream session.

    Args:
        route_id: Registered route identifier.
        request_context: Headers, cookies and search params of the request.
        pipeline: The pipeline holding routes, cache and schedulers.

    Returns:
        StreamSession already carrying the initial page; iterate it for patches.

    Example:
        session = await render_route("/products", ctx, pipeline=pipeline)
        async for event in session:
            print(event.kind, event.sequence_index)
    """
    return await pipeline.render_route(route_id, request_context)


__all__ = [
    "CacheEntry",
    "CacheState",
    "CacheStore",
    "Config",
    "ConfigurationError",
    "DataFetchScheduler",
    "DataSource",
    "EventKind",
    "Failure",
    "FetchError",
    "FetchHandle",
    "FetchSpec",
    "FetchTask",
    "FetchTimeoutError",
    "Fragment",
    "FragmentSpec",
    "FunctionSource",
    "HttpSource",
    "InternalError",
    "Pipeline",
    "PlanningError",
    "RenderMode",
    "RenderPlan",
    "RequestContext",
    "RetryPolicy",
    "RevalidationClock",
    "RevalidationError",
    "RouteConfig",
    "RouteRenderPlanner",
    "RouteTable",
    "SimpleReporter",
    "SluiceError",
    "StreamEmitter",
    "StreamEvent",
    "StreamSession",
    "Success",
    "TelemetryContext",
    "compute_cache_key",
    "render_route",
    "render_to_bytes",
]
