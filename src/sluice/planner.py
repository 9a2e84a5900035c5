"""Route planning: classify a request as static or dynamic and build its fetches."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any

from sluice.cache import CacheState
from sluice.errors import PlanningError
from sluice.request import EMPTY_CONTEXT
from sluice.task import FetchTask, compute_cache_key

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sluice.cache import CacheStore
    from sluice.config import Config
    from sluice.request import RequestContext
    from sluice.revalidation import RevalidationClock
    from sluice.routes import FetchSpec, RouteConfig, RouteTable

logger = logging.getLogger(__name__)


class RenderMode(str, Enum):
    """How a request is rendered."""

    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class RenderPlan:
    """Per-request plan: what to fetch and what the cache already answers."""

    route_id: str
    mode: RenderMode
    fetch_plan: tuple[FetchTask, ...]
    route: RouteConfig
    #: Fetch id -> cached value served without executing the fetch.
    cached: Mapping[str, Any] = field(default_factory=dict)
    #: Keys served stale while a background refresh runs.
    stale_keys: tuple[str, ...] = ()
    #: Whether successful fetch results should be written to the cache.
    write_through: bool = False
    reason: str = ""


class RouteRenderPlanner:
    """Decide per request whether a route renders from cache or at request time."""

    def __init__(
        self,
        routes: RouteTable,
        store: CacheStore,
        *,
        config: Config,
        revalidation: RevalidationClock | None = None,
    ) -> None:
        self._routes = routes
        self._store = store
        self._config = config
        self._revalidation = revalidation

    def plan(
        self, route_id: str, request_context: RequestContext | None = None
    ) -> RenderPlan:
        """Build the render plan for one request.

        Raises:
            PlanningError: If the route is unknown or a required fetch cannot
                be resolved into a FetchTask.
        """
        context = request_context if request_context is not None else EMPTY_CONTEXT
        route = self._routes.route(route_id)
        if route is None:
            raise PlanningError(
                f"Unknown route: {route_id!r}",
                hint="Register the route with RouteTable.add_route().",
                route_id=route_id,
            )

        specs = [self._resolve_spec(route, name) for name in route.required_fetches]
        tasks = tuple(self._build_task(route, spec, context) for spec in specs)

        reason = self._dynamic_reason(route, specs, tasks)
        if reason is not None:
            logger.debug("Route %s renders dynamically: %s", route_id, reason)
            write = self._config.write_through and not route.no_cache
            if write:
                self._register(tasks)
            return RenderPlan(
                route_id=route_id,
                mode=RenderMode.DYNAMIC,
                fetch_plan=tasks,
                route=route,
                write_through=write,
                reason=reason,
            )

        self._register(tasks)

        cached: dict[str, Any] = {}
        stale: list[str] = []
        for task in tasks:
            entry = self._store.get(task.key)
            if entry is None:  # pragma: no cover - checked by _dynamic_reason
                raise PlanningError(
                    f"Cache entry for {task.id!r} vanished during planning",
                    route_id=route_id,
                )
            cached[task.id] = entry.value
            if entry.state is CacheState.FRESH:
                continue
            stale.append(task.key)
            if entry.state is CacheState.STALE and self._revalidation is not None:
                self._revalidation.enqueue(task.key)

        logger.debug(
            "Route %s renders statically (%d cached, %d stale)",
            route_id,
            len(cached),
            len(stale),
        )
        return RenderPlan(
            route_id=route_id,
            mode=RenderMode.STATIC,
            fetch_plan=(),
            route=route,
            cached=cached,
            stale_keys=tuple(stale),
            reason="stale-while-revalidate" if stale else "fresh",
        )

    def _register(self, tasks: tuple[FetchTask, ...]) -> None:
        # Only tasks whose results reach the cache need an origin to refresh from.
        if self._revalidation is not None:
            for task in tasks:
                self._revalidation.register(task)

    def _resolve_spec(self, route: RouteConfig, name: str) -> FetchSpec:
        spec = self._routes.fetch_spec(name)
        if spec is None:
            raise PlanningError(
                f"Route {route.route_id!r} requires unknown fetch {name!r}",
                hint="Register it with RouteTable.add_fetch(FetchSpec(...)).",
                route_id=route.route_id,
            )
        return spec

    def _build_task(
        self, route: RouteConfig, spec: FetchSpec, context: RequestContext
    ) -> FetchTask:
        try:
            params = spec.resolve_params(context)
        except Exception as e:
            raise PlanningError(
                f"Could not resolve parameters for fetch {spec.name!r}: {e}",
                route_id=route.route_id,
            ) from e

        source = spec.source

        async def operation() -> Any:
            return await source.execute(params)

        default_timeout = self._config.default_timeout_s
        return FetchTask(
            id=spec.name,
            key=compute_cache_key(spec.name, params),
            operation=operation,
            ttl_seconds=spec.ttl_seconds
            if spec.ttl_seconds is not None
            else route.ttl_seconds,
            timeout_s=spec.timeout_s or default_timeout or None,
            source=spec.name,
        )

    def _dynamic_reason(
        self,
        route: RouteConfig,
        specs: list[FetchSpec],
        tasks: tuple[FetchTask, ...],
    ) -> str | None:
        if route.no_cache:
            return "no-cache opt-out"
        if route.mode == "dynamic":
            return "declared dynamic"
        if route.uses_request_context or any(s.depends_on_request for s in specs):
            return "depends on request context"
        if any(task.key not in self._store for task in tasks):
            return "no prior static build"
        return None
