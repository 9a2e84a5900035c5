"""Route declarations: per-route render policy and page structure.

Route and fragment declarations go through a Pydantic schema so malformed
configuration fails at registration time, not mid-render. Fetch declarations
hold live objects (data sources, parameter factories) and are plain frozen
dataclasses.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from sluice.errors import ConfigurationError
from sluice.request import RequestContext  # noqa: TC001 - resolved by Pydantic
from sluice.sources import DataSource

RouteMode = Literal["auto", "static", "dynamic"]
ParamsFactory = Callable[[RequestContext], Mapping[str, Any]]


def _default_render(values: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(values), sort_keys=True, default=str).encode("utf-8")


class FragmentSpec(BaseModel):
    """One independently streamable section of a page.

    ``render`` is the content resolver: it receives the resolved values of
    ``depends_on`` (by fetch name) and returns the payload. A fragment with
    no dependencies renders ``content`` (or an empty payload).
    """

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    depends_on: tuple[str, ...] = ()
    content: str | bytes | None = None
    render: Callable[[Mapping[str, Any]], bytes | str] | None = None

    def render_payload(self, values: Mapping[str, Any]) -> bytes:
        """Produce the terminal payload bytes for this fragment."""
        if self.render is not None:
            out = self.render(values)
        elif self.content is not None:
            out = self.content
        elif self.depends_on:
            out = _default_render(values)
        else:
            out = b""
        return out.encode("utf-8") if isinstance(out, str) else out


class RouteConfig(BaseModel):
    """Per-route declaration consumed by the planner."""

    model_config = ConfigDict(frozen=True)

    route_id: str = Field(min_length=1)
    mode: RouteMode = "auto"
    ttl_seconds: int = Field(default=3600, ge=0)
    required_fetches: tuple[str, ...] = ()
    #: Explicit opt-out of caching; always renders dynamically.
    no_cache: bool = False
    #: Output depends on headers, cookies or search params.
    uses_request_context: bool = False
    #: Page structure in document order. Defaults to one fragment per fetch.
    fragments: tuple[FragmentSpec, ...] = ()

    @model_validator(mode="after")
    def check_fragments(self) -> RouteConfig:
        """Fragments may only depend on fetches the route declares."""
        if len(set(self.required_fetches)) != len(self.required_fetches):
            raise ValueError("required_fetches must not contain duplicates")
        declared = set(self.required_fetches)
        for idx, fragment in enumerate(self.fragments):
            unknown = set(fragment.depends_on) - declared
            if unknown:
                raise ValueError(
                    f"fragments[{idx}] depends on undeclared fetches: {sorted(unknown)}"
                )
        if not self.fragments and self.required_fetches:
            object.__setattr__(
                self,
                "fragments",
                tuple(
                    FragmentSpec(name=name, depends_on=(name,))
                    for name in self.required_fetches
                ),
            )
        return self


@dataclass(frozen=True)
class FetchSpec:
    """A named fetch a route can require: a data source plus its parameters.

    ``params`` may be a callable taking the ``RequestContext``; such fetches
    make every route requiring them request-dependent.
    """

    name: str
    source: DataSource
    params: Mapping[str, Any] | ParamsFactory = field(default_factory=dict)
    ttl_seconds: int | None = None
    timeout_s: float | None = None

    def __post_init__(self) -> None:
        """Validate the declaration eagerly."""
        if not self.name:
            raise ConfigurationError("FetchSpec.name must be non-empty")
        if not isinstance(self.source, DataSource):
            raise ConfigurationError(
                f"FetchSpec {self.name!r}: source has no execute() method",
                hint="Wrap plain coroutines with FunctionSource.",
            )
        if self.ttl_seconds is not None and self.ttl_seconds < 0:
            raise ConfigurationError(
                f"FetchSpec {self.name!r}: ttl_seconds must be ≥ 0"
            )
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(f"FetchSpec {self.name!r}: timeout_s must be > 0")

    @property
    def depends_on_request(self) -> bool:
        return callable(self.params)

    def resolve_params(self, context: RequestContext) -> dict[str, Any]:
        """Return concrete parameters for this request."""
        if callable(self.params):
            return dict(self.params(context))
        return dict(self.params)


class RouteTable:
    """Registry of route declarations and the fetches they can require."""

    def __init__(self) -> None:
        self._routes: dict[str, RouteConfig] = {}
        self._fetches: dict[str, FetchSpec] = {}

    def add_route(self, route: RouteConfig | Mapping[str, Any]) -> RouteConfig:
        """Register a route, validating mappings through ``RouteConfig``."""
        if not isinstance(route, RouteConfig):
            try:
                route = RouteConfig.model_validate(dict(route))
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid route declaration: {e.error_count()} error(s)",
                    hint=str(e),
                ) from e
        self._routes[route.route_id] = route
        return route

    def add_fetch(self, spec: FetchSpec) -> FetchSpec:
        self._fetches[spec.name] = spec
        return spec

    def route(self, route_id: str) -> RouteConfig | None:
        return self._routes.get(route_id)

    def fetch_spec(self, name: str) -> FetchSpec | None:
        return self._fetches.get(name)

    def route_ids(self) -> list[str]:
        return sorted(self._routes)
