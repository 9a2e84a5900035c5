"""Request context: explicit per-request inputs threaded through planning."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


def _freeze(value: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class RequestContext:
    """Request-specific inputs a route may depend on.

    Never stored ambiently: the pipeline passes it to planning and to every
    fetch parameter factory.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    search_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze the mappings so a context cannot change mid-render."""
        object.__setattr__(
            self,
            "headers",
            _freeze({k.lower(): v for k, v in (self.headers or {}).items()}),
        )
        object.__setattr__(self, "cookies", _freeze(self.cookies))
        object.__setattr__(self, "search_params", _freeze(self.search_params))

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


EMPTY_CONTEXT = RequestContext()
