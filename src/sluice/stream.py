"""Incremental page streaming: placeholders first, patches as data lands.

Events for one session:

- ``content``: a fragment whose data was ready at open time, in document order.
- ``placeholder``: a fragment still waiting on data, in document order.
- ``patch``: the final payload replacing an earlier placeholder, emitted in
  resolution order and addressed by ``sequence_index``.
- ``error``: like ``patch`` but carrying an error payload because one of the
  fragment's fetches failed.

Each fragment gets exactly one terminal event (content, patch or error).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
import json
import logging
from typing import TYPE_CHECKING, Any, Final

from sluice.errors import InternalError, SluiceError
from sluice.task import Failure

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from sluice.routes import RouteConfig
    from sluice.scheduler import FetchHandle
    from sluice.task import Result

logger = logging.getLogger(__name__)


class _Placeholder:
    __slots__ = ()

    def __repr__(self) -> str:
        return "PLACEHOLDER"


#: Payload of a fragment that has not resolved yet.
PLACEHOLDER: Final = _Placeholder()


class EventKind(str, Enum):
    """Kinds of stream events."""

    CONTENT = "content"
    PLACEHOLDER = "placeholder"
    PATCH = "patch"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One unit sent to the client."""

    kind: EventKind
    sequence_index: int
    payload: bytes = b""
    error: SluiceError | None = None

    @property
    def terminal(self) -> bool:
        return self.kind is not EventKind.PLACEHOLDER


def _empty_render(values: Mapping[str, Any]) -> bytes:
    del values
    return b""


@dataclass
class Fragment:
    """A section of the page and the fetches it waits on."""

    sequence_index: int
    depends_on: frozenset[str] = frozenset()
    render: Callable[[Mapping[str, Any]], bytes] = _empty_render
    payload: bytes | _Placeholder = PLACEHOLDER
    error: SluiceError | None = None

    @property
    def terminal(self) -> bool:
        return self.payload is not PLACEHOLDER


def fragments_for_route(route: RouteConfig) -> list[Fragment]:
    """Build the page's fragments in document order from its declaration."""
    return [
        Fragment(
            sequence_index=idx,
            depends_on=frozenset(spec.depends_on),
            render=spec.render_payload,
        )
        for idx, spec in enumerate(route.fragments)
    ]


def default_error_render(error: SluiceError) -> bytes:
    """Render a failed fragment as a small JSON error document."""
    return json.dumps({"error": str(error)}).encode("utf-8")


class StreamSession:
    """Per-request stream state.

    Iterate with ``async for`` to receive events as they are emitted. The
    session finishes when every fragment is terminal, or immediately on
    ``disconnect()``.
    """

    def __init__(self, fragments: Sequence[Fragment], *, route_id: str | None = None):
        self.route_id = route_id
        self.fragments: list[Fragment] = list(fragments)
        self.events: list[StreamEvent] = []
        self._by_dependency: dict[str, list[Fragment]] = {}
        for fragment in self.fragments:
            for dep in fragment.depends_on:
                self._by_dependency.setdefault(dep, []).append(fragment)
        self._resolved: dict[str, Result] = {}
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._done = asyncio.Event()
        self._cancel_callbacks: list[Callable[[], Any]] = []
        self._disconnected = False
        self.handle: FetchHandle | None = None

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def complete(self) -> bool:
        """Whether every fragment reached a terminal payload."""
        return all(f.terminal for f in self.fragments)

    @property
    def pending(self) -> list[int]:
        return [f.sequence_index for f in self.fragments if not f.terminal]

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        """Run *callback* when the client disconnects before completion."""
        self._cancel_callbacks.append(callback)

    def disconnect(self) -> None:
        """Client went away: stop emitting and cancel outstanding work."""
        if self.closed:
            return
        self._disconnected = True
        logger.debug(
            "Session for %s disconnected with %d pending fragment(s)",
            self.route_id,
            len(self.pending),
        )
        self._close()
        for callback in self._cancel_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed for %s", self.route_id)

    async def wait(self) -> None:
        """Wait until the session completes or disconnects."""
        await self._done.wait()

    def payloads(self) -> list[bytes | None]:
        """Terminal payload per fragment in document order (*None* if pending)."""
        return [
            None if isinstance(f.payload, _Placeholder) else f.payload
            for f in self.fragments
        ]

    async def collect(self) -> list[bytes | None]:
        """Wait for completion and return the final payloads."""
        await self.wait()
        return self.payloads()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def _emit(self, event: StreamEvent) -> None:
        self.events.append(event)
        self._queue.put_nowait(event)

    def _close(self) -> None:
        if self._done.is_set():
            return
        self._done.set()
        self._queue.put_nowait(None)


class StreamEmitter:
    """Drive stream sessions from fetch resolutions."""

    def __init__(
        self, *, error_render: Callable[[SluiceError], bytes] = default_error_render
    ) -> None:
        self._error_render = error_render

    def open(
        self,
        fragments: Sequence[Fragment],
        resolved: Mapping[str, Result] | None = None,
        *,
        route_id: str | None = None,
    ) -> StreamSession:
        """Emit the initial page synchronously and return its session.

        Fragments whose dependencies are all in *resolved* (or that have none)
        emit content now; the rest emit placeholders, all in document order.
        """
        indices = [f.sequence_index for f in fragments]
        if indices != sorted(set(indices)):
            raise ValueError(
                f"Fragments must have unique, increasing sequence indices: {indices}"
            )

        session = StreamSession(fragments, route_id=route_id)
        session._resolved.update(resolved or {})
        for fragment in session.fragments:
            if self._ready(session, fragment):
                self._finalize(session, fragment, EventKind.CONTENT)
            else:
                session._emit(
                    StreamEvent(EventKind.PLACEHOLDER, fragment.sequence_index)
                )
        if session.complete:
            session._close()
        return session

    def attach_resolution(
        self, session: StreamSession, task_id: str, result: Result
    ) -> list[StreamEvent]:
        """Apply one fetch result and emit patches for fragments it completes."""
        if session.closed:
            return []
        if task_id in session._resolved:
            logger.debug("Ignoring duplicate resolution of %s", task_id)
            return []
        session._resolved[task_id] = result

        emitted: list[StreamEvent] = []
        for fragment in session._by_dependency.get(task_id, ()):
            if fragment.terminal or not self._ready(session, fragment):
                continue
            emitted.append(self._finalize(session, fragment, EventKind.PATCH))
        if session.complete:
            session._close()
        return emitted

    @staticmethod
    def _ready(session: StreamSession, fragment: Fragment) -> bool:
        resolved = session._resolved
        if any(isinstance(resolved.get(dep), Failure) for dep in fragment.depends_on):
            return True
        return all(dep in resolved for dep in fragment.depends_on)

    def _finalize(
        self, session: StreamSession, fragment: Fragment, kind: EventKind
    ) -> StreamEvent:
        resolved = session._resolved
        error: SluiceError | None = None
        for dep in sorted(fragment.depends_on):
            outcome = resolved.get(dep)
            if isinstance(outcome, Failure):
                error = outcome.error
                break

        payload = b""
        if error is None:
            values = {dep: resolved[dep].value for dep in fragment.depends_on}  # type: ignore[union-attr]
            try:
                payload = fragment.render(values)
            except Exception as e:
                logger.exception(
                    "Rendering fragment %d of %s failed",
                    fragment.sequence_index,
                    session.route_id,
                )
                error = InternalError(
                    f"Fragment {fragment.sequence_index} failed to render: {e}"
                )

        if error is not None:
            kind = EventKind.ERROR
            payload = self._error_render(error)
            fragment.error = error
        fragment.payload = payload
        event = StreamEvent(kind, fragment.sequence_index, payload, error)
        session._emit(event)
        return event
