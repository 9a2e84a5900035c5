"""StreamEmitter: initial emission, patches, errors and disconnects."""

from __future__ import annotations

import asyncio
import json

import pytest

from sluice.errors import FetchError
from sluice.stream import EventKind, Fragment, StreamEmitter
from sluice.task import Failure, Success

pytestmark = pytest.mark.unit


def _render_join(values) -> bytes:
    return "|".join(f"{k}:{values[k]}" for k in sorted(values)).encode()


def _page() -> list[Fragment]:
    return [
        Fragment(0, render=lambda _: b"<header>"),
        Fragment(1, frozenset({"a"}), _render_join),
        Fragment(2, frozenset({"a", "b"}), _render_join),
        Fragment(3, frozenset({"c"}), _render_join),
    ]


@pytest.mark.asyncio
async def test_open_emits_ready_fragments_and_placeholders_in_document_order() -> None:
    session = StreamEmitter().open(_page(), {"c": Success(3)})

    assert [(e.kind, e.sequence_index) for e in session.events] == [
        (EventKind.CONTENT, 0),
        (EventKind.PLACEHOLDER, 1),
        (EventKind.PLACEHOLDER, 2),
        (EventKind.CONTENT, 3),
    ]
    assert session.events[3].payload == b"c:3"
    assert session.pending == [1, 2]
    assert not session.closed


@pytest.mark.asyncio
async def test_patches_follow_resolution_order_not_document_order() -> None:
    emitter = StreamEmitter()
    session = emitter.open(_page())

    emitter.attach_resolution(session, "c", Success("C"))
    emitter.attach_resolution(session, "a", Success("A"))
    emitter.attach_resolution(session, "b", Success("B"))

    patches = [(e.sequence_index, e.payload) for e in session.events if e.kind is EventKind.PATCH]
    assert patches == [(3, b"c:C"), (1, b"a:A"), (2, b"a:A|b:B")]
    assert session.closed
    assert session.payloads() == [b"<header>", b"a:A", b"a:A|b:B", b"c:C"]


@pytest.mark.asyncio
async def test_failed_dependency_yields_error_fragment_only_for_dependents() -> None:
    emitter = StreamEmitter()
    session = emitter.open(_page())

    emitter.attach_resolution(session, "b", Failure(FetchError("b failed")))
    emitter.attach_resolution(session, "a", Success("A"))
    emitter.attach_resolution(session, "c", Success("C"))

    by_index = {e.sequence_index: e for e in session.events if e.terminal}
    assert by_index[2].kind is EventKind.ERROR
    assert json.loads(by_index[2].payload) == {"error": "b failed"}
    assert isinstance(by_index[2].error, FetchError)
    assert by_index[1].kind is EventKind.PATCH
    assert by_index[3].kind is EventKind.PATCH
    assert session.closed


@pytest.mark.asyncio
async def test_each_fragment_gets_exactly_one_terminal_event() -> None:
    emitter = StreamEmitter()
    session = emitter.open(_page())

    emitter.attach_resolution(session, "a", Success("A"))
    emitter.attach_resolution(session, "a", Success("again"))
    emitter.attach_resolution(session, "b", Success("B"))
    emitter.attach_resolution(session, "c", Success("C"))

    terminal = [e.sequence_index for e in session.events if e.terminal]
    assert sorted(terminal) == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_render_exception_becomes_error_payload() -> None:
    def broken(values) -> bytes:
        raise KeyError("missing")

    emitter = StreamEmitter(error_render=lambda err: b"ERR")
    session = emitter.open([Fragment(0, frozenset({"a"}), broken)])

    emitter.attach_resolution(session, "a", Success(1))

    assert session.events[-1].kind is EventKind.ERROR
    assert session.events[-1].payload == b"ERR"


@pytest.mark.asyncio
async def test_async_iteration_yields_events_until_complete() -> None:
    emitter = StreamEmitter()
    session = emitter.open(_page())

    async def resolve_later() -> None:
        for task_id in ("a", "b", "c"):
            await asyncio.sleep(0.01)
            emitter.attach_resolution(session, task_id, Success(task_id.upper()))

    feeder = asyncio.create_task(resolve_later())
    kinds = [event.kind async for event in session]
    await feeder

    assert kinds.count(EventKind.PLACEHOLDER) == 3
    assert kinds.count(EventKind.PATCH) == 3


@pytest.mark.asyncio
async def test_disconnect_cancels_and_stops_emission() -> None:
    emitter = StreamEmitter()
    session = emitter.open(_page())
    cancelled: list[bool] = []
    session.on_cancel(lambda: cancelled.append(True))

    emitter.attach_resolution(session, "a", Success("A"))
    before = len(session.events)
    session.disconnect()
    emitted = emitter.attach_resolution(session, "b", Success("B"))

    assert cancelled == [True]
    assert emitted == []
    assert len(session.events) == before
    assert session.disconnected and session.closed


def test_fragments_must_be_ordered_and_unique() -> None:
    with pytest.raises(ValueError, match="sequence indices"):
        StreamEmitter().open([Fragment(1), Fragment(0)])
