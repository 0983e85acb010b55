"""Tests for app.utils.sse."""

import json

import pytest

from app.pipeline.events import EventStream, OrchestratorEvent
from app.utils.sse import relay, sse_done, sse_event


def _parse(chunk: str) -> tuple[str, dict]:
    event_line, data_line = chunk.strip().split("\n")
    return event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))


def test_framing():
    assert sse_event("done", {"ok": True}) == 'event: done\ndata: {"ok": true}\n\n'
    assert sse_done() == "event: done\ndata: {}\n\n"


async def test_relay_yields_events_in_order():
    stream = EventStream()

    async def work():
        stream.emit(OrchestratorEvent.message_received("c1", "Add export"))
        stream.emit(OrchestratorEvent.phase_changed("c1", "intake", "discovery"))

    chunks = [chunk async for chunk in relay(stream, work())]

    parsed = [_parse(chunk) for chunk in chunks]
    assert [name for name, _ in parsed] == ["message_received", "phase_changed"]
    _, payload = parsed[1]
    assert payload["conversation_id"] == "c1"
    assert payload["data"]["to_phase"] == "discovery"
    assert stream.closed


async def test_relay_reraises_after_emitted_events():
    stream = EventStream()

    async def work():
        stream.emit(OrchestratorEvent.analyzing_intent("c1"))
        raise RuntimeError("boom")

    seen = []
    with pytest.raises(RuntimeError, match="boom"):
        async for chunk in relay(stream, work()):
            seen.append(_parse(chunk)[0])
    assert seen == ["analyzing_intent"]
