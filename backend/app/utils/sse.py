import asyncio
import json
from collections.abc import AsyncIterator, Awaitable
from typing import Any

from app.pipeline.events import EventStream, PipelineEvent


def sse_event(event: str, data: Any) -> str:
    payload = json.dumps(data) if not isinstance(data, str) else data
    return f"event: {event}\ndata: {payload}\n\n"


def sse_pipeline_event(event: PipelineEvent) -> str:
    return sse_event(event.type, event.to_wire())


def sse_error(message: str) -> str:
    return sse_event("error", {"message": message})


def sse_done(state: dict | None = None) -> str:
    return sse_event("done", state or {})


async def relay(stream: EventStream, work: Awaitable[Any]) -> AsyncIterator[str]:
    """Run ``work`` while yielding every event it writes into ``stream`` as SSE.

    Exceptions raised by ``work`` propagate after the events emitted so far.
    """
    task = asyncio.ensure_future(work)
    task.add_done_callback(lambda _: stream.close())
    async for event in stream:
        yield sse_pipeline_event(event)
    await task
