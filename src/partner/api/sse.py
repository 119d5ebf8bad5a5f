from __future__ import annotations

"""Server-Sent Events bridge between the orchestrator callbacks and HTTP."""

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi.responses import StreamingResponse

from ..core.app_state import CancellationToken
from ..domain.errors import SessionBusy
from ..services.orchestrator import ChunkCallback, StreamOutcome

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

CycleRunner = Callable[[ChunkCallback, CancellationToken], Awaitable[Optional[StreamOutcome]]]


def outcome_payload(outcome: Optional[StreamOutcome]) -> Dict[str, Any]:
    if outcome is None:
        return {"type": "done", "phase": None}
    return {
        "type": "done",
        "session_id": outcome.session_id,
        "phase": outcome.phase.value,
        "user_message_id": outcome.user_message_id,
        "message_id": outcome.model_message_id,
        "text": outcome.text,
        "error": outcome.error.model_dump(mode="json") if outcome.error else None,
    }


def format_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def event_stream(run: CycleRunner, token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
    """Run one cycle and yield a ``chunk`` event per applied chunk, then ``done``.

    The cycle gets its own cancellation token; closing the stream early
    cancels that token only, so other sessions keep streaming.
    """

    token = token if token is not None else CancellationToken()
    queue: asyncio.Queue = asyncio.Queue()

    async def on_chunk(message_id: str, text: str) -> None:
        await queue.put({"type": "chunk", "message_id": message_id, "text": text})

    async def runner() -> None:
        try:
            outcome = await run(on_chunk, token)
            await queue.put(outcome_payload(outcome))
        except SessionBusy as exc:
            # Lost the race with another send admitted for the same session
            await queue.put({"type": "error", "status": 409, "detail": str(exc)})
        finally:
            await queue.put(None)

    task = asyncio.create_task(runner())
    finished = False
    try:
        while True:
            item = await queue.get()
            if item is None:
                finished = True
                break
            yield format_event(item)
    finally:
        # Client went away mid-stream
        if not finished:
            token.cancel()
        await task


def sse_response(run: CycleRunner) -> StreamingResponse:
    return StreamingResponse(
        event_stream(run),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
