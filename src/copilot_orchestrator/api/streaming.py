"""Server-sent event transport for a running turn."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from fastapi.responses import StreamingResponse

from copilot_orchestrator.llm.base import StreamChunk
from copilot_orchestrator.orchestration.commands import TurnCommand
from copilot_orchestrator.orchestration.orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
DONE_EVENT = "data: [DONE]\n\n"

# Turns outlive their HTTP response when the client disconnects.
_running_turns: set[asyncio.Task[None]] = set()


class QueueStreamWriter:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()

    async def write(self, chunk: StreamChunk) -> None:
        await self._queue.put(chunk)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def chunks(self) -> AsyncIterator[StreamChunk]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


def encode_sse(chunk: StreamChunk) -> str:
    return f"data: {chunk.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


async def _drive_turn(
    orchestrator: TurnOrchestrator,
    command: TurnCommand,
    writer: QueueStreamWriter,
    abort: asyncio.Event,
) -> None:
    try:
        await orchestrator.run(command, writer=writer, abort=abort)
    except Exception:
        # Already settled as FAILED and logged by the orchestrator.
        await writer.write(StreamChunk(type="error", error_text="Copilot request failed"))
    finally:
        writer.close()


def stream_turn(orchestrator: TurnOrchestrator, command: TurnCommand) -> StreamingResponse:
    writer = QueueStreamWriter()
    abort = asyncio.Event()
    task = asyncio.create_task(_drive_turn(orchestrator, command, writer, abort))
    _running_turns.add(task)
    task.add_done_callback(_running_turns.discard)

    async def events() -> AsyncIterator[str]:
        try:
            async for chunk in writer.chunks():
                yield encode_sse(chunk)
            yield DONE_EVENT
        finally:
            if not task.done():
                logger.info("copilot_stream event=client_disconnected run_id=%s", command.run_id)
                abort.set()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Copilot-Run-Id": command.run_id},
    )
