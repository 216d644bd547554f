"""Offline language model used when no provider is configured."""

from __future__ import annotations

from copilot_orchestrator.domain.errors import TurnCancelledError
from copilot_orchestrator.domain.models import Message, TextPart
from copilot_orchestrator.llm.base import (
    ModelRequest,
    ModelTurnResult,
    StreamChunk,
    StreamWriter,
    TokenUsage,
)


class EchoLanguageModel:
    """Streams a canned reply built from the latest user message, word by word."""

    async def stream_chat(self, request: ModelRequest, writer: StreamWriter) -> ModelTurnResult:
        await writer.write(StreamChunk(type="start", message_id=request.message_id))
        reply = _reply_for(request.messages)
        words = reply.split(" ")
        for index, word in enumerate(words):
            if request.abort.is_set():
                raise TurnCancelledError(f"Turn for run {request.run_id} was cancelled")
            delta = word if index == len(words) - 1 else f"{word} "
            await writer.write(
                StreamChunk(type="text-delta", message_id=request.message_id, delta=delta)
            )
        await writer.write(
            StreamChunk(type="finish", message_id=request.message_id, finish_reason="stop")
        )
        return ModelTurnResult(
            response_message=Message(
                id=request.message_id, role="assistant", parts=[TextPart(text=reply)]
            ),
            output_text=reply,
            usage=TokenUsage(input_tokens=0, output_tokens=len(words), total_tokens=len(words)),
        )


def _reply_for(messages: list[Message]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            text = message.text().strip()
            if text:
                return f"You said: {text}"
    return "How can I help?"
