"""Language model port and the stream chunks it writes to the client."""

from __future__ import annotations

import asyncio
import http.client
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from copilot_orchestrator.domain.models import Message, WireModel
from copilot_orchestrator.observability.base import SpanRef
from copilot_orchestrator.tools.pipeline import BoundTool

ChunkType = Literal[
    "start",
    "text-delta",
    "tool-input-available",
    "tool-output-available",
    "tool-output-error",
    "finish",
    "error",
]

# Failures of a provider HTTP call that are retried and reported as model errors.
# URLError and TimeoutError are OSError subclasses; bad JSON raises ValueError.
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (OSError, ValueError, http.client.HTTPException)


class StreamChunk(WireModel):
    type: ChunkType
    message_id: str | None = None
    delta: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    input: Any = None
    output: Any = None
    error_text: str | None = None
    finish_reason: str | None = None


class StreamWriter(Protocol):
    async def write(self, chunk: StreamChunk) -> None: ...


class NullStreamWriter:
    async def write(self, chunk: StreamChunk) -> None:
        return None


class CollectingStreamWriter:
    """Keeps every chunk in memory; used for non-streaming callers and tests."""

    def __init__(self) -> None:
        self.chunks: list[StreamChunk] = []

    async def write(self, chunk: StreamChunk) -> None:
        self.chunks.append(chunk)


class TokenUsage(WireModel):
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class ModelRequest:
    messages: list[Message]
    tools: list[BoundTool]
    run_id: str
    tenant_id: str
    user_id: str
    message_id: str
    span: SpanRef | None = None
    abort: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class ModelTurnResult:
    response_message: Message
    output_text: str
    usage: TokenUsage | None = None
    finish_reason: str = "stop"


class LanguageModel(Protocol):
    async def stream_chat(self, request: ModelRequest, writer: StreamWriter) -> ModelTurnResult: ...
