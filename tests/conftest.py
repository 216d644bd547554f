from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel

from copilot_orchestrator.api.main import create_app
from copilot_orchestrator.bootstrap import CopilotContainer, build_container
from copilot_orchestrator.clock import FixedClock
from copilot_orchestrator.config.settings import Settings
from copilot_orchestrator.domain.models import Message, TextPart, ToolCallPart, ToolResultPart
from copilot_orchestrator.llm.base import ModelRequest, ModelTurnResult, StreamChunk, StreamWriter
from copilot_orchestrator.observability.base import SpanRef, ToolObservation, TurnTraceParams
from copilot_orchestrator.tools.registry import ToolInvocation, ToolSpec


class RecordingObservability:
    """Test-only tracing port that keeps everything it is told."""

    def __init__(self) -> None:
        self.turns: list[TurnTraceParams] = []
        self.spans: list[tuple[str, SpanRef | None, dict[str, Any]]] = []
        self.ended: list[tuple[SpanRef, BaseException | None]] = []
        self.tool_observations: list[ToolObservation] = []
        self.errors: list[tuple[BaseException, str]] = []
        self.outputs: list[str] = []
        self._counter = 0

    def _next(self, parent: SpanRef | None = None) -> SpanRef:
        self._counter += 1
        trace_id = parent.trace_id if parent else f"trace-{self._counter}"
        return SpanRef(trace_id=trace_id, span_id=f"span-{self._counter}")

    def start_turn_trace(self, params: TurnTraceParams) -> SpanRef:
        self.turns.append(params)
        return self._next()

    def set_attributes(self, span: SpanRef, attributes: dict[str, Any]) -> None:
        return None

    def record_turn_input(self, span: SpanRef, messages: list[Any]) -> None:
        return None

    def record_turn_output(self, span: SpanRef, output_text: str, usage: Any = None) -> None:
        self.outputs.append(output_text)

    def start_span(
        self,
        name: str,
        *,
        parent: SpanRef | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> SpanRef:
        self.spans.append((name, parent, dict(attributes or {})))
        return self._next(parent)

    def end_span(self, span: SpanRef, *, error: BaseException | None = None) -> None:
        self.ended.append((span, error))

    def record_tool_observation(self, span: SpanRef, observation: ToolObservation) -> None:
        self.tool_observations.append(observation)

    def record_error(
        self,
        span: SpanRef,
        error: BaseException,
        *,
        kind: str = "system",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        self.errors.append((error, kind))

    def flush(self) -> None:
        return None


class ScriptedModel:
    """Language model double: calls the scripted tools, then replies with fixed text."""

    def __init__(
        self,
        reply: str = "Done.",
        tool_calls: list[tuple[str, dict[str, Any]]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.reply = reply
        self.tool_calls = list(tool_calls or [])
        self.error = error
        self.requests: list[ModelRequest] = []

    async def stream_chat(self, request: ModelRequest, writer: StreamWriter) -> ModelTurnResult:
        self.requests.append(request)
        await writer.write(StreamChunk(type="start", message_id=request.message_id))
        tools = {tool.name: tool for tool in request.tools}
        parts: list[Any] = []
        for index, (name, args) in enumerate(self.tool_calls):
            call_id = f"call-{len(self.requests)}-{index + 1}"
            tool = tools[name]
            if tool.invoke is None:
                parts.append(ToolCallPart(tool_call_id=call_id, tool_name=name, input=args))
                continue
            output = await tool.invoke(args, call_id)
            parts.append(
                ToolResultPart(tool_call_id=call_id, tool_name=name, input=args, output=output)
            )
        if self.error is not None:
            raise self.error
        parts.append(TextPart(text=self.reply))
        await writer.write(
            StreamChunk(type="text-delta", message_id=request.message_id, delta=self.reply)
        )
        await writer.write(
            StreamChunk(type="finish", message_id=request.message_id, finish_reason="stop")
        )
        return ModelTurnResult(
            response_message=Message(id=request.message_id, role="assistant", parts=parts),
            output_text=self.reply,
        )


class LookupCustomerInput(BaseModel):
    query: str


@dataclass
class ToolCalls:
    lookups: list[ToolInvocation] = field(default_factory=list)
    explosions: int = 0


def build_test_tools(calls: ToolCalls) -> list[ToolSpec]:
    async def lookup_customer(invocation: ToolInvocation) -> dict[str, Any]:
        calls.lookups.append(invocation)
        return {"customerId": "cust-1", "query": invocation.input.query}

    async def explode(invocation: ToolInvocation) -> dict[str, Any]:
        calls.explosions += 1
        raise RuntimeError("boom")

    return [
        ToolSpec(
            name="lookup_customer",
            description="Find a customer by name.",
            input_model=LookupCustomerInput,
            execute=lookup_customer,
        ),
        ToolSpec(
            name="explode",
            description="Always fails.",
            input_model=LookupCustomerInput,
            execute=explode,
        ),
    ]


def user_message(message_id: str, text: str) -> Message:
    return Message(id=message_id, role="user", parts=[TextPart(text=text)])


@dataclass
class Harness:
    container: CopilotContainer
    model: ScriptedModel
    observability: RecordingObservability
    clock: FixedClock
    calls: ToolCalls


def build_harness(model: ScriptedModel | None = None, **settings: Any) -> Harness:
    clock = FixedClock()
    observability = RecordingObservability()
    calls = ToolCalls()
    model = model or ScriptedModel()
    container = build_container(
        Settings(storage_backend="memory", **settings),
        model=model,
        extra_tools=build_test_tools(calls),
        observability=observability,
        clock=clock,
    )
    return Harness(
        container=container,
        model=model,
        observability=observability,
        clock=clock,
        calls=calls,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def client(harness: Harness) -> Iterator[TestClient]:
    with TestClient(create_app(container=harness.container)) as test_client:
        yield test_client
