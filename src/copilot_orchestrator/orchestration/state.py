"""Typed state contract for the turn graph."""

import asyncio
from typing import Any, TypedDict

from copilot_orchestrator.domain.models import ChatHistory, Message, Run, TaskState
from copilot_orchestrator.llm.base import ModelTurnResult, StreamWriter
from copilot_orchestrator.observability.base import SpanRef
from copilot_orchestrator.orchestration.commands import TurnCommand
from copilot_orchestrator.tools.pipeline import BoundTool
from copilot_orchestrator.tools.registry import ToolSpec


class TurnState(TypedDict, total=False):
    command: TurnCommand
    writer: StreamWriter
    abort: asyncio.Event
    turn_span: SpanRef
    tool_specs: list[ToolSpec]
    run: Run
    stored: ChatHistory
    history: list[Message]
    task_state: TaskState | None
    model_messages: list[Message]
    tools: list[BoundTool]
    model_result: ModelTurnResult
    response: dict[str, Any]
