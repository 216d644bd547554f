"""Derives the in-flight structured-input task from message history."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from copilot_orchestrator.clock import Clock, SystemClock
from copilot_orchestrator.domain.models import (
    COLLECT_INPUTS_TOOL_NAME,
    Message,
    TaskState,
    ToolCallPart,
    ToolResultPart,
)


@dataclass(frozen=True)
class _Form:
    title: str | None
    description: str | None
    required_fields: list[str] | None


class TaskStateTracker:
    """Tracks the most recent ``collect_inputs`` call.

    Only one task is tracked at a time: when several calls are pending, the newest
    one wins and older ones are dropped from the summary.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def derive(self, history: list[Message], previous: TaskState | None = None) -> TaskState | None:
        for index in range(len(history) - 1, -1, -1):
            message = history[index]
            if message.role != "assistant":
                continue
            for part in reversed(message.parts):
                if not isinstance(part, (ToolCallPart, ToolResultPart)):
                    continue
                if part.tool_name != COLLECT_INPUTS_TOOL_NAME or not part.tool_call_id:
                    continue
                return self._state_for(part, history, index, previous)
        return previous

    def _state_for(
        self,
        part: ToolCallPart | ToolResultPart,
        history: list[Message],
        index: int,
        previous: TaskState | None,
    ) -> TaskState:
        tool_call_id = part.tool_call_id or ""
        same_task = previous is not None and previous.tool_call_id == tool_call_id
        carried = previous if same_task else None
        completed = isinstance(part, ToolResultPart) and part.state == "output-available"
        form = _parse_form(part.input)
        now = self.clock.now()

        required_fields = form.required_fields if form else None
        if required_fields is None and previous is not None:
            required_fields = previous.required_fields

        original_user_text = carried.original_user_text if carried else None
        if original_user_text is None:
            original_user_text = _user_text_before(history, index)
        if original_user_text is None and previous is not None:
            original_user_text = previous.original_user_text

        completed_at = None
        if completed:
            completed_at = carried.completed_at if carried and carried.completed_at else now

        return TaskState(
            tool_call_id=tool_call_id,
            status="completed" if completed else "pending",
            title=(form.title if form else None) or (previous.title if previous else None),
            description=(form.description if form else None)
            or (previous.description if previous else None),
            original_user_text=original_user_text,
            required_fields=required_fields,
            created_at=carried.created_at if carried else now,
            completed_at=completed_at,
        )


def _parse_form(raw: object) -> _Form | None:
    # Client tool arguments arrive unvalidated.
    if not isinstance(raw, dict):
        return None
    fields = raw.get("fields")
    required_fields = None
    if isinstance(fields, list):
        required_fields = [
            field["key"]
            for field in fields
            if isinstance(field, dict)
            and field.get("required") is True
            and isinstance(field.get("key"), str)
            and field["key"]
        ]
    return _Form(
        title=_optional_text(raw.get("title")),
        description=_optional_text(raw.get("description")),
        required_fields=required_fields,
    )


def _optional_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _user_text_before(history: list[Message], index: int) -> str | None:
    for position in range(index - 1, -1, -1):
        message = history[position]
        if message.role != "user":
            continue
        text = message.first_text()
        if text is not None:
            return text
    return None
