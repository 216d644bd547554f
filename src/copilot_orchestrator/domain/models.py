"""Domain records shared by the orchestrator, storage backends and the API.

Messages and their parts use camelCase on the wire (``toolCallId``, ``toolName``)
so that chat clients can send them back unchanged on the next turn. Every
other record is snake_case, matching the storage columns.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

RunStatus = Literal["running", "completed", "failed"]
MessageRole = Literal["system", "user", "assistant"]
ToolExecutionStatus = Literal["pending", "completed", "failed"]
IdempotencyStatus = Literal["IN_PROGRESS", "COMPLETED", "FAILED"]
TaskStatus = Literal["pending", "completed"]

COLLECT_INPUTS_TOOL_NAME = "collect_inputs"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class WireModel(BaseModel):
    """Base model that accepts and emits camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TextPart(WireModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(WireModel):
    """A tool invocation requested by the model that has no result yet."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str | None = None
    tool_name: str
    state: Literal["input-streaming", "input-available"] = "input-available"
    input: Any = None


class ToolResultPart(WireModel):
    """A tool invocation together with its result (or error)."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str | None = None
    tool_name: str
    state: Literal["output-available", "output-error"] = "output-available"
    input: Any = None
    output: Any = None
    error_text: str | None = None


MessagePart = Annotated[TextPart | ToolCallPart | ToolResultPart, Field(discriminator="type")]

_TOOL_PART_TYPES = {"tool-call", "tool-result"}


def _normalize_part(raw: Any) -> Any:
    # Chat clients may send `tool-<name>` typed parts; fold them into the two
    # tool variants keyed by their state.
    if not isinstance(raw, dict):
        return raw
    part_type = raw.get("type")
    if not isinstance(part_type, str) or not part_type.startswith("tool-"):
        return raw
    if part_type in _TOOL_PART_TYPES:
        return raw
    normalized = dict(raw)
    normalized.setdefault("toolName", part_type[len("tool-") :])
    state = raw.get("state")
    if state in ("output-available", "output-error"):
        normalized["type"] = "tool-result"
    else:
        normalized["type"] = "tool-call"
        normalized["state"] = state if state == "input-streaming" else "input-available"
    return normalized


class Message(WireModel):
    """One immutable-once-written unit of conversation."""

    id: str = Field(min_length=1)
    role: MessageRole
    parts: list[MessagePart] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None

    @field_validator("parts", mode="before")
    @classmethod
    def _normalize_parts(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_normalize_part(item) for item in value]
        return value

    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def first_text(self) -> str | None:
        for part in self.parts:
            if isinstance(part, TextPart):
                return part.text
        return None


def merge_messages(stored: list[Message], incoming: list[Message]) -> list[Message]:
    """Merge messages by id: same-id messages are replaced in place, new ones appended."""
    merged = list(stored)
    positions = {message.id: index for index, message in enumerate(merged)}
    for message in incoming:
        index = positions.get(message.id)
        if index is None:
            positions[message.id] = len(merged)
            merged.append(message)
        else:
            merged[index] = message
    return merged


class TaskState(BaseModel):
    """Summary of an in-flight structured-input task, derived from history."""

    version: Literal[1] = 1
    task_type: Literal["collect_inputs"] = "collect_inputs"
    tool_call_id: str
    status: TaskStatus
    title: str | None = None
    description: str | None = None
    original_user_text: str | None = None
    required_fields: list[str] | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ChatMetadata(BaseModel):
    """Run-level chat metadata; unknown keys are carried through untouched."""

    model_config = ConfigDict(extra="allow")

    user_id: str | None = None
    task_state: TaskState | None = None

    def merged_with(self, incoming: ChatMetadata | None) -> ChatMetadata:
        if incoming is None:
            return self.model_copy(deep=True)
        merged = self.model_dump(exclude_none=True)
        merged.update(incoming.model_dump(exclude_none=True))
        merged["task_state"] = incoming.task_state or self.task_state
        return ChatMetadata.model_validate(merged)


class ChatHistory(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    metadata: ChatMetadata | None = None


class Run(BaseModel):
    """Execution record of a conversation, owned by one tenant."""

    id: str
    tenant_id: str
    created_by_user_id: str | None = None
    status: RunStatus = "running"
    started_at: datetime
    finished_at: datetime | None = None
    trace_id: str | None = None
    task_state: TaskState | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolExecution(BaseModel):
    """One server-side tool invocation inside a run."""

    id: str
    tenant_id: str
    run_id: str
    tool_call_id: str
    tool_name: str
    input: Any = None
    status: ToolExecutionStatus = "pending"
    output: Any = None
    error: Any = None
    started_at: datetime
    finished_at: datetime | None = None
    trace_id: str | None = None

    @staticmethod
    def build_id(run_id: str, tool_call_id: str) -> str:
        return f"{run_id}:{tool_call_id}"


class IdempotencyRecord(BaseModel):
    tenant_id: str
    action_key: str
    key: str
    user_id: str | None = None
    request_hash: str | None = None
    status: IdempotencyStatus = "IN_PROGRESS"
    response_status: int | None = None
    response_body: Any = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
