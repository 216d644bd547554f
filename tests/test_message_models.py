from __future__ import annotations

from copilot_orchestrator.clock import FixedClock
from copilot_orchestrator.domain.models import (
    ChatMetadata,
    Message,
    TaskState,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    merge_messages,
)


def test_parts_are_parsed_by_type() -> None:
    message = Message.model_validate(
        {
            "id": "a1",
            "role": "assistant",
            "parts": [
                {"type": "text", "text": "Looking that up."},
                {
                    "type": "tool-call",
                    "toolCallId": "c1",
                    "toolName": "lookup_customer",
                    "input": {},
                },
                {
                    "type": "tool-result",
                    "toolCallId": "c2",
                    "toolName": "lookup_customer",
                    "output": {"customerId": "cust-1"},
                },
            ],
        }
    )

    assert [type(part) for part in message.parts] == [TextPart, ToolCallPart, ToolResultPart]
    assert message.parts[1].tool_call_id == "c1"


def test_named_tool_parts_are_folded_by_state() -> None:
    message = Message.model_validate(
        {
            "id": "a1",
            "role": "assistant",
            "parts": [
                {"type": "tool-collect_inputs", "toolCallId": "t1", "state": "input-available"},
                {
                    "type": "tool-collect_inputs",
                    "toolCallId": "t2",
                    "state": "output-available",
                    "output": {"values": {}},
                },
            ],
        }
    )

    call, result = message.parts
    assert isinstance(call, ToolCallPart)
    assert call.tool_name == "collect_inputs"
    assert isinstance(result, ToolResultPart)
    assert result.tool_name == "collect_inputs"


def test_message_dump_uses_camel_case() -> None:
    message = Message(
        id="a1",
        role="assistant",
        parts=[ToolCallPart(tool_call_id="c1", tool_name="collect_inputs")],
    )

    dumped = message.model_dump(mode="json", by_alias=True, exclude_none=True)

    assert dumped["parts"][0]["toolCallId"] == "c1"
    assert dumped["parts"][0]["toolName"] == "collect_inputs"


def test_text_joins_only_text_parts() -> None:
    message = Message(
        id="a1",
        role="assistant",
        parts=[
            TextPart(text="Hello "),
            ToolCallPart(tool_call_id="c1", tool_name="collect_inputs"),
            TextPart(text="there"),
        ],
    )

    assert message.text() == "Hello there"
    assert message.first_text() == "Hello "


def test_merge_replaces_same_id_in_place() -> None:
    stored = [
        Message(id="m1", role="user", parts=[TextPart(text="one")]),
        Message(id="m2", role="assistant", parts=[TextPart(text="two")]),
    ]
    incoming = [
        Message(id="m1", role="user", parts=[TextPart(text="one, edited")]),
        Message(id="m3", role="user", parts=[TextPart(text="three")]),
    ]

    merged = merge_messages(stored, incoming)

    assert [message.id for message in merged] == ["m1", "m2", "m3"]
    assert merged[0].text() == "one, edited"
    assert stored[0].text() == "one"


def test_metadata_merge_keeps_stored_task_state_and_unknown_keys() -> None:
    task = TaskState(tool_call_id="tool-1", status="pending", created_at=FixedClock().now())
    stored = ChatMetadata(user_id="user-1", task_state=task, channel="web")

    merged = stored.merged_with(ChatMetadata(user_id="user-2"))

    assert merged.user_id == "user-2"
    assert merged.task_state == task
    assert merged.model_extra == {"channel": "web"}
