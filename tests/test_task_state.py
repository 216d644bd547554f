from __future__ import annotations

from copilot_orchestrator.clock import FixedClock
from copilot_orchestrator.domain.models import (
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    merge_messages,
)
from copilot_orchestrator.orchestration.task_state import TaskStateTracker

INVOICE_FORM = {
    "title": "Invoice details",
    "description": "A few values are missing.",
    "fields": [
        {"key": "dueDate", "label": "Due date", "type": "date", "required": True},
        {"key": "notes", "label": "Notes", "type": "textarea"},
    ],
}


def _history() -> list[Message]:
    return [
        Message(id="u1", role="user", parts=[TextPart(text="Generate an invoice draft for ACME")]),
        Message(
            id="a1",
            role="assistant",
            parts=[
                TextPart(text="I need a due date first."),
                ToolCallPart(tool_call_id="tool-1", tool_name="collect_inputs", input=INVOICE_FORM),
            ],
        ),
    ]


def _completed_history() -> list[Message]:
    # The client sends the assistant message back with the form answers attached.
    return merge_messages(
        _history(),
        [
            Message(
                id="a1",
                role="assistant",
                parts=[
                    TextPart(text="I need a due date first."),
                    ToolResultPart(
                        tool_call_id="tool-1",
                        tool_name="collect_inputs",
                        output={"values": {"dueDate": "2025-01-31"}},
                    ),
                ],
            )
        ],
    )


def test_pending_collect_inputs_call_becomes_task_state() -> None:
    tracker = TaskStateTracker(FixedClock())

    state = tracker.derive(_history())

    assert state is not None
    assert state.task_type == "collect_inputs"
    assert state.tool_call_id == "tool-1"
    assert state.status == "pending"
    assert state.original_user_text == "Generate an invoice draft for ACME"
    assert state.required_fields == ["dueDate"]
    assert state.title == "Invoice details"
    assert state.completed_at is None


def test_tool_result_completes_task_and_keeps_original_details() -> None:
    clock = FixedClock()
    tracker = TaskStateTracker(clock)
    pending = tracker.derive(_history())
    assert pending is not None

    clock.advance(30)
    completed = tracker.derive(_completed_history(), pending)

    assert completed is not None
    assert completed.status == "completed"
    assert completed.completed_at == clock.now()
    assert completed.created_at == pending.created_at
    assert completed.original_user_text == "Generate an invoice draft for ACME"
    assert completed.required_fields == ["dueDate"]
    assert completed.title == "Invoice details"


def test_completion_timestamp_is_stable_across_rederivation() -> None:
    clock = FixedClock()
    tracker = TaskStateTracker(clock)
    completed = tracker.derive(_completed_history(), tracker.derive(_history()))
    assert completed is not None

    clock.advance(600)
    again = tracker.derive(_completed_history(), completed)

    assert again is not None
    assert again.completed_at == completed.completed_at


def test_errored_tool_result_keeps_task_pending() -> None:
    history = _history()
    history.append(
        Message(
            id="a2",
            role="assistant",
            parts=[
                ToolResultPart(
                    tool_call_id="tool-1",
                    tool_name="collect_inputs",
                    state="output-error",
                    error_text="user dismissed the form",
                )
            ],
        )
    )

    state = TaskStateTracker(FixedClock()).derive(history)

    assert state is not None
    assert state.status == "pending"


def test_newest_collect_inputs_call_wins() -> None:
    history = _history()
    history.append(Message(id="u2", role="user", parts=[TextPart(text="Actually, do a quote")]))
    history.append(
        Message(
            id="a2",
            role="assistant",
            parts=[
                ToolCallPart(
                    tool_call_id="tool-2",
                    tool_name="collect_inputs",
                    input={
                        "title": "Quote details",
                        "fields": [{"key": "amount", "label": "Amount", "required": True}],
                    },
                )
            ],
        )
    )

    state = TaskStateTracker(FixedClock()).derive(history)

    assert state is not None
    assert state.tool_call_id == "tool-2"
    assert state.original_user_text == "Actually, do a quote"
    assert state.required_fields == ["amount"]


def _history_with_form(form: dict) -> list[Message]:
    return [
        Message(id="u1", role="user", parts=[TextPart(text="Generate an invoice draft for ACME")]),
        Message(
            id="a1",
            role="assistant",
            parts=[ToolCallPart(tool_call_id="tool-1", tool_name="collect_inputs", input=form)],
        ),
    ]


def test_form_without_title_keeps_required_fields() -> None:
    form = {"fields": [{"key": "dueDate", "label": "Due", "type": "date", "required": True}]}

    state = TaskStateTracker(FixedClock()).derive(_history_with_form(form))

    assert state is not None
    assert state.title is None
    assert state.required_fields == ["dueDate"]


def test_loose_field_shapes_still_yield_required_keys() -> None:
    form = {
        "title": "Invoice details",
        "fields": [
            {"key": "email", "type": "email", "required": True},
            {"key": "dueDate", "required": True},
            {"key": "notes", "label": "Notes", "required": "yes"},
            {"label": "No key", "required": True},
            "not-a-field",
        ],
    }

    state = TaskStateTracker(FixedClock()).derive(_history_with_form(form))

    assert state is not None
    assert state.required_fields == ["email", "dueDate"]
    assert state.title == "Invoice details"


def test_new_task_does_not_inherit_previous_completion() -> None:
    clock = FixedClock()
    tracker = TaskStateTracker(clock)
    previous = tracker.derive(_completed_history(), tracker.derive(_history()))
    assert previous is not None

    history = [
        Message(id="u9", role="user", parts=[TextPart(text="Now a credit note")]),
        Message(
            id="a9",
            role="assistant",
            parts=[ToolCallPart(tool_call_id="tool-9", tool_name="collect_inputs", input=None)],
        ),
    ]
    state = tracker.derive(history, previous)

    assert state is not None
    assert state.status == "pending"
    assert state.completed_at is None
    assert state.original_user_text == "Now a credit note"


def test_history_without_task_returns_previous_unchanged() -> None:
    tracker = TaskStateTracker(FixedClock())
    previous = tracker.derive(_history())

    history = [Message(id="u5", role="user", parts=[TextPart(text="hello")])]

    assert tracker.derive(history) is None
    assert tracker.derive(history, previous) == previous


def test_other_tools_are_ignored() -> None:
    history = [
        Message(id="u1", role="user", parts=[TextPart(text="Who is ACME?")]),
        Message(
            id="a1",
            role="assistant",
            parts=[
                ToolResultPart(
                    tool_call_id="call-7",
                    tool_name="lookup_customer",
                    input={"query": "ACME"},
                    output={"customerId": "cust-1"},
                )
            ],
        ),
    ]

    assert TaskStateTracker(FixedClock()).derive(history) is None
