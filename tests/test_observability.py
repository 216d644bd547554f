from __future__ import annotations

import logging
from typing import Any

import pytest

from copilot_orchestrator.observability.base import SpanRef, ToolObservation, TurnTraceParams
from copilot_orchestrator.observability.otel import NoopObservability, OtelObservability, mask_text


class _BrokenSpan:
    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        raise RuntimeError("exporter down")

    def set_attributes(self, attributes: dict[str, Any]) -> None:
        raise RuntimeError("exporter down")

    def set_status(self, status: Any) -> None:
        raise RuntimeError("exporter down")

    def end(self) -> None:
        raise RuntimeError("exporter down")


class _RecordingSpan:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        self.events.append((name, dict(attributes or {})))


def _params() -> TurnTraceParams:
    return TurnTraceParams(
        run_id="run-1",
        tenant_id="tenant-a",
        user_id="user-1",
        route="copilot.chat",
        tool_names=("collect_inputs",),
    )


def test_standard_masking_hides_emails_and_long_numbers() -> None:
    text = "Mail jane.doe@acme.io about invoice 20250131 for 42 units"

    assert mask_text(text, "standard") == "Mail [email] about invoice [number] for 42 units"
    assert mask_text(text, "strict") == f"[redacted len={len(text)}]"
    assert mask_text(text, "off") == text


def test_trace_ids_exist_without_sdk() -> None:
    observability = OtelObservability()

    turn = observability.start_turn_trace(_params())
    child = observability.start_span("copilot.tool", parent=turn)

    assert len(turn.trace_id) == 32
    assert child.trace_id == turn.trace_id
    observability.end_span(child)
    observability.end_span(turn)


def test_events_are_masked_before_export() -> None:
    observability = OtelObservability(masking="standard")
    span = _RecordingSpan()

    observability.record_turn_output(SpanRef(trace_id="t", span=span), "Reach me at a@b.co")

    name, attributes = span.events[0]
    assert name == "copilot.turn.output"
    assert attributes == {"text": "Reach me at [email]"}


def test_exporter_failures_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    observability = OtelObservability()
    span = SpanRef(trace_id="t", span=_BrokenSpan())

    with caplog.at_level(logging.ERROR, logger="copilot_orchestrator.observability.otel"):
        observability.record_turn_input(span, [{"role": "user"}])
        observability.record_tool_observation(
            span, ToolObservation(tool_name="lookup_customer", tool_call_id="c1")
        )
        observability.end_span(span, error=RuntimeError("turn failed"))

    assert "add_event_failed" in caplog.text
    assert "end_span_failed" in caplog.text


def test_noop_observability_keeps_parent_trace() -> None:
    observability = NoopObservability()

    turn = observability.start_turn_trace(_params())

    assert observability.start_span("copilot.tool", parent=turn).trace_id == turn.trace_id
