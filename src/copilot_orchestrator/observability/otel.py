"""OpenTelemetry implementation of the tracing port.

Spans are started explicitly and passed around as ``SpanRef`` values rather than
through the ambient context, so that concurrent turns on one event loop never
share a current span. Without a configured SDK the API hands out non-recording
spans; trace ids then fall back to locally generated ones so runs still carry a
correlation id.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal
from uuid import uuid4

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic_core import to_jsonable_python

from copilot_orchestrator.observability.base import (
    ErrorKind,
    SpanRef,
    ToolObservation,
    TurnTraceParams,
)

logger = logging.getLogger(__name__)

MaskingMode = Literal["off", "standard", "strict"]

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_DIGITS_RE = re.compile(r"\d{6,}")
_MAX_EVENT_CHARS = 4000


def mask_text(text: str, mode: MaskingMode) -> str:
    if mode == "off":
        return text
    if mode == "strict":
        return f"[redacted len={len(text)}]"
    masked = _EMAIL_RE.sub("[email]", text)
    return _DIGITS_RE.sub("[number]", masked)


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(to_jsonable_python(value), ensure_ascii=False, default=str)


def _clean_attributes(attributes: dict[str, Any] | None) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            cleaned[key] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
            cleaned[key] = list(value)
        else:
            cleaned[key] = _to_text(value)
    return cleaned


class OtelObservability:
    def __init__(
        self,
        *,
        masking: MaskingMode = "standard",
        tracer_name: str = "copilot_orchestrator",
    ) -> None:
        self.masking = masking
        self._tracer = trace.get_tracer(tracer_name)

    def start_turn_trace(self, params: TurnTraceParams) -> SpanRef:
        return self.start_span(
            "copilot.turn",
            attributes={
                "copilot.run_id": params.run_id,
                "copilot.tenant_id": params.tenant_id,
                "copilot.user_id": params.user_id,
                "copilot.route": params.route,
                "copilot.request_id": params.request_id,
                "copilot.tools": list(params.tool_names),
            },
        )

    def set_attributes(self, span: SpanRef, attributes: dict[str, Any]) -> None:
        try:
            if span.span is not None:
                span.span.set_attributes(_clean_attributes(attributes))
        except Exception:  # noqa: BLE001
            logger.exception("observability event=set_attributes_failed trace_id=%s", span.trace_id)

    def record_turn_input(self, span: SpanRef, messages: list[Any]) -> None:
        self._add_event(span, "copilot.turn.input", {"messages": messages, "count": len(messages)})

    def record_turn_output(self, span: SpanRef, output_text: str, usage: Any = None) -> None:
        self._add_event(span, "copilot.turn.output", {"text": output_text, "usage": usage})

    def start_span(
        self,
        name: str,
        *,
        parent: SpanRef | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> SpanRef:
        try:
            context = None
            if parent is not None and parent.span is not None:
                context = trace.set_span_in_context(parent.span)
            span = self._tracer.start_span(
                name, context=context, attributes=_clean_attributes(attributes)
            )
            span_context = span.get_span_context()
            if span_context.is_valid:
                return SpanRef(
                    trace_id=format(span_context.trace_id, "032x"),
                    span_id=format(span_context.span_id, "016x"),
                    span=span,
                )
            return SpanRef(trace_id=self._fallback_trace_id(parent), span=span)
        except Exception:  # noqa: BLE001
            logger.exception("observability event=start_span_failed name=%s", name)
            return SpanRef(trace_id=self._fallback_trace_id(parent))

    def end_span(self, span: SpanRef, *, error: BaseException | None = None) -> None:
        if span.span is None:
            return
        try:
            if error is not None:
                span.span.set_status(Status(StatusCode.ERROR, str(error)))
            else:
                span.span.set_status(Status(StatusCode.OK))
            span.span.end()
        except Exception:  # noqa: BLE001
            logger.exception("observability event=end_span_failed trace_id=%s", span.trace_id)

    def record_tool_observation(self, span: SpanRef, observation: ToolObservation) -> None:
        self.set_attributes(
            span,
            {
                "copilot.tool.name": observation.tool_name,
                "copilot.tool.call_id": observation.tool_call_id,
                "copilot.tool.status": observation.status,
                "copilot.tool.duration_ms": observation.duration_ms,
                "copilot.tool.error_type": observation.error_type,
            },
        )
        self._add_event(
            span,
            "copilot.tool.observation",
            {
                "input": observation.input,
                "output": observation.output,
                "error": observation.error_message,
            },
        )

    def record_error(
        self,
        span: SpanRef,
        error: BaseException,
        *,
        kind: ErrorKind = "system",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        if span.span is None:
            return
        try:
            span.span.record_exception(
                error,
                attributes=_clean_attributes({"copilot.error.kind": kind, **(attributes or {})}),
            )
            span.span.set_status(Status(StatusCode.ERROR, str(error)))
        except Exception:  # noqa: BLE001
            logger.exception("observability event=record_error_failed trace_id=%s", span.trace_id)

    def flush(self) -> None:
        provider = trace.get_tracer_provider()
        force_flush = getattr(provider, "force_flush", None)
        if force_flush is None:
            return
        try:
            force_flush()
        except Exception:  # noqa: BLE001
            logger.exception("observability event=flush_failed")

    def _add_event(self, span: SpanRef, name: str, payload: dict[str, Any]) -> None:
        if span.span is None:
            return
        try:
            attributes: dict[str, Any] = {}
            for key, value in payload.items():
                if value is None:
                    continue
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    attributes[key] = value
                    continue
                text = mask_text(_to_text(value), self.masking)
                attributes[key] = text[:_MAX_EVENT_CHARS]
            span.span.add_event(name, attributes=attributes)
        except Exception:  # noqa: BLE001
            logger.exception("observability event=add_event_failed name=%s", name)

    @staticmethod
    def _fallback_trace_id(parent: SpanRef | None) -> str:
        if parent is not None:
            return parent.trace_id
        return uuid4().hex


class NoopObservability:
    """Tracing port that records nothing but still hands out trace ids."""

    def start_turn_trace(self, params: TurnTraceParams) -> SpanRef:
        return SpanRef(trace_id=uuid4().hex)

    def set_attributes(self, span: SpanRef, attributes: dict[str, Any]) -> None:
        return None

    def record_turn_input(self, span: SpanRef, messages: list[Any]) -> None:
        return None

    def record_turn_output(self, span: SpanRef, output_text: str, usage: Any = None) -> None:
        return None

    def start_span(
        self,
        name: str,
        *,
        parent: SpanRef | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> SpanRef:
        return SpanRef(trace_id=parent.trace_id if parent else uuid4().hex)

    def end_span(self, span: SpanRef, *, error: BaseException | None = None) -> None:
        return None

    def record_tool_observation(self, span: SpanRef, observation: ToolObservation) -> None:
        return None

    def record_error(
        self,
        span: SpanRef,
        error: BaseException,
        *,
        kind: ErrorKind = "system",
        attributes: dict[str, Any] | None = None,
    ) -> None:
        return None

    def flush(self) -> None:
        return None
