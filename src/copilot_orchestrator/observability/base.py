"""Tracing port used by the turn pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

ToolObservationStatus = Literal["ok", "error", "cancelled"]
ErrorKind = Literal["system", "provider", "tool", "validation"]


@dataclass
class SpanRef:
    trace_id: str
    span_id: str | None = None
    span: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class TurnTraceParams:
    run_id: str
    tenant_id: str
    user_id: str
    route: str
    request_id: str | None = None
    tool_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolObservation:
    tool_name: str
    tool_call_id: str
    input: Any = None
    output: Any = None
    status: ToolObservationStatus = "ok"
    duration_ms: float | None = None
    error_type: str | None = None
    error_message: str | None = None


class Observability(Protocol):
    """Implementations must never raise into the caller."""

    def start_turn_trace(self, params: TurnTraceParams) -> SpanRef: ...

    def set_attributes(self, span: SpanRef, attributes: dict[str, Any]) -> None: ...

    def record_turn_input(self, span: SpanRef, messages: list[Any]) -> None: ...

    def record_turn_output(self, span: SpanRef, output_text: str, usage: Any = None) -> None: ...

    def start_span(
        self,
        name: str,
        *,
        parent: SpanRef | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> SpanRef: ...

    def end_span(self, span: SpanRef, *, error: BaseException | None = None) -> None: ...

    def record_tool_observation(self, span: SpanRef, observation: ToolObservation) -> None: ...

    def record_error(
        self,
        span: SpanRef,
        error: BaseException,
        *,
        kind: ErrorKind = "system",
        attributes: dict[str, Any] | None = None,
    ) -> None: ...

    def flush(self) -> None: ...
