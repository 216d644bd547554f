"""Tracing port and its OpenTelemetry implementation."""

from copilot_orchestrator.observability.base import (
    Observability,
    SpanRef,
    ToolObservation,
    TurnTraceParams,
)
from copilot_orchestrator.observability.otel import NoopObservability, OtelObservability, mask_text

__all__ = [
    "NoopObservability",
    "Observability",
    "OtelObservability",
    "SpanRef",
    "ToolObservation",
    "TurnTraceParams",
    "mask_text",
]
