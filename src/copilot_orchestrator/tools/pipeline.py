"""Execution tracking around server-side tool bodies.

Every server tool call is persisted as a ``ToolExecution`` before its body runs
and finalized exactly once afterwards. Success fans out to the audit log and the
outbox; failure is recorded and re-raised so the enclosing turn fails.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from pydantic_core import to_jsonable_python

from copilot_orchestrator.clock import Clock
from copilot_orchestrator.domain.models import ToolExecution
from copilot_orchestrator.observability.base import Observability, SpanRef, ToolObservation
from copilot_orchestrator.storage.base import AuditLog, Outbox, ToolExecutionStore
from copilot_orchestrator.tools.registry import ToolInvocation, ToolKind, ToolSpec

logger = logging.getLogger(__name__)

TOOL_COMPLETED_EVENT = "copilot.tool.completed"

InvokeFn = Callable[[Any, str], Awaitable[Any]]


@dataclass(frozen=True)
class BoundTool:
    """A tool as handed to the model layer.

    ``invoke`` is set only for server tools; client tools round-trip through the
    caller and come back as a tool-result part on the next turn.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    kind: ToolKind
    invoke: InvokeFn | None = None

    @property
    def runs_on_server(self) -> bool:
        return self.invoke is not None


@dataclass(frozen=True)
class ToolCallContext:
    tenant_id: str
    user_id: str
    run_id: str
    trace_id: str | None = None
    parent_span: SpanRef | None = None


class ToolExecutionPipeline:
    def __init__(
        self,
        *,
        tool_executions: ToolExecutionStore,
        audit: AuditLog,
        outbox: Outbox,
        observability: Observability,
        clock: Clock,
    ) -> None:
        self.tool_executions = tool_executions
        self.audit = audit
        self.outbox = outbox
        self.observability = observability
        self.clock = clock

    def bind(self, tools: list[ToolSpec], context: ToolCallContext) -> list[BoundTool]:
        bound: list[BoundTool] = []
        for spec in tools:
            invoke = partial(self.execute, spec, context) if spec.runs_on_server else None
            bound.append(
                BoundTool(
                    name=spec.name,
                    description=spec.description,
                    input_schema=spec.input_schema(),
                    kind=spec.kind,
                    invoke=invoke,
                )
            )
        return bound

    async def execute(
        self,
        spec: ToolSpec,
        context: ToolCallContext,
        raw_input: Any,
        tool_call_id: str,
    ) -> Any:
        # Started tool bodies run to completion even if the turn is cancelled.
        return await asyncio.shield(self._execute(spec, context, raw_input, tool_call_id))

    async def _execute(
        self,
        spec: ToolSpec,
        context: ToolCallContext,
        raw_input: Any,
        tool_call_id: str,
    ) -> Any:
        if spec.execute is None:
            raise ValueError(f"Tool '{spec.name}' has no server implementation")

        await self.tool_executions.create(
            ToolExecution(
                id=ToolExecution.build_id(context.run_id, tool_call_id),
                tenant_id=context.tenant_id,
                run_id=context.run_id,
                tool_call_id=tool_call_id,
                tool_name=spec.name,
                input=to_jsonable_python(raw_input),
                status="pending",
                started_at=self.clock.now(),
                trace_id=context.trace_id,
            )
        )
        span = self.observability.start_span(
            "copilot.tool",
            parent=context.parent_span,
            attributes={
                "copilot.tool.name": spec.name,
                "copilot.tool.call_id": tool_call_id,
                "copilot.run_id": context.run_id,
            },
        )
        started_at = time.perf_counter()
        logger.info(
            "tool_execution event=start run_id=%s tool=%s tool_call_id=%s",
            context.run_id,
            spec.name,
            tool_call_id,
        )

        error: Exception | None = None
        try:
            try:
                payload = spec.input_model.model_validate(raw_input)
                raw_output = await spec.execute(
                    ToolInvocation(
                        tenant_id=context.tenant_id,
                        user_id=context.user_id,
                        input=payload,
                        tool_call_id=tool_call_id,
                        run_id=context.run_id,
                    )
                )
                output = to_jsonable_python(raw_output, by_alias=True)
            except Exception as exc:
                error = exc
                await self._record_failure(
                    spec, context, raw_input, tool_call_id, span, exc, started_at
                )
                raise

            await self.tool_executions.complete(
                context.tenant_id,
                context.run_id,
                tool_call_id,
                status="completed",
                output=output,
                finished_at=self.clock.now(),
            )
            await self.audit.write(
                context.tenant_id,
                context.user_id,
                f"copilot.tool.{spec.name}",
                "ToolExecution",
                ToolExecution.build_id(context.run_id, tool_call_id),
                {"toolCallId": tool_call_id, "runId": context.run_id},
            )
            await self.outbox.enqueue(
                context.tenant_id,
                TOOL_COMPLETED_EVENT,
                {
                    "runId": context.run_id,
                    "toolCallId": tool_call_id,
                    "toolName": spec.name,
                    "tenantId": context.tenant_id,
                },
                correlation_id=context.run_id,
            )
            duration_ms = _duration_ms(started_at)
            self.observability.record_tool_observation(
                span,
                ToolObservation(
                    tool_name=spec.name,
                    tool_call_id=tool_call_id,
                    input=raw_input,
                    output=output,
                    status="ok",
                    duration_ms=duration_ms,
                ),
            )
        except Exception as exc:
            if error is None:
                # The body succeeded but recording its outcome did not.
                error = exc
                self._observe_error(spec, raw_input, tool_call_id, span, exc, started_at)
                logger.warning(
                    "tool_execution event=record_failed run_id=%s tool=%s tool_call_id=%s error=%s",
                    context.run_id,
                    spec.name,
                    tool_call_id,
                    exc,
                )
            raise
        finally:
            self.observability.end_span(span, error=error)

        logger.info(
            "tool_execution event=completed run_id=%s tool=%s tool_call_id=%s duration_ms=%s",
            context.run_id,
            spec.name,
            tool_call_id,
            duration_ms,
        )
        return output

    async def _record_failure(
        self,
        spec: ToolSpec,
        context: ToolCallContext,
        raw_input: Any,
        tool_call_id: str,
        span: SpanRef,
        exc: Exception,
        started_at: float,
    ) -> None:
        try:
            await self.tool_executions.complete(
                context.tenant_id,
                context.run_id,
                tool_call_id,
                status="failed",
                error={"type": type(exc).__name__, "message": str(exc)},
                finished_at=self.clock.now(),
            )
        except Exception:
            # The tool's own error is the one the turn reports.
            logger.exception(
                "tool_execution event=complete_failed run_id=%s tool=%s tool_call_id=%s",
                context.run_id,
                spec.name,
                tool_call_id,
            )
        duration_ms = self._observe_error(spec, raw_input, tool_call_id, span, exc, started_at)
        logger.warning(
            "tool_execution event=failed run_id=%s tool=%s tool_call_id=%s duration_ms=%s error=%s",
            context.run_id,
            spec.name,
            tool_call_id,
            duration_ms,
            exc,
        )

    def _observe_error(
        self,
        spec: ToolSpec,
        raw_input: Any,
        tool_call_id: str,
        span: SpanRef,
        exc: Exception,
        started_at: float,
    ) -> float:
        duration_ms = _duration_ms(started_at)
        self.observability.record_tool_observation(
            span,
            ToolObservation(
                tool_name=spec.name,
                tool_call_id=tool_call_id,
                input=raw_input,
                status="error",
                duration_ms=duration_ms,
                error_type=type(exc).__name__,
                error_message=str(exc),
            ),
        )
        return duration_ms


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
