"""Turn orchestration: idempotency gate, then the run graph, then settlement.

``gate`` resolves every non-executing outcome (replay, in progress, mismatch,
frozen failure) without touching runs or messages. ``run`` drives the LangGraph
workflow for a started turn and settles the idempotency record: COMPLETED with
the response summary on success, FAILED with a generic body on any error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from copilot_orchestrator.clock import Clock, SystemClock
from copilot_orchestrator.domain.errors import ModelInvocationError, UnknownToolError
from copilot_orchestrator.domain.models import ChatMetadata, Run, merge_messages, new_id
from copilot_orchestrator.llm.base import LanguageModel, ModelRequest, NullStreamWriter, StreamWriter
from copilot_orchestrator.observability.base import ErrorKind, Observability, TurnTraceParams
from copilot_orchestrator.orchestration.commands import TurnCommand, TurnOutcome
from copilot_orchestrator.orchestration.context import ContextBuilder
from copilot_orchestrator.orchestration.idempotency import (
    IdempotencyCoordinator,
    IdempotencyDecisionKind,
    hash_request,
)
from copilot_orchestrator.orchestration.state import TurnState
from copilot_orchestrator.orchestration.task_state import TaskStateTracker
from copilot_orchestrator.orchestration.workflow import build_turn_graph
from copilot_orchestrator.storage.base import AuditLog, ChatStore, RunStore
from copilot_orchestrator.tools.pipeline import ToolCallContext, ToolExecutionPipeline
from copilot_orchestrator.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CHAT_ACTION_KEY = "copilot.chat"
TURN_COMPLETED_ACTION = "copilot.turn.completed"
FAILURE_BODY = {"error": "copilot_turn_failed", "message": "Copilot request failed"}
MISMATCH_BODY = {
    "error": "idempotency_key_mismatch",
    "message": "Idempotency key was already used with a different request",
}


class TurnOrchestrator:
    def __init__(
        self,
        *,
        idempotency: IdempotencyCoordinator,
        runs: RunStore,
        chat_store: ChatStore,
        audit: AuditLog,
        tool_registry: ToolRegistry,
        tool_pipeline: ToolExecutionPipeline,
        model: LanguageModel,
        observability: Observability,
        context_builder: ContextBuilder | None = None,
        task_tracker: TaskStateTracker | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.idempotency = idempotency
        self.runs = runs
        self.chat_store = chat_store
        self.audit = audit
        self.tool_registry = tool_registry
        self.tool_pipeline = tool_pipeline
        self.model = model
        self.observability = observability
        self.context_builder = context_builder or ContextBuilder()
        self.clock = clock or SystemClock()
        self.task_tracker = task_tracker or TaskStateTracker(self.clock)
        self.graph = build_turn_graph(
            open_run=self._open_run,
            assemble_context=self._assemble_context,
            invoke_model=self._invoke_model,
            persist_turn=self._persist_turn,
        )

    async def gate(self, command: TurnCommand) -> TurnOutcome:
        decision = await self.idempotency.decide(
            CHAT_ACTION_KEY,
            command.tenant_id,
            command.user_id,
            command.idempotency_key,
            hash_request(command.request_fingerprint()),
        )
        logger.info(
            "copilot_gate event=decision decision=%s tenant_id=%s run_id=%s",
            decision.kind.value,
            command.tenant_id,
            command.run_id,
        )
        if decision.kind is IdempotencyDecisionKind.STARTED:
            return TurnOutcome(decision=decision.kind, status_code=200, run_id=command.run_id)
        if decision.kind is IdempotencyDecisionKind.IN_PROGRESS:
            return TurnOutcome(
                decision=decision.kind,
                status_code=202,
                run_id=command.run_id,
                body={"status": "in_progress", "retryAfterMs": decision.retry_after_ms},
                retry_after_ms=decision.retry_after_ms,
            )
        if decision.kind is IdempotencyDecisionKind.MISMATCH:
            return TurnOutcome(
                decision=decision.kind, status_code=409, run_id=command.run_id, body=MISMATCH_BODY
            )
        return TurnOutcome(
            decision=decision.kind,
            status_code=decision.response_status or 500,
            run_id=_frozen_run_id(decision.response_body, command.run_id),
            body=decision.response_body,
        )

    async def run(
        self,
        command: TurnCommand,
        *,
        writer: StreamWriter | None = None,
        abort: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Execute a turn whose gate decision was STARTED and return its response body."""
        tool_specs = self.tool_registry.list_for_tenant(command.tenant_id)
        span = self.observability.start_turn_trace(
            TurnTraceParams(
                run_id=command.run_id,
                tenant_id=command.tenant_id,
                user_id=command.user_id,
                route=CHAT_ACTION_KEY,
                request_id=command.request_id,
                tool_names=tuple(spec.name for spec in tool_specs),
            )
        )
        logger.info(
            "copilot_turn event=start run_id=%s tenant_id=%s trace_id=%s",
            command.run_id,
            command.tenant_id,
            span.trace_id,
        )
        state: TurnState = {
            "command": command,
            "writer": writer or NullStreamWriter(),
            "abort": abort or asyncio.Event(),
            "turn_span": span,
            "tool_specs": tool_specs,
        }
        try:
            final_state = await self.graph.ainvoke(state)
        except Exception as exc:
            self.observability.record_error(span, exc, kind=_error_kind(exc))
            self.observability.end_span(span, error=exc)
            logger.warning(
                "copilot_turn event=failed run_id=%s tenant_id=%s error_type=%s error=%s",
                command.run_id,
                command.tenant_id,
                type(exc).__name__,
                exc,
            )
            await self._settle_failure(command)
            raise

        self.observability.end_span(span)
        logger.info(
            "copilot_turn event=completed run_id=%s tenant_id=%s", command.run_id, command.tenant_id
        )
        return final_state["response"]

    async def execute(
        self,
        command: TurnCommand,
        *,
        writer: StreamWriter | None = None,
        abort: asyncio.Event | None = None,
    ) -> TurnOutcome:
        """Gate and, when started, run the turn to completion without streaming."""
        outcome = await self.gate(command)
        if not outcome.started:
            return outcome
        body = await self.run(command, writer=writer, abort=abort)
        return TurnOutcome(
            decision=outcome.decision, status_code=200, run_id=command.run_id, body=body
        )

    async def _settle_failure(self, command: TurnCommand) -> None:
        try:
            await self.idempotency.fail(
                CHAT_ACTION_KEY,
                command.tenant_id,
                command.idempotency_key,
                response_status=500,
                response_body={**FAILURE_BODY, "runId": command.run_id},
            )
        except Exception:
            logger.exception(
                "copilot_turn event=settle_failed run_id=%s tenant_id=%s",
                command.run_id,
                command.tenant_id,
            )

    async def _open_run(self, state: TurnState) -> dict[str, Any]:
        command = state["command"]
        run = await self.runs.find_by_id(command.tenant_id, command.run_id)
        if run is None:
            run = await self.runs.create(
                Run(
                    id=command.run_id,
                    tenant_id=command.tenant_id,
                    created_by_user_id=command.user_id,
                    status="running",
                    started_at=self.clock.now(),
                    trace_id=state["turn_span"].trace_id,
                )
            )
        elif run.status != "running":
            await self.runs.update_status(run.id, "running")
        stored = await self.chat_store.load(run.id, command.tenant_id)
        return {"run": run, "stored": stored}

    async def _assemble_context(self, state: TurnState) -> dict[str, Any]:
        command = state["command"]
        run = state["run"]
        span = state["turn_span"]
        stored = state["stored"]

        history = merge_messages(stored.messages, command.messages)
        previous = stored.metadata.task_state if stored.metadata else run.task_state
        task_state = self.task_tracker.derive(history, previous)
        await self.chat_store.save(
            run.id,
            command.tenant_id,
            command.messages,
            ChatMetadata(user_id=command.user_id, task_state=task_state),
            trace_id=span.trace_id,
        )

        tools = self.tool_pipeline.bind(
            state["tool_specs"],
            ToolCallContext(
                tenant_id=command.tenant_id,
                user_id=command.user_id,
                run_id=run.id,
                trace_id=span.trace_id,
                parent_span=span,
            ),
        )
        model_messages = self.context_builder.build(history, task_state)
        self.observability.record_turn_input(
            span,
            [message.model_dump(mode="json", by_alias=True, exclude_none=True) for message in history],
        )
        return {
            "history": history,
            "task_state": task_state,
            "model_messages": model_messages,
            "tools": tools,
        }

    async def _invoke_model(self, state: TurnState) -> dict[str, Any]:
        command = state["command"]
        result = await self.model.stream_chat(
            ModelRequest(
                messages=state["model_messages"],
                tools=state["tools"],
                run_id=state["run"].id,
                tenant_id=command.tenant_id,
                user_id=command.user_id,
                message_id=new_id("msg"),
                span=state["turn_span"],
                abort=state["abort"],
            ),
            state["writer"],
        )
        return {"model_result": result}

    async def _persist_turn(self, state: TurnState) -> dict[str, Any]:
        command = state["command"]
        run = state["run"]
        span = state["turn_span"]
        result = state["model_result"]
        response_message = result.response_message

        history = merge_messages(state["history"], [response_message])
        task_state = self.task_tracker.derive(history, state.get("task_state"))
        await self.chat_store.save(
            run.id,
            command.tenant_id,
            [response_message],
            ChatMetadata(user_id=command.user_id, task_state=task_state),
            trace_id=span.trace_id,
        )
        await self.runs.update_status(run.id, "completed", finished_at=self.clock.now())
        await self.audit.write(
            command.tenant_id,
            command.user_id,
            TURN_COMPLETED_ACTION,
            "AgentRun",
            run.id,
            {
                "messageId": response_message.id,
                "finishReason": result.finish_reason,
                "traceId": span.trace_id,
            },
        )
        usage = result.usage.model_dump(by_alias=True) if result.usage else None
        self.observability.record_turn_output(span, result.output_text, usage)

        body = {
            "runId": run.id,
            "messageId": response_message.id,
            "outputText": result.output_text,
            "finishReason": result.finish_reason,
            "usage": usage,
        }
        await self.idempotency.complete(
            CHAT_ACTION_KEY,
            command.tenant_id,
            command.idempotency_key,
            response_status=200,
            response_body=body,
        )
        return {"response": body, "task_state": task_state}


def _error_kind(exc: Exception) -> ErrorKind:
    if isinstance(exc, ModelInvocationError):
        return "provider"
    if isinstance(exc, UnknownToolError):
        return "tool"
    return "system"


def _frozen_run_id(body: Any, fallback: str) -> str:
    if isinstance(body, dict) and isinstance(body.get("runId"), str):
        return body["runId"]
    return fallback
