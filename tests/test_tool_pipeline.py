from __future__ import annotations

import pytest

from conftest import RecordingObservability, ToolCalls, build_test_tools
from copilot_orchestrator.clock import FixedClock
from copilot_orchestrator.observability.base import SpanRef
from copilot_orchestrator.storage.memory import (
    InMemoryAuditLog,
    InMemoryOutbox,
    InMemoryToolExecutionStore,
)
from copilot_orchestrator.tools.pipeline import (
    TOOL_COMPLETED_EVENT,
    ToolCallContext,
    ToolExecutionPipeline,
)
from copilot_orchestrator.tools.registry import (
    COLLECT_INPUTS_TOOL,
    ToolKind,
    ToolSpec,
    build_registry,
)

PARENT = SpanRef(trace_id="trace-parent", span_id="span-parent")
CONTEXT = ToolCallContext(
    tenant_id="tenant-a",
    user_id="user-1",
    run_id="run-1",
    trace_id="trace-parent",
    parent_span=PARENT,
)


class _Fixture:
    def __init__(self) -> None:
        self.executions = InMemoryToolExecutionStore()
        self.audit = InMemoryAuditLog()
        self.outbox = InMemoryOutbox()
        self.observability = RecordingObservability()
        self.calls = ToolCalls()
        self.pipeline = ToolExecutionPipeline(
            tool_executions=self.executions,
            audit=self.audit,
            outbox=self.outbox,
            observability=self.observability,
            clock=FixedClock(),
        )
        self.tools = {spec.name: spec for spec in build_test_tools(self.calls)}


@pytest.mark.asyncio
async def test_successful_tool_is_recorded_audited_and_published() -> None:
    fx = _Fixture()

    output = await fx.pipeline.execute(
        fx.tools["lookup_customer"], CONTEXT, {"query": "ACME"}, "call-1"
    )

    execution = fx.executions.get("run-1", "call-1")
    assert output == {"customerId": "cust-1", "query": "ACME"}
    assert execution is not None
    assert execution.id == "run-1:call-1"
    assert execution.status == "completed"
    assert execution.output == output
    assert execution.trace_id == "trace-parent"
    assert [entry.action for entry in fx.audit.entries] == ["copilot.tool.lookup_customer"]
    assert fx.outbox.events[0].event_type == TOOL_COMPLETED_EVENT
    assert fx.outbox.events[0].correlation_id == "run-1"
    assert fx.outbox.events[0].payload["toolCallId"] == "call-1"
    assert fx.observability.tool_observations[0].status == "ok"
    name, parent, attributes = fx.observability.spans[0]
    assert name == "copilot.tool"
    assert parent == PARENT
    assert attributes["copilot.tool.name"] == "lookup_customer"
    assert fx.calls.lookups[0].tenant_id == "tenant-a"


@pytest.mark.asyncio
async def test_failing_tool_is_recorded_and_reraised() -> None:
    fx = _Fixture()

    with pytest.raises(RuntimeError, match="boom"):
        await fx.pipeline.execute(fx.tools["explode"], CONTEXT, {"query": "ACME"}, "call-2")

    execution = fx.executions.get("run-1", "call-2")
    assert execution is not None
    assert execution.status == "failed"
    assert execution.error == {"type": "RuntimeError", "message": "boom"}
    assert execution.finished_at is not None
    assert fx.audit.entries == []
    assert fx.outbox.events == []
    assert fx.observability.tool_observations[0].status == "error"
    assert isinstance(fx.observability.ended[0][1], RuntimeError)


@pytest.mark.asyncio
async def test_invalid_input_fails_the_execution_without_running_body() -> None:
    fx = _Fixture()

    with pytest.raises(ValueError):
        await fx.pipeline.execute(fx.tools["lookup_customer"], CONTEXT, {"name": "ACME"}, "call-3")

    execution = fx.executions.get("run-1", "call-3")
    assert execution is not None
    assert execution.status == "failed"
    assert execution.error["type"] == "ValidationError"
    assert fx.calls.lookups == []


class _DownAuditLog(InMemoryAuditLog):
    async def write(self, *args, **kwargs) -> None:
        raise RuntimeError("audit down")


class _UnwritableExecutions(InMemoryToolExecutionStore):
    async def complete(self, *args, **kwargs) -> None:
        raise RuntimeError("store down")


@pytest.mark.asyncio
async def test_span_is_closed_when_audit_fails_after_body() -> None:
    fx = _Fixture()
    fx.pipeline.audit = _DownAuditLog()

    with pytest.raises(RuntimeError, match="audit down"):
        await fx.pipeline.execute(fx.tools["lookup_customer"], CONTEXT, {"query": "ACME"}, "call-5")

    assert len(fx.observability.spans) == 1
    assert len(fx.observability.ended) == 1
    assert str(fx.observability.ended[0][1]) == "audit down"
    assert [obs.status for obs in fx.observability.tool_observations] == ["error"]
    assert fx.outbox.events == []


@pytest.mark.asyncio
async def test_tool_error_survives_failed_execution_update() -> None:
    fx = _Fixture()
    fx.pipeline.tool_executions = _UnwritableExecutions()

    with pytest.raises(RuntimeError, match="boom"):
        await fx.pipeline.execute(fx.tools["explode"], CONTEXT, {"query": "ACME"}, "call-6")

    assert len(fx.observability.ended) == 1
    assert str(fx.observability.ended[0][1]) == "boom"
    assert fx.observability.tool_observations[0].error_message == "boom"


@pytest.mark.asyncio
async def test_bind_wraps_only_server_tools() -> None:
    fx = _Fixture()
    specs = build_registry(fx.tools.values()).list_for_tenant("tenant-a")

    bound = {tool.name: tool for tool in fx.pipeline.bind(specs, CONTEXT)}

    assert set(bound) == {"collect_inputs", "explode", "lookup_customer"}
    assert bound["collect_inputs"].invoke is None
    assert bound["collect_inputs"].kind is ToolKind.CLIENT_CONFIRM
    assert bound["collect_inputs"].input_schema["required"] == ["fields"]
    assert bound["lookup_customer"].runs_on_server

    output = await bound["lookup_customer"].invoke({"query": "Globex"}, "call-4")

    assert output["query"] == "Globex"
    assert fx.executions.get("run-1", "call-4") is not None


def test_registry_scopes_tools_per_tenant() -> None:
    fx = _Fixture()
    registry = build_registry()
    registry.register(fx.tools["lookup_customer"], tenant_id="tenant-a")

    assert [spec.name for spec in registry.list_for_tenant("tenant-a")] == [
        "collect_inputs",
        "lookup_customer",
    ]
    tenant_b = registry.list_for_tenant("tenant-b")
    assert [spec.name for spec in tenant_b] == [COLLECT_INPUTS_TOOL.name]


def test_server_tool_without_body_is_rejected() -> None:
    registry = build_registry()

    with pytest.raises(ValueError):
        registry.register(
            ToolSpec(
                name="broken",
                description="no body",
                input_model=COLLECT_INPUTS_TOOL.input_model,
            )
        )
