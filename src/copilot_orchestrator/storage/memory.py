"""In-memory storage backends for tests and local development.

Every check-and-set below runs without an ``await`` in between, so it is atomic
within one event loop. None of this state is shared across processes; use the
PostgreSQL backend for anything that runs more than one worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from copilot_orchestrator.domain.errors import TenantMismatchError
from copilot_orchestrator.domain.models import (
    ChatHistory,
    ChatMetadata,
    IdempotencyRecord,
    Message,
    Run,
    RunStatus,
    ToolExecution,
    ToolExecutionStatus,
)


class InMemoryRunStore:
    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}

    async def create(self, run: Run) -> Run:
        existing = self._runs.get(run.id)
        if existing is not None:
            if existing.tenant_id != run.tenant_id:
                raise TenantMismatchError(f"Run {run.id} belongs to another tenant")
            return existing.model_copy(deep=True)
        self._runs[run.id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def update_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        finished_at: datetime | None = None,
    ) -> None:
        current = self._runs.get(run_id)
        if current is None:
            raise KeyError(f"Run {run_id} does not exist")
        self._runs[run_id] = current.model_copy(
            update={"status": status, "finished_at": finished_at}
        )

    async def find_by_id(self, tenant_id: str, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        if run is None or run.tenant_id != tenant_id:
            return None
        return run.model_copy(deep=True)

    def _put_metadata(self, run: Run, metadata: ChatMetadata) -> None:
        extra = metadata.model_dump(exclude={"task_state"}, exclude_none=True)
        self._runs[run.id] = run.model_copy(
            update={"task_state": metadata.task_state, "metadata": extra}
        )

    def _get(self, run_id: str) -> Run | None:
        return self._runs.get(run_id)


@dataclass
class _StoredMessage:
    tenant_id: str
    run_id: str
    message: Message
    trace_id: str | None


class InMemoryChatStore:
    """Message history keyed by message id, with run metadata kept on the run store."""

    def __init__(self, runs: InMemoryRunStore) -> None:
        self._runs = runs
        self._messages: dict[str, _StoredMessage] = {}

    async def load(self, chat_id: str, tenant_id: str) -> ChatHistory:
        run = self._runs._get(chat_id)
        metadata: ChatMetadata | None = None
        if run is not None and run.tenant_id == tenant_id:
            metadata = ChatMetadata.model_validate(
                {**run.metadata, "task_state": run.task_state}
            )
        messages = [
            stored.message.model_copy(deep=True)
            for stored in self._messages.values()
            if stored.run_id == chat_id and stored.tenant_id == tenant_id
        ]
        return ChatHistory(messages=messages, metadata=metadata)

    async def save(
        self,
        chat_id: str,
        tenant_id: str,
        messages: list[Message],
        metadata: ChatMetadata | None = None,
        trace_id: str | None = None,
    ) -> None:
        if not messages and metadata is None:
            return

        for message in messages:
            existing = self._messages.get(message.id)
            if existing is not None and existing.tenant_id != tenant_id:
                raise TenantMismatchError(f"Message {message.id} belongs to another tenant")

        run = self._runs._get(chat_id)
        if run is None:
            run = await self._runs.create(
                Run(
                    id=chat_id,
                    tenant_id=tenant_id,
                    created_by_user_id=metadata.user_id if metadata else None,
                    status="running",
                    started_at=datetime.now(UTC),
                    trace_id=trace_id,
                )
            )
        elif run.tenant_id != tenant_id:
            raise TenantMismatchError(f"Run {chat_id} belongs to another tenant")

        if metadata is not None:
            current = ChatMetadata.model_validate({**run.metadata, "task_state": run.task_state})
            self._runs._put_metadata(run, current.merged_with(metadata))

        now = datetime.now(UTC)
        for message in messages:
            existing = self._messages.get(message.id)
            created_at = message.created_at or (
                existing.message.created_at if existing is not None else now
            )
            self._messages[message.id] = _StoredMessage(
                tenant_id=tenant_id,
                run_id=existing.run_id if existing is not None else chat_id,
                message=message.model_copy(deep=True, update={"created_at": created_at}),
                trace_id=trace_id,
            )


class InMemoryToolExecutionStore:
    def __init__(self) -> None:
        self.executions: dict[str, ToolExecution] = {}

    async def create(self, execution: ToolExecution) -> None:
        self.executions[execution.id] = execution.model_copy(deep=True)

    async def complete(
        self,
        tenant_id: str,
        run_id: str,
        tool_call_id: str,
        *,
        status: ToolExecutionStatus,
        output: Any = None,
        error: Any = None,
        finished_at: datetime,
    ) -> None:
        execution_id = ToolExecution.build_id(run_id, tool_call_id)
        current = self.executions.get(execution_id)
        if current is None or current.tenant_id != tenant_id:
            raise KeyError(f"Tool execution {execution_id} does not exist")
        self.executions[execution_id] = current.model_copy(
            update={
                "status": status,
                "output": output,
                "error": error,
                "finished_at": finished_at,
            }
        )

    def get(self, run_id: str, tool_call_id: str) -> ToolExecution | None:
        return self.executions.get(ToolExecution.build_id(run_id, tool_call_id))


class InMemoryIdempotencyStore:
    def __init__(self) -> None:
        self._records: dict[tuple[str, str, str], IdempotencyRecord] = {}

    async def get(self, tenant_id: str, action_key: str, key: str) -> IdempotencyRecord | None:
        record = self._records.get((tenant_id, action_key, key))
        return record.model_copy(deep=True) if record else None

    async def create(self, record: IdempotencyRecord) -> bool:
        record_key = (record.tenant_id, record.action_key, record.key)
        if record_key in self._records:
            return False
        self._records[record_key] = record.model_copy(deep=True)
        return True

    async def reclaim(self, record: IdempotencyRecord, *, previous_updated_at: datetime) -> bool:
        record_key = (record.tenant_id, record.action_key, record.key)
        current = self._records.get(record_key)
        if current is None or current.updated_at != previous_updated_at:
            return False
        self._records[record_key] = record.model_copy(deep=True)
        return True

    async def complete(
        self,
        tenant_id: str,
        action_key: str,
        key: str,
        *,
        response_status: int,
        response_body: Any,
        updated_at: datetime,
    ) -> None:
        self._settle(
            (tenant_id, action_key, key),
            status="COMPLETED",
            response_status=response_status,
            response_body=response_body,
            updated_at=updated_at,
        )

    async def fail(
        self,
        tenant_id: str,
        action_key: str,
        key: str,
        *,
        response_status: int,
        response_body: Any,
        updated_at: datetime,
    ) -> None:
        self._settle(
            (tenant_id, action_key, key),
            status="FAILED",
            response_status=response_status,
            response_body=response_body,
            updated_at=updated_at,
        )

    def _settle(
        self,
        record_key: tuple[str, str, str],
        *,
        status: str,
        response_status: int,
        response_body: Any,
        updated_at: datetime,
    ) -> None:
        current = self._records.get(record_key)
        if current is None:
            raise KeyError(f"Idempotency key {record_key!r} does not exist")
        if current.status != "IN_PROGRESS":
            return
        self._records[record_key] = current.model_copy(
            update={
                "status": status,
                "response_status": response_status,
                "response_body": response_body,
                "updated_at": updated_at,
            }
        )


@dataclass(frozen=True)
class AuditEntry:
    id: str
    tenant_id: str
    actor_user_id: str | None
    action: str
    target_type: str
    target_id: str
    details: dict[str, Any] | None
    created_at: datetime


class InMemoryAuditLog:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def write(
        self,
        tenant_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(
            AuditEntry(
                id=str(uuid4()),
                tenant_id=tenant_id,
                actor_user_id=actor_user_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                details=dict(details) if details else None,
                created_at=datetime.now(UTC),
            )
        )


@dataclass(frozen=True)
class OutboxEvent:
    id: str
    tenant_id: str
    event_type: str
    payload: dict[str, Any]
    correlation_id: str | None
    created_at: datetime


class InMemoryOutbox:
    def __init__(self) -> None:
        self.events: list[OutboxEvent] = []

    async def enqueue(
        self,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None:
        self.events.append(
            OutboxEvent(
                id=str(uuid4()),
                tenant_id=tenant_id,
                event_type=event_type,
                payload=dict(payload),
                correlation_id=correlation_id,
                created_at=datetime.now(UTC),
            )
        )
