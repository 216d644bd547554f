"""Storage interfaces consumed by the turn pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

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


class RunStore(Protocol):
    async def create(self, run: Run) -> Run: ...

    async def update_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        finished_at: datetime | None = None,
    ) -> None: ...

    async def find_by_id(self, tenant_id: str, run_id: str) -> Run | None: ...


class ChatStore(Protocol):
    async def load(self, chat_id: str, tenant_id: str) -> ChatHistory: ...

    async def save(
        self,
        chat_id: str,
        tenant_id: str,
        messages: list[Message],
        metadata: ChatMetadata | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Upsert messages by id; raise TenantMismatchError on cross-tenant ids."""
        ...


class ToolExecutionStore(Protocol):
    async def create(self, execution: ToolExecution) -> None: ...

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
    ) -> None: ...


class IdempotencyStore(Protocol):
    async def get(self, tenant_id: str, action_key: str, key: str) -> IdempotencyRecord | None: ...

    async def create(self, record: IdempotencyRecord) -> bool:
        """Insert the record only if its key is absent; return False when it already exists."""
        ...

    async def reclaim(self, record: IdempotencyRecord, *, previous_updated_at: datetime) -> bool:
        """Replace the stored record only if it was not touched since ``previous_updated_at``."""
        ...

    async def complete(
        self,
        tenant_id: str,
        action_key: str,
        key: str,
        *,
        response_status: int,
        response_body: Any,
        updated_at: datetime,
    ) -> None: ...

    async def fail(
        self,
        tenant_id: str,
        action_key: str,
        key: str,
        *,
        response_status: int,
        response_body: Any,
        updated_at: datetime,
    ) -> None: ...


class AuditLog(Protocol):
    async def write(
        self,
        tenant_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        details: dict[str, Any] | None = None,
    ) -> None: ...


class Outbox(Protocol):
    async def enqueue(
        self,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None: ...
