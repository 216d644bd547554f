"""Storage backends and ports."""

from copilot_orchestrator.storage.base import (
    AuditLog,
    ChatStore,
    IdempotencyStore,
    Outbox,
    RunStore,
    ToolExecutionStore,
)
from copilot_orchestrator.storage.memory import (
    InMemoryAuditLog,
    InMemoryChatStore,
    InMemoryIdempotencyStore,
    InMemoryOutbox,
    InMemoryRunStore,
    InMemoryToolExecutionStore,
)
from copilot_orchestrator.storage.postgres import (
    PostgresAuditLog,
    PostgresChatStore,
    PostgresDatabase,
    PostgresIdempotencyStore,
    PostgresOutbox,
    PostgresRunStore,
    PostgresToolExecutionStore,
)

__all__ = [
    "AuditLog",
    "ChatStore",
    "IdempotencyStore",
    "InMemoryAuditLog",
    "InMemoryChatStore",
    "InMemoryIdempotencyStore",
    "InMemoryOutbox",
    "InMemoryRunStore",
    "InMemoryToolExecutionStore",
    "Outbox",
    "PostgresAuditLog",
    "PostgresChatStore",
    "PostgresDatabase",
    "PostgresIdempotencyStore",
    "PostgresOutbox",
    "PostgresRunStore",
    "PostgresToolExecutionStore",
    "RunStore",
    "ToolExecutionStore",
]
