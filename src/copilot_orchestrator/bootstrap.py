"""Wiring of stores, model, tools and the orchestrator from settings."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from copilot_orchestrator.clock import Clock, SystemClock
from copilot_orchestrator.config.settings import Settings
from copilot_orchestrator.llm.base import LanguageModel
from copilot_orchestrator.llm.factory import resolve_language_model
from copilot_orchestrator.observability.base import Observability
from copilot_orchestrator.observability.otel import NoopObservability, OtelObservability
from copilot_orchestrator.orchestration.context import ContextBuilder
from copilot_orchestrator.orchestration.idempotency import IdempotencyCoordinator
from copilot_orchestrator.orchestration.orchestrator import TurnOrchestrator
from copilot_orchestrator.orchestration.runs import RunService
from copilot_orchestrator.orchestration.task_state import TaskStateTracker
from copilot_orchestrator.storage import (
    AuditLog,
    ChatStore,
    IdempotencyStore,
    InMemoryAuditLog,
    InMemoryChatStore,
    InMemoryIdempotencyStore,
    InMemoryOutbox,
    InMemoryRunStore,
    InMemoryToolExecutionStore,
    Outbox,
    PostgresAuditLog,
    PostgresChatStore,
    PostgresDatabase,
    PostgresIdempotencyStore,
    PostgresOutbox,
    PostgresRunStore,
    PostgresToolExecutionStore,
    RunStore,
    ToolExecutionStore,
)
from copilot_orchestrator.tools.pipeline import ToolExecutionPipeline
from copilot_orchestrator.tools.registry import ToolRegistry, ToolSpec, build_registry

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    runs: RunStore
    chat: ChatStore
    tool_executions: ToolExecutionStore
    idempotency: IdempotencyStore
    audit: AuditLog
    outbox: Outbox
    database: PostgresDatabase | None = None


@dataclass
class CopilotContainer:
    settings: Settings
    stores: Stores
    tool_registry: ToolRegistry
    observability: Observability
    orchestrator: TurnOrchestrator
    run_service: RunService
    model_mode: str

    async def startup(self) -> None:
        if self.stores.database is not None:
            await self.stores.database.migrate()
            logger.info("storage event=migrated backend=postgres")


def build_stores(settings: Settings) -> Stores:
    if settings.storage_backend == "postgres":
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set COPILOT_DATABASE_URL or DATABASE_URL "
                "before starting with the postgres storage backend."
            )
        database = PostgresDatabase(database_url)
        return Stores(
            runs=PostgresRunStore(database),
            chat=PostgresChatStore(database),
            tool_executions=PostgresToolExecutionStore(database),
            idempotency=PostgresIdempotencyStore(database),
            audit=PostgresAuditLog(database),
            outbox=PostgresOutbox(database),
            database=database,
        )

    runs = InMemoryRunStore()
    return Stores(
        runs=runs,
        chat=InMemoryChatStore(runs),
        tool_executions=InMemoryToolExecutionStore(),
        idempotency=InMemoryIdempotencyStore(),
        audit=InMemoryAuditLog(),
        outbox=InMemoryOutbox(),
    )


def build_container(
    settings: Settings,
    *,
    stores: Stores | None = None,
    model: LanguageModel | None = None,
    tool_registry: ToolRegistry | None = None,
    extra_tools: Iterable[ToolSpec] = (),
    observability: Observability | None = None,
    clock: Clock | None = None,
) -> CopilotContainer:
    clock = clock or SystemClock()
    stores = stores or build_stores(settings)
    registry = tool_registry or build_registry(extra_tools)
    if observability is None:
        observability = (
            OtelObservability(masking=settings.trace_masking)
            if settings.tracing_enabled
            else NoopObservability()
        )

    model_mode = "custom"
    if model is None:
        resolution = resolve_language_model(settings)
        model = resolution.model
        model_mode = resolution.effective_mode
        if resolution.fallback_reason:
            logger.warning(
                "llm event=fallback requested_mode=%s effective_mode=%s reason=%s",
                resolution.requested_mode,
                resolution.effective_mode,
                resolution.fallback_reason,
            )

    orchestrator = TurnOrchestrator(
        idempotency=IdempotencyCoordinator(
            stores.idempotency,
            clock,
            ttl_s=settings.idempotency_ttl_s,
            lock_timeout_s=settings.idempotency_lock_timeout_s,
            retry_after_ms=settings.idempotency_retry_after_ms,
        ),
        runs=stores.runs,
        chat_store=stores.chat,
        audit=stores.audit,
        tool_registry=registry,
        tool_pipeline=ToolExecutionPipeline(
            tool_executions=stores.tool_executions,
            audit=stores.audit,
            outbox=stores.outbox,
            observability=observability,
            clock=clock,
        ),
        model=model,
        observability=observability,
        context_builder=ContextBuilder(settings.context_window_size),
        task_tracker=TaskStateTracker(clock),
        clock=clock,
    )
    return CopilotContainer(
        settings=settings,
        stores=stores,
        tool_registry=registry,
        observability=observability,
        orchestrator=orchestrator,
        run_service=RunService(stores.runs, stores.chat, clock),
        model_mode=model_mode,
    )
