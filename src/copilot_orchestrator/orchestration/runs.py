"""Run creation and lookup use cases."""

from __future__ import annotations

from typing import Any

from copilot_orchestrator.clock import Clock, SystemClock
from copilot_orchestrator.domain.models import Message, Run, new_id
from copilot_orchestrator.domain.errors import RunNotFoundError
from copilot_orchestrator.storage.base import ChatStore, RunStore


class RunService:
    def __init__(self, runs: RunStore, chat_store: ChatStore, clock: Clock | None = None) -> None:
        self.runs = runs
        self.chat_store = chat_store
        self.clock = clock or SystemClock()

    async def create_run(
        self,
        tenant_id: str,
        user_id: str | None,
        run_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Run:
        if run_id:
            existing = await self.runs.find_by_id(tenant_id, run_id)
            if existing is not None:
                return existing
        return await self.runs.create(
            Run(
                id=run_id or new_id("run"),
                tenant_id=tenant_id,
                created_by_user_id=user_id,
                status="running",
                started_at=self.clock.now(),
                metadata=dict(metadata or {}),
            )
        )

    async def get_run(self, tenant_id: str, run_id: str) -> Run:
        run = await self.runs.find_by_id(tenant_id, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_messages(self, tenant_id: str, run_id: str) -> list[Message]:
        await self.get_run(tenant_id, run_id)
        history = await self.chat_store.load(run_id, tenant_id)
        return history.messages
