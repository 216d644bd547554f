"""Inputs and gate outcomes of a chat turn."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from copilot_orchestrator.domain.models import Message, new_id
from copilot_orchestrator.orchestration.idempotency import IdempotencyDecisionKind


class TurnCommand(BaseModel):
    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    idempotency_key: str = Field(min_length=1)
    messages: list[Message] = Field(min_length=1)
    run_id: str = Field(default_factory=lambda: new_id("run"), min_length=1)
    request_id: str | None = None

    def request_fingerprint(self) -> dict[str, Any]:
        """Content that must match for a retry to count as the same request."""
        fingerprint: dict[str, Any] = {
            "messages": [
                message.model_dump(mode="json", by_alias=True, exclude_none=True)
                for message in self.messages
            ]
        }
        # Only a caller-supplied run id is part of the fingerprint.
        if "run_id" in self.model_fields_set:
            fingerprint["runId"] = self.run_id
        return fingerprint


@dataclass(frozen=True)
class TurnOutcome:
    decision: IdempotencyDecisionKind
    status_code: int
    run_id: str
    body: Any = None
    retry_after_ms: int | None = None

    @property
    def started(self) -> bool:
        return self.decision is IdempotencyDecisionKind.STARTED
