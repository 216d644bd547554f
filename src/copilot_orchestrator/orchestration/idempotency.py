"""Idempotency gate for side-effecting actions.

A key moves from IN_PROGRESS to exactly one terminal state. Terminal records are
frozen: later requests with the same key replay the stored response instead of
executing again. Correctness under concurrency rests on the store: ``create`` must
be an atomic create-if-absent and ``reclaim`` a compare-and-set on ``updated_at``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic_core import to_jsonable_python

from copilot_orchestrator.clock import Clock
from copilot_orchestrator.domain.errors import StorageError
from copilot_orchestrator.domain.models import IdempotencyRecord
from copilot_orchestrator.storage.base import IdempotencyStore

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 24 * 60 * 60
DEFAULT_LOCK_TIMEOUT_S = 120.0
DEFAULT_RETRY_AFTER_MS = 1000


class IdempotencyDecisionKind(str, Enum):
    STARTED = "STARTED"
    REPLAY = "REPLAY"
    IN_PROGRESS = "IN_PROGRESS"
    MISMATCH = "MISMATCH"
    FAILED = "FAILED"


@dataclass(frozen=True)
class IdempotencyDecision:
    kind: IdempotencyDecisionKind
    response_status: int | None = None
    response_body: Any = None
    retry_after_ms: int | None = None


def hash_request(payload: Any) -> str:
    canonical = json.dumps(
        to_jsonable_python(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyCoordinator:
    def __init__(
        self,
        store: IdempotencyStore,
        clock: Clock,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S,
        retry_after_ms: int = DEFAULT_RETRY_AFTER_MS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_s)
        self.lock_timeout = timedelta(seconds=lock_timeout_s)
        self.retry_after_ms = retry_after_ms

    async def decide(
        self,
        action_key: str,
        tenant_id: str,
        user_id: str | None,
        idempotency_key: str,
        request_hash: str | None,
    ) -> IdempotencyDecision:
        started = IdempotencyDecision(IdempotencyDecisionKind.STARTED)
        record = await self.store.get(tenant_id, action_key, idempotency_key)

        if record is not None and record.expires_at <= self.clock.now():
            fresh = self._new_record(action_key, tenant_id, user_id, idempotency_key, request_hash)
            if await self.store.reclaim(fresh, previous_updated_at=record.updated_at):
                logger.info(
                    "idempotency event=expired_reclaimed action=%s tenant_id=%s",
                    action_key,
                    tenant_id,
                )
                return started
            record = await self.store.get(tenant_id, action_key, idempotency_key)

        if record is None:
            fresh = self._new_record(action_key, tenant_id, user_id, idempotency_key, request_hash)
            if await self.store.create(fresh):
                return started
            record = await self.store.get(tenant_id, action_key, idempotency_key)
            if record is None:
                raise StorageError(
                    f"Idempotency key for action {action_key} disappeared during creation"
                )

        return await self._decide_existing(record, user_id, request_hash)

    async def complete(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        *,
        response_status: int = 200,
        response_body: Any = None,
    ) -> None:
        await self.store.complete(
            tenant_id,
            action_key,
            idempotency_key,
            response_status=response_status,
            response_body=to_jsonable_python(response_body),
            updated_at=self.clock.now(),
        )

    async def fail(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        *,
        response_status: int = 500,
        response_body: Any = None,
    ) -> None:
        await self.store.fail(
            tenant_id,
            action_key,
            idempotency_key,
            response_status=response_status,
            response_body=to_jsonable_python(response_body),
            updated_at=self.clock.now(),
        )

    async def _decide_existing(
        self,
        record: IdempotencyRecord,
        user_id: str | None,
        request_hash: str | None,
    ) -> IdempotencyDecision:
        if record.request_hash and request_hash and record.request_hash != request_hash:
            logger.warning(
                "idempotency event=mismatch action=%s tenant_id=%s",
                record.action_key,
                record.tenant_id,
            )
            return IdempotencyDecision(IdempotencyDecisionKind.MISMATCH)

        if record.status == "COMPLETED":
            return IdempotencyDecision(
                IdempotencyDecisionKind.REPLAY,
                response_status=record.response_status or 200,
                response_body=record.response_body,
            )

        if record.status == "FAILED":
            return IdempotencyDecision(
                IdempotencyDecisionKind.FAILED,
                response_status=record.response_status or 500,
                response_body=record.response_body,
            )

        if self.clock.now() - record.updated_at >= self.lock_timeout:
            fresh = self._new_record(
                record.action_key,
                record.tenant_id,
                user_id,
                record.key,
                request_hash or record.request_hash,
            )
            if await self.store.reclaim(fresh, previous_updated_at=record.updated_at):
                logger.info(
                    "idempotency event=stale_lock_reclaimed action=%s tenant_id=%s",
                    record.action_key,
                    record.tenant_id,
                )
                return IdempotencyDecision(IdempotencyDecisionKind.STARTED)

        return IdempotencyDecision(
            IdempotencyDecisionKind.IN_PROGRESS, retry_after_ms=self.retry_after_ms
        )

    def _new_record(
        self,
        action_key: str,
        tenant_id: str,
        user_id: str | None,
        idempotency_key: str,
        request_hash: str | None,
    ) -> IdempotencyRecord:
        now = self.clock.now()
        return IdempotencyRecord(
            tenant_id=tenant_id,
            action_key=action_key,
            key=idempotency_key,
            user_id=user_id,
            request_hash=request_hash,
            status="IN_PROGRESS",
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
