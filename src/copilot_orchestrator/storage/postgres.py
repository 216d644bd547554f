"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from copilot_orchestrator.domain.errors import TenantMismatchError
from copilot_orchestrator.domain.models import (
    ChatHistory,
    ChatMetadata,
    IdempotencyRecord,
    Message,
    Run,
    RunStatus,
    TaskState,
    ToolExecution,
    ToolExecutionStatus,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS copilot_runs (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        created_by_user_id TEXT,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        finished_at TIMESTAMPTZ,
        trace_id TEXT,
        task_state_json JSONB,
        metadata_json JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_copilot_runs_tenant
    ON copilot_runs(tenant_id, started_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS copilot_messages (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        run_id TEXT NOT NULL REFERENCES copilot_runs(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        parts_json JSONB NOT NULL,
        metadata_json JSONB,
        trace_id TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_copilot_messages_run
    ON copilot_messages(run_id, created_at, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS copilot_tool_executions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        tool_call_id TEXT NOT NULL,
        tool_name TEXT NOT NULL,
        input_json JSONB,
        status TEXT NOT NULL,
        output_json JSONB,
        error_json JSONB,
        started_at TIMESTAMPTZ NOT NULL,
        finished_at TIMESTAMPTZ,
        trace_id TEXT,
        UNIQUE (run_id, tool_call_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS copilot_idempotency_keys (
        tenant_id TEXT NOT NULL,
        action_key TEXT NOT NULL,
        key TEXT NOT NULL,
        user_id TEXT,
        request_hash TEXT,
        status TEXT NOT NULL,
        response_status INTEGER,
        response_body JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (tenant_id, action_key, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS copilot_audit_log (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        actor_user_id TEXT,
        action TEXT NOT NULL,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        details_json JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS copilot_outbox (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload_json JSONB NOT NULL,
        correlation_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ
    )
    """,
)


class PostgresDatabase:
    """Connection factory shared by the PostgreSQL stores."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("COPILOT_DATABASE_URL is required")
        self.database_url = database_url
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    async def migrate(self) -> None:
        async with self.connection() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        conn = await self._psycopg.AsyncConnection.connect(
            self.database_url, row_factory=self._dict_row
        )
        async with conn:
            yield conn

    def json(self, value: Any) -> Any:
        if value is None:
            return None
        return self._json_wrapper(value)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json


def _parse_json(raw: Any) -> Any:
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    parsed = _parse_json(raw)
    if isinstance(parsed, dict):
        return parsed
    return None


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw)
    raise TypeError(f"Unsupported datetime value: {type(raw)!r}")


def _parse_datetime_optional(raw: Any) -> datetime | None:
    if raw is None:
        return None
    return _parse_datetime(raw)


def _row_to_run(row: Any) -> Run:
    task_state = _parse_json_optional(row.get("task_state_json"))
    return Run(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        created_by_user_id=row.get("created_by_user_id"),
        status=row["status"],
        started_at=_parse_datetime(row["started_at"]),
        finished_at=_parse_datetime_optional(row.get("finished_at")),
        trace_id=row.get("trace_id"),
        task_state=TaskState.model_validate(task_state) if task_state else None,
        metadata=_parse_json_optional(row.get("metadata_json")) or {},
    )


def _row_to_message(row: Any) -> Message:
    return Message.model_validate(
        {
            "id": row["id"],
            "role": row["role"],
            "parts": _parse_json(row["parts_json"]) or [],
            "metadata": _parse_json_optional(row.get("metadata_json")),
            "createdAt": _parse_datetime_optional(row.get("created_at")),
        }
    )


def _row_to_idempotency(row: Any) -> IdempotencyRecord:
    return IdempotencyRecord(
        tenant_id=row["tenant_id"],
        action_key=row["action_key"],
        key=row["key"],
        user_id=row.get("user_id"),
        request_hash=row.get("request_hash"),
        status=row["status"],
        response_status=row.get("response_status"),
        response_body=_parse_json(row.get("response_body")),
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
        expires_at=_parse_datetime(row["expires_at"]),
    )


class PostgresRunStore:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def create(self, run: Run) -> Run:
        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO copilot_runs (
                    id,
                    tenant_id,
                    created_by_user_id,
                    status,
                    started_at,
                    finished_at,
                    trace_id,
                    task_state_json,
                    metadata_json
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    run.id,
                    run.tenant_id,
                    run.created_by_user_id,
                    run.status,
                    run.started_at,
                    run.finished_at,
                    run.trace_id,
                    self._db.json(run.task_state.model_dump(mode="json")) if run.task_state else None,
                    self._db.json(run.metadata),
                ),
            )
            cursor = await conn.execute("SELECT * FROM copilot_runs WHERE id = %s", (run.id,))
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError("Failed to load created run")
        stored = _row_to_run(row)
        if stored.tenant_id != run.tenant_id:
            raise TenantMismatchError(f"Run {run.id} belongs to another tenant")
        return stored

    async def update_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        finished_at: datetime | None = None,
    ) -> None:
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE copilot_runs
                SET status = %s,
                    finished_at = %s
                WHERE id = %s
                RETURNING id
                """,
                (status, finished_at, run_id),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise KeyError(f"Run {run_id} does not exist")

    async def find_by_id(self, tenant_id: str, run_id: str) -> Run | None:
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM copilot_runs WHERE id = %s AND tenant_id = %s",
                (run_id, tenant_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_run(row)


class PostgresChatStore:
    """Chat history stored as one row per message, metadata on the run row."""

    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def load(self, chat_id: str, tenant_id: str) -> ChatHistory:
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM copilot_runs WHERE id = %s AND tenant_id = %s",
                (chat_id, tenant_id),
            )
            run_row = await cursor.fetchone()
            cursor = await conn.execute(
                """
                SELECT *
                FROM copilot_messages
                WHERE run_id = %s AND tenant_id = %s
                ORDER BY created_at, seq
                """,
                (chat_id, tenant_id),
            )
            rows = await cursor.fetchall()
        metadata: ChatMetadata | None = None
        if run_row is not None:
            run = _row_to_run(run_row)
            metadata = ChatMetadata.model_validate({**run.metadata, "task_state": run.task_state})
        return ChatHistory(messages=[_row_to_message(row) for row in rows], metadata=metadata)

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
        now = datetime.now(UTC)
        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO copilot_runs (id, tenant_id, created_by_user_id, status, started_at, trace_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (chat_id, tenant_id, metadata.user_id if metadata else None, "running", now, trace_id),
            )
            cursor = await conn.execute(
                "SELECT * FROM copilot_runs WHERE id = %s FOR UPDATE",
                (chat_id,),
            )
            run_row = await cursor.fetchone()
            if run_row is None:
                raise RuntimeError(f"Failed to load run {chat_id}")
            run = _row_to_run(run_row)
            if run.tenant_id != tenant_id:
                raise TenantMismatchError(f"Run {chat_id} belongs to another tenant")

            if metadata is not None:
                current = ChatMetadata.model_validate({**run.metadata, "task_state": run.task_state})
                merged = current.merged_with(metadata)
                await conn.execute(
                    """
                    UPDATE copilot_runs
                    SET task_state_json = %s,
                        metadata_json = %s
                    WHERE id = %s
                    """,
                    (
                        self._db.json(merged.task_state.model_dump(mode="json"))
                        if merged.task_state
                        else None,
                        self._db.json(
                            merged.model_dump(mode="json", exclude={"task_state"}, exclude_none=True)
                        ),
                        chat_id,
                    ),
                )

            for message in messages:
                cursor = await conn.execute(
                    """
                    INSERT INTO copilot_messages (
                        id,
                        tenant_id,
                        run_id,
                        role,
                        parts_json,
                        metadata_json,
                        trace_id,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET role = EXCLUDED.role,
                        parts_json = EXCLUDED.parts_json,
                        metadata_json = EXCLUDED.metadata_json,
                        trace_id = COALESCE(EXCLUDED.trace_id, copilot_messages.trace_id)
                    WHERE copilot_messages.tenant_id = EXCLUDED.tenant_id
                    RETURNING id
                    """,
                    (
                        message.id,
                        tenant_id,
                        chat_id,
                        message.role,
                        self._db.json(
                            [part.model_dump(mode="json", by_alias=True) for part in message.parts]
                        ),
                        self._db.json(message.metadata),
                        trace_id,
                        message.created_at or now,
                    ),
                )
                if await cursor.fetchone() is None:
                    raise TenantMismatchError(f"Message {message.id} belongs to another tenant")
            await conn.commit()


class PostgresToolExecutionStore:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def create(self, execution: ToolExecution) -> None:
        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO copilot_tool_executions (
                    id,
                    tenant_id,
                    run_id,
                    tool_call_id,
                    tool_name,
                    input_json,
                    status,
                    started_at,
                    trace_id
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET input_json = EXCLUDED.input_json,
                    status = EXCLUDED.status,
                    output_json = NULL,
                    error_json = NULL,
                    started_at = EXCLUDED.started_at,
                    finished_at = NULL,
                    trace_id = EXCLUDED.trace_id
                WHERE copilot_tool_executions.tenant_id = EXCLUDED.tenant_id
                """,
                (
                    execution.id,
                    execution.tenant_id,
                    execution.run_id,
                    execution.tool_call_id,
                    execution.tool_name,
                    self._db.json(execution.input),
                    execution.status,
                    execution.started_at,
                    execution.trace_id,
                ),
            )
            await conn.commit()

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
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE copilot_tool_executions
                SET status = %s,
                    output_json = %s,
                    error_json = %s,
                    finished_at = %s
                WHERE tenant_id = %s AND run_id = %s AND tool_call_id = %s
                RETURNING id
                """,
                (
                    status,
                    self._db.json(output),
                    self._db.json(error),
                    finished_at,
                    tenant_id,
                    run_id,
                    tool_call_id,
                ),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise KeyError(f"Tool execution {ToolExecution.build_id(run_id, tool_call_id)} does not exist")


class PostgresIdempotencyStore:
    """Idempotency keys; creation and reclaim are single conditional statements."""

    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def get(self, tenant_id: str, action_key: str, key: str) -> IdempotencyRecord | None:
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                """
                SELECT *
                FROM copilot_idempotency_keys
                WHERE tenant_id = %s AND action_key = %s AND key = %s
                """,
                (tenant_id, action_key, key),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_idempotency(row)

    async def create(self, record: IdempotencyRecord) -> bool:
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO copilot_idempotency_keys (
                    tenant_id,
                    action_key,
                    key,
                    user_id,
                    request_hash,
                    status,
                    response_status,
                    response_body,
                    created_at,
                    updated_at,
                    expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, action_key, key) DO NOTHING
                RETURNING key
                """,
                (
                    record.tenant_id,
                    record.action_key,
                    record.key,
                    record.user_id,
                    record.request_hash,
                    record.status,
                    record.response_status,
                    self._db.json(record.response_body),
                    record.created_at,
                    record.updated_at,
                    record.expires_at,
                ),
            )
            row = await cursor.fetchone()
            await conn.commit()
        return row is not None

    async def reclaim(self, record: IdempotencyRecord, *, previous_updated_at: datetime) -> bool:
        async with self._db.connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE copilot_idempotency_keys
                SET user_id = %s,
                    request_hash = %s,
                    status = %s,
                    response_status = NULL,
                    response_body = NULL,
                    created_at = %s,
                    updated_at = %s,
                    expires_at = %s
                WHERE tenant_id = %s AND action_key = %s AND key = %s
                  AND updated_at = %s
                RETURNING key
                """,
                (
                    record.user_id,
                    record.request_hash,
                    record.status,
                    record.created_at,
                    record.updated_at,
                    record.expires_at,
                    record.tenant_id,
                    record.action_key,
                    record.key,
                    previous_updated_at,
                ),
            )
            row = await cursor.fetchone()
            await conn.commit()
        return row is not None

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
        await self._settle(
            tenant_id, action_key, key, "COMPLETED", response_status, response_body, updated_at
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
        await self._settle(
            tenant_id, action_key, key, "FAILED", response_status, response_body, updated_at
        )

    async def _settle(
        self,
        tenant_id: str,
        action_key: str,
        key: str,
        status: str,
        response_status: int,
        response_body: Any,
        updated_at: datetime,
    ) -> None:
        async with self._db.connection() as conn:
            await conn.execute(
                """
                UPDATE copilot_idempotency_keys
                SET status = %s,
                    response_status = %s,
                    response_body = %s,
                    updated_at = %s
                WHERE tenant_id = %s AND action_key = %s AND key = %s
                  AND status = 'IN_PROGRESS'
                """,
                (
                    status,
                    response_status,
                    self._db.json(response_body),
                    updated_at,
                    tenant_id,
                    action_key,
                    key,
                ),
            )
            await conn.commit()


class PostgresAuditLog:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def write(
        self,
        tenant_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO copilot_audit_log (
                    tenant_id,
                    actor_user_id,
                    action,
                    target_type,
                    target_id,
                    details_json,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    tenant_id,
                    actor_user_id,
                    action,
                    target_type,
                    target_id,
                    self._db.json(details),
                    datetime.now(UTC),
                ),
            )
            await conn.commit()


class PostgresOutbox:
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def enqueue(
        self,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None:
        async with self._db.connection() as conn:
            await conn.execute(
                """
                INSERT INTO copilot_outbox (tenant_id, event_type, payload_json, correlation_id, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (tenant_id, event_type, self._db.json(payload), correlation_id, datetime.now(UTC)),
            )
            await conn.commit()
