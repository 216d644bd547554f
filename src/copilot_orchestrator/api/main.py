"""FastAPI transport for the copilot turn pipeline."""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from copilot_orchestrator.api.streaming import stream_turn
from copilot_orchestrator.bootstrap import CopilotContainer, build_container
from copilot_orchestrator.config.settings import Settings, get_settings
from copilot_orchestrator.domain.errors import (
    CopilotError,
    InvalidTurnRequestError,
    RunNotFoundError,
    TenantMismatchError,
)
from copilot_orchestrator.domain.models import Message
from copilot_orchestrator.orchestration.commands import TurnCommand
from copilot_orchestrator.tools.registry import list_tools

logger = logging.getLogger(__name__)

DEFAULT_TENANT_ID = "default"


class ChatRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None = None
    messages: list[Message] = Field(min_length=1)
    request_id: str | None = None


class CreateRunRequest(BaseModel):
    id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    container_override: CopilotContainer | None,
) -> CopilotContainer:
    if not hasattr(app.state, "container"):
        app.state.container = container_override or build_container(settings)
    return app.state.container


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def _require_identity(tenant_id: str | None, user_id: str | None) -> tuple[str, str]:
    if not tenant_id or not user_id:
        raise InvalidTurnRequestError("X-Tenant-Id and X-User-Id headers are required")
    return tenant_id, user_id


def create_app(
    *,
    container: CopilotContainer | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or (container.settings if container else get_settings())
    logging.getLogger("copilot_orchestrator").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = _ensure_runtime_state(app, settings=settings, container_override=container)
        await runtime.startup()
        yield
        runtime.observability.flush()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if container is not None:
        _ensure_runtime_state(app, settings=settings, container_override=container)

    def _get_container(request: Request) -> CopilotContainer:
        return _ensure_runtime_state(request.app, settings=settings, container_override=container)

    @app.exception_handler(InvalidTurnRequestError)
    async def invalid_request(_: Request, exc: InvalidTurnRequestError) -> JSONResponse:
        return _error_response(400, "invalid_request", str(exc))

    @app.exception_handler(TenantMismatchError)
    async def tenant_mismatch(_: Request, exc: TenantMismatchError) -> JSONResponse:
        return _error_response(403, "tenant_mismatch", str(exc))

    @app.exception_handler(RunNotFoundError)
    async def run_not_found(_: Request, exc: RunNotFoundError) -> JSONResponse:
        return _error_response(404, "run_not_found", str(exc))

    @app.exception_handler(CopilotError)
    async def copilot_error(_: Request, exc: CopilotError) -> JSONResponse:
        logger.warning("api event=copilot_error error_type=%s error=%s", type(exc).__name__, exc)
        return _error_response(500, "copilot_error", "Copilot request failed")

    async def _start_turn(
        request: Request,
        payload: ChatRequest,
        *,
        run_id: str | None,
        idempotency_key: str | None,
        tenant_id: str | None,
        user_id: str | None,
    ):
        if not idempotency_key:
            raise InvalidTurnRequestError("X-Idempotency-Key header is required")
        tenant_id, user_id = _require_identity(tenant_id, user_id)
        fields: dict[str, Any] = {
            "tenant_id": tenant_id,
            "user_id": user_id,
            "idempotency_key": idempotency_key,
            "messages": payload.messages,
            "request_id": payload.request_id,
        }
        if run_id:
            fields["run_id"] = run_id
        try:
            command = TurnCommand(**fields)
        except ValidationError as exc:
            raise InvalidTurnRequestError(str(exc)) from exc

        orchestrator = _get_container(request).orchestrator
        outcome = await orchestrator.gate(command)
        if outcome.started:
            return stream_turn(orchestrator, command)

        headers = {"X-Copilot-Run-Id": outcome.run_id}
        if outcome.retry_after_ms is not None:
            headers["Retry-After"] = str(max(1, math.ceil(outcome.retry_after_ms / 1000)))
        return JSONResponse(
            status_code=outcome.status_code, content=outcome.body, headers=headers
        )

    @app.get("/health")
    def health(request: Request) -> dict[str, str]:
        runtime = _get_container(request)
        return {"status": "ok", "service": settings.app_name, "llmMode": runtime.model_mode}

    @app.get("/tools")
    def tools(
        request: Request,
        x_tenant_id: str | None = Header(default=None),
    ) -> dict[str, list[dict[str, Any]]]:
        registry = _get_container(request).tool_registry
        return {"tools": list_tools(registry, x_tenant_id or DEFAULT_TENANT_ID)}

    @app.post("/copilot/chat")
    async def chat(
        payload: ChatRequest,
        request: Request,
        x_idempotency_key: str | None = Header(default=None),
        x_tenant_id: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ):
        return await _start_turn(
            request,
            payload,
            run_id=payload.id,
            idempotency_key=x_idempotency_key,
            tenant_id=x_tenant_id,
            user_id=x_user_id,
        )

    @app.post("/copilot/runs", status_code=201)
    async def create_run(
        payload: CreateRunRequest,
        request: Request,
        x_tenant_id: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        tenant_id, user_id = _require_identity(x_tenant_id, x_user_id)
        run = await _get_container(request).run_service.create_run(
            tenant_id, user_id, run_id=payload.id, metadata=payload.metadata
        )
        return run.model_dump(mode="json")

    @app.get("/copilot/runs/{run_id}")
    async def get_run(
        run_id: str,
        request: Request,
        x_tenant_id: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        tenant_id, _ = _require_identity(x_tenant_id, x_user_id)
        run = await _get_container(request).run_service.get_run(tenant_id, run_id)
        return run.model_dump(mode="json")

    @app.get("/copilot/runs/{run_id}/messages")
    async def list_run_messages(
        run_id: str,
        request: Request,
        x_tenant_id: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        tenant_id, _ = _require_identity(x_tenant_id, x_user_id)
        messages = await _get_container(request).run_service.list_messages(tenant_id, run_id)
        return {
            "messages": [
                message.model_dump(mode="json", by_alias=True, exclude_none=True)
                for message in messages
            ]
        }

    @app.post("/copilot/runs/{run_id}/messages")
    async def append_run_message(
        run_id: str,
        payload: ChatRequest,
        request: Request,
        x_idempotency_key: str | None = Header(default=None),
        x_tenant_id: str | None = Header(default=None),
        x_user_id: str | None = Header(default=None),
    ):
        return await _start_turn(
            request,
            payload,
            run_id=run_id,
            idempotency_key=x_idempotency_key,
            tenant_id=x_tenant_id,
            user_id=x_user_id,
        )

    return app


app = create_app()
