"""OpenAI chat completions adapter driving a multi-step tool loop."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any
from urllib import error, request

from pydantic_core import to_jsonable_python

from copilot_orchestrator.domain.errors import (
    ModelInvocationError,
    TurnCancelledError,
    UnknownToolError,
)
from copilot_orchestrator.domain.models import (
    Message,
    MessagePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from copilot_orchestrator.llm.base import (
    TRANSPORT_ERRORS,
    ModelRequest,
    ModelTurnResult,
    StreamChunk,
    StreamWriter,
    TokenUsage,
)
from copilot_orchestrator.tools.pipeline import BoundTool

logger = logging.getLogger(__name__)


class OpenAIChatModel:
    """Chat completions client.

    Each step is one non-streaming completion request run on a worker thread.
    Server tools requested by the model are executed and fed back; a call to a
    client-side tool ends the turn so the caller can answer it.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        max_steps: int = 5,
    ) -> None:
        if not api_key:
            raise ValueError("OpenAI API key is required")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.max_steps = max(1, max_steps)

    async def stream_chat(self, request: ModelRequest, writer: StreamWriter) -> ModelTurnResult:
        await writer.write(StreamChunk(type="start", message_id=request.message_id))
        conversation = to_openai_messages(request.messages)
        tools_by_name = {tool.name: tool for tool in request.tools}
        parts: list[MessagePart] = []
        text_segments: list[str] = []
        usage = TokenUsage(input_tokens=0, output_tokens=0, total_tokens=0)
        finish_reason = "length"

        for step in range(self.max_steps):
            if request.abort.is_set():
                raise TurnCancelledError(f"Turn for run {request.run_id} was cancelled")

            payload: dict[str, Any] = {"model": self.model, "messages": conversation}
            if request.tools:
                payload["tools"] = [_tool_definition(tool) for tool in request.tools]
            try:
                response_json = await asyncio.to_thread(
                    self._request_with_retry, payload, self.timeout_s
                )
                choice = self._first_choice(response_json)
            except TRANSPORT_ERRORS as exc:
                raise ModelInvocationError(f"OpenAI request failed: {exc}") from exc
            _add_usage(usage, response_json.get("usage"))

            message = choice.get("message") or {}
            content = message.get("content")
            if isinstance(content, str) and content:
                parts.append(TextPart(text=content))
                text_segments.append(content)
                await writer.write(
                    StreamChunk(type="text-delta", message_id=request.message_id, delta=content)
                )

            tool_calls = message.get("tool_calls") or []
            logger.info(
                "model_step event=completed run_id=%s step=%d tool_calls=%d",
                request.run_id,
                step + 1,
                len(tool_calls),
            )
            if not tool_calls:
                finish_reason = str(choice.get("finish_reason") or "stop")
                break

            conversation.append(
                {"role": "assistant", "content": content or None, "tool_calls": tool_calls}
            )
            awaiting_client = await self._run_tool_calls(
                tool_calls, tools_by_name, parts, conversation, writer
            )
            if awaiting_client:
                finish_reason = "tool-calls"
                break

        await writer.write(
            StreamChunk(type="finish", message_id=request.message_id, finish_reason=finish_reason)
        )
        return ModelTurnResult(
            response_message=Message(id=request.message_id, role="assistant", parts=parts),
            output_text="".join(text_segments),
            usage=usage,
            finish_reason=finish_reason,
        )

    async def _run_tool_calls(
        self,
        tool_calls: list[dict[str, Any]],
        tools_by_name: dict[str, BoundTool],
        parts: list[MessagePart],
        conversation: list[dict[str, Any]],
        writer: StreamWriter,
    ) -> bool:
        awaiting_client = False
        for call in tool_calls:
            call_id = str(call.get("id") or "")
            function = call.get("function") or {}
            name = str(function.get("name") or "")
            tool = tools_by_name.get(name)
            if tool is None:
                raise UnknownToolError(name)
            try:
                args = json.loads(function.get("arguments") or "{}")
            except ValueError as exc:
                raise ModelInvocationError(f"Tool arguments for '{name}' are not valid JSON") from exc

            await writer.write(
                StreamChunk(
                    type="tool-input-available", tool_call_id=call_id, tool_name=name, input=args
                )
            )
            if tool.invoke is None:
                parts.append(ToolCallPart(tool_call_id=call_id, tool_name=name, input=args))
                awaiting_client = True
                continue

            try:
                output = await tool.invoke(args, call_id)
            except Exception as exc:
                await writer.write(
                    StreamChunk(type="tool-output-error", tool_call_id=call_id, error_text=str(exc))
                )
                raise
            parts.append(
                ToolResultPart(tool_call_id=call_id, tool_name=name, input=args, output=output)
            )
            await writer.write(
                StreamChunk(type="tool-output-available", tool_call_id=call_id, output=output)
            )
            conversation.append(
                {"role": "tool", "tool_call_id": call_id, "content": json.dumps(output)}
            )
        return awaiting_client

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except TRANSPORT_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        raw_payload = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=raw_payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)

    @staticmethod
    def _first_choice(response_json: dict[str, Any]) -> dict[str, Any]:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")
        return choices[0]


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert stored messages into chat completions messages.

    Tool calls still waiting for a result are dropped; the API rejects an
    assistant ``tool_calls`` entry without a matching tool message.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        text = message.text()
        if message.role != "assistant":
            if text:
                converted.append({"role": message.role, "content": text})
            continue

        results = [part for part in message.parts if isinstance(part, ToolResultPart)]
        if not results:
            if text:
                converted.append({"role": "assistant", "content": text})
            continue
        converted.append(
            {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": part.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": part.tool_name,
                            "arguments": json.dumps(to_jsonable_python(part.input or {})),
                        },
                    }
                    for part in results
                ],
            }
        )
        for part in results:
            if part.state == "output-error":
                content: Any = {"error": part.error_text or "tool failed"}
            else:
                content = part.output
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": part.tool_call_id,
                    "content": json.dumps(to_jsonable_python(content)),
                }
            )
    return converted


def _tool_definition(tool: BoundTool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


def _add_usage(usage: TokenUsage, raw: Any) -> None:
    if not isinstance(raw, dict):
        return
    usage.input_tokens = (usage.input_tokens or 0) + int(raw.get("prompt_tokens") or 0)
    usage.output_tokens = (usage.output_tokens or 0) + int(raw.get("completion_tokens") or 0)
    usage.total_tokens = (usage.total_tokens or 0) + int(raw.get("total_tokens") or 0)
