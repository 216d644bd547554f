"""Anthropic messages API adapter driving the same tool loop as the OpenAI one."""

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

ANTHROPIC_VERSION = "2023-06-01"

_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool-calls",
}


class AnthropicMessagesModel:
    """Messages API client.

    Server ``tool_use`` blocks are executed and answered with ``tool_result``
    blocks in a user turn; a client-side tool ends the turn.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "claude-3-5-haiku-latest",
        base_url: str = "https://api.anthropic.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        max_steps: int = 5,
        max_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise ValueError("Anthropic API key is required")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.max_steps = max(1, max_steps)
        self.max_tokens = max(1, max_tokens)

    async def stream_chat(self, request: ModelRequest, writer: StreamWriter) -> ModelTurnResult:
        await writer.write(StreamChunk(type="start", message_id=request.message_id))
        system, conversation = to_anthropic_messages(request.messages)
        tools_by_name = {tool.name: tool for tool in request.tools}
        parts: list[MessagePart] = []
        text_segments: list[str] = []
        usage = TokenUsage(input_tokens=0, output_tokens=0, total_tokens=0)
        finish_reason = "length"

        for step in range(self.max_steps):
            if request.abort.is_set():
                raise TurnCancelledError(f"Turn for run {request.run_id} was cancelled")

            payload: dict[str, Any] = {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "messages": conversation,
            }
            if system:
                payload["system"] = system
            if request.tools:
                payload["tools"] = [_tool_definition(tool) for tool in request.tools]
            try:
                response_json = await asyncio.to_thread(
                    self._request_with_retry, payload, self.timeout_s
                )
                blocks = self._content_blocks(response_json)
            except TRANSPORT_ERRORS as exc:
                raise ModelInvocationError(f"Anthropic request failed: {exc}") from exc
            _add_usage(usage, response_json.get("usage"))

            text = "".join(
                str(block.get("text") or "") for block in blocks if block.get("type") == "text"
            )
            if text:
                parts.append(TextPart(text=text))
                text_segments.append(text)
                await writer.write(
                    StreamChunk(type="text-delta", message_id=request.message_id, delta=text)
                )

            tool_uses = [block for block in blocks if block.get("type") == "tool_use"]
            logger.info(
                "model_step event=completed provider=anthropic run_id=%s step=%d tool_calls=%d",
                request.run_id,
                step + 1,
                len(tool_uses),
            )
            if not tool_uses:
                stop_reason = str(response_json.get("stop_reason") or "end_turn")
                finish_reason = _FINISH_REASONS.get(stop_reason, "stop")
                break

            conversation.append({"role": "assistant", "content": blocks})
            awaiting_client = await self._run_tool_uses(
                tool_uses, tools_by_name, parts, conversation, writer
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

    async def _run_tool_uses(
        self,
        tool_uses: list[dict[str, Any]],
        tools_by_name: dict[str, BoundTool],
        parts: list[MessagePart],
        conversation: list[dict[str, Any]],
        writer: StreamWriter,
    ) -> bool:
        awaiting_client = False
        results: list[dict[str, Any]] = []
        for block in tool_uses:
            call_id = str(block.get("id") or "")
            name = str(block.get("name") or "")
            tool = tools_by_name.get(name)
            if tool is None:
                raise UnknownToolError(name)
            args = block.get("input") or {}

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
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": call_id,
                    "content": json.dumps(to_jsonable_python(output)),
                }
            )
        if results:
            conversation.append({"role": "user", "content": results})
        return awaiting_client

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except TRANSPORT_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "Anthropic request failed attempt=%d/%d model=%s reason=%s",
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
        req = request.Request(
            url=f"{self.base_url}/messages",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
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
                f"Anthropic API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)

    @staticmethod
    def _content_blocks(response_json: dict[str, Any]) -> list[dict[str, Any]]:
        content = response_json.get("content")
        if not isinstance(content, list):
            raise ValueError("Anthropic response did not contain content blocks")
        return [block for block in content if isinstance(block, dict)]


def to_anthropic_messages(
    messages: list[Message],
) -> tuple[str | None, list[dict[str, Any]]]:
    """Split stored messages into a system prompt and alternating user/assistant turns.

    Tool calls still waiting for a result are dropped, as every ``tool_use``
    block needs a ``tool_result`` in the following user turn.
    """
    system_texts: list[str] = []
    converted: list[dict[str, Any]] = []
    for message in messages:
        text = message.text()
        if message.role == "system":
            if text:
                system_texts.append(text)
            continue
        if message.role == "user":
            if text:
                _append_turn(converted, "user", [{"type": "text", "text": text}])
            continue

        results = [part for part in message.parts if isinstance(part, ToolResultPart)]
        blocks: list[dict[str, Any]] = [{"type": "text", "text": text}] if text else []
        blocks.extend(
            {
                "type": "tool_use",
                "id": part.tool_call_id,
                "name": part.tool_name,
                "input": to_jsonable_python(part.input or {}),
            }
            for part in results
        )
        if blocks:
            _append_turn(converted, "assistant", blocks)
        if results:
            _append_turn(converted, "user", [_tool_result_block(part) for part in results])
    return ("\n\n".join(system_texts) or None), converted


def _append_turn(converted: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    if converted and converted[-1]["role"] == role:
        converted[-1]["content"].extend(blocks)
    else:
        converted.append({"role": role, "content": list(blocks)})


def _tool_result_block(part: ToolResultPart) -> dict[str, Any]:
    if part.state == "output-error":
        return {
            "type": "tool_result",
            "tool_use_id": part.tool_call_id,
            "content": part.error_text or "tool failed",
            "is_error": True,
        }
    return {
        "type": "tool_result",
        "tool_use_id": part.tool_call_id,
        "content": json.dumps(to_jsonable_python(part.output)),
    }


def _tool_definition(tool: BoundTool) -> dict[str, Any]:
    return {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}


def _add_usage(usage: TokenUsage, raw: Any) -> None:
    if not isinstance(raw, dict):
        return
    input_tokens = int(raw.get("input_tokens") or 0)
    output_tokens = int(raw.get("output_tokens") or 0)
    usage.input_tokens = (usage.input_tokens or 0) + input_tokens
    usage.output_tokens = (usage.output_tokens or 0) + output_tokens
    usage.total_tokens = (usage.total_tokens or 0) + input_tokens + output_tokens
