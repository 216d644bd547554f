"""Language model port and adapters."""

from copilot_orchestrator.llm.anthropic import AnthropicMessagesModel
from copilot_orchestrator.llm.base import (
    CollectingStreamWriter,
    LanguageModel,
    ModelRequest,
    ModelTurnResult,
    NullStreamWriter,
    StreamChunk,
    StreamWriter,
    TokenUsage,
)
from copilot_orchestrator.llm.deterministic import EchoLanguageModel
from copilot_orchestrator.llm.factory import ModelResolution, resolve_language_model
from copilot_orchestrator.llm.openai import OpenAIChatModel

__all__ = [
    "AnthropicMessagesModel",
    "CollectingStreamWriter",
    "EchoLanguageModel",
    "LanguageModel",
    "ModelRequest",
    "ModelResolution",
    "ModelTurnResult",
    "NullStreamWriter",
    "OpenAIChatModel",
    "StreamChunk",
    "StreamWriter",
    "TokenUsage",
    "resolve_language_model",
]
