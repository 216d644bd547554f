"""Language model resolution for deterministic and LLM-enabled modes."""

from __future__ import annotations

from dataclasses import dataclass

from copilot_orchestrator.config.settings import Settings
from copilot_orchestrator.llm.anthropic import AnthropicMessagesModel
from copilot_orchestrator.llm.base import LanguageModel
from copilot_orchestrator.llm.deterministic import EchoLanguageModel
from copilot_orchestrator.llm.openai import OpenAIChatModel

SUPPORTED_PROVIDERS = ("openai", "anthropic")


@dataclass(frozen=True)
class ModelResolution:
    model: LanguageModel
    requested_mode: str
    effective_mode: str
    fallback_reason: str | None = None


def resolve_language_model(settings: Settings) -> ModelResolution:
    requested_mode = settings.llm_mode.lower().strip()

    if requested_mode != "llm":
        return ModelResolution(
            model=EchoLanguageModel(),
            requested_mode=requested_mode,
            effective_mode="deterministic",
        )

    provider = settings.llm_provider.lower().strip()
    if provider not in SUPPORTED_PROVIDERS:
        return _fallback(requested_mode, f"unsupported llm provider: {settings.llm_provider}")

    if provider == "anthropic":
        api_key = settings.resolved_anthropic_api_key()
        if not api_key:
            return _fallback(requested_mode, "ANTHROPIC_API_KEY is missing for llm mode")
        model: LanguageModel = AnthropicMessagesModel(
            api_key=api_key,
            model=settings.llm_model,
            base_url=settings.anthropic_base_url,
            timeout_s=settings.llm_timeout_s,
            max_retries=settings.llm_max_retries,
            backoff_s=settings.llm_backoff_s,
            max_steps=settings.llm_max_steps,
            max_tokens=settings.llm_max_tokens,
        )
    else:
        api_key = settings.resolved_openai_api_key()
        if not api_key:
            return _fallback(requested_mode, "OPENAI_API_KEY is missing for llm mode")
        model = OpenAIChatModel(
            api_key=api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout_s=settings.llm_timeout_s,
            max_retries=settings.llm_max_retries,
            backoff_s=settings.llm_backoff_s,
            max_steps=settings.llm_max_steps,
        )

    return ModelResolution(model=model, requested_mode=requested_mode, effective_mode="llm")


def _fallback(requested_mode: str, reason: str) -> ModelResolution:
    return ModelResolution(
        model=EchoLanguageModel(),
        requested_mode=requested_mode,
        effective_mode="deterministic",
        fallback_reason=reason,
    )
