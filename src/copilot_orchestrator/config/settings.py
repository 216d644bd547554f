"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "copilot-orchestrator"
    app_env: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["memory", "postgres"] = "memory"
    database_url: str = ""
    context_window_size: int = Field(default=24, ge=1)
    llm_mode: str = "deterministic"
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    llm_max_steps: int = Field(default=5, ge=1)
    llm_max_tokens: int = Field(default=1024, ge=1)
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    idempotency_ttl_s: float = Field(default=24 * 60 * 60, gt=0)
    idempotency_lock_timeout_s: float = Field(default=120.0, gt=0)
    idempotency_retry_after_ms: int = Field(default=1000, ge=0)
    tracing_enabled: bool = True
    trace_masking: Literal["off", "standard", "strict"] = "standard"

    model_config = SettingsConfigDict(
        env_prefix="COPILOT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_anthropic_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
