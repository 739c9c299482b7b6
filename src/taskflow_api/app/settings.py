"""Application settings."""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com",
    "local": "http://localhost:11434/v1",
}


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "taskflow-api"
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = ""
    llm_provider: str = "openai"
    llm_model: str = "gpt-4-turbo-preview"
    llm_base_url: str = ""
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=0, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    classifier_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    classifier_max_tokens: int = Field(default=50, ge=1)
    planner_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    planner_max_tokens: int = Field(default=2000, ge=1)
    fallback_step_duration_ms: int = Field(default=60_000, ge=0)
    default_plan_duration_ms: int = Field(default=60_000, ge=0)
    default_log_limit: int = Field(default=100, ge=1)
    progress_queue_size: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="TASKFLOW_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_anthropic_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")

    def resolved_llm_base_url(self) -> str:
        if self.llm_base_url:
            return self.llm_base_url
        return _DEFAULT_BASE_URLS.get(self.llm_provider.lower().strip(), "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
