"""Application settings for the graph copilot service."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from ``COPILOT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COPILOT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False
    ai_debug: bool = Field(default=False, description="Emit verbose AI debug events")

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(default="http://localhost:3000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        if not self.cors_origins_str.strip():
            return ["http://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # LLM provider
    ai_provider: Literal["deepseek", "openai", "openai-mini", "anthropic"] = "deepseek"
    ai_model: str | None = None
    embedding_model: str = "text-embedding-3-small"

    # Agent / GraphRAG configuration
    max_tool_rounds: int = Field(default=5, ge=1)
    rag_max_nodes: int = Field(default=20, ge=1)
    rag_max_depth: int = Field(default=2, ge=1, le=3)
    rag_cache_ttl_ms: int = Field(default=120_000, ge=0)

    # Sessions
    fallback_workspace: str = "root"
    redis_url: str | None = None
    thread_ttl_seconds: int = 7 * 24 * 3600

    # Firebase auth backend
    firebase_project_id: str | None = None
    firebase_admin_sdk_json: str | None = None
    firebase_admin_sdk_path: str | None = None

    # Provider keys are read from OPENAI_API_KEY, DEEPSEEK_API_KEY and ANTHROPIC_API_KEY

    @field_validator("fallback_workspace")
    @classmethod
    def workspace_must_not_be_empty(cls, v: str) -> str:
        """Ensure the fallback workspace is a usable identifier."""
        if not v.strip():
            raise ValueError("fallback_workspace must not be empty")
        return v.strip()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
