"""Application configuration using Pydantic settings."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}

LOCAL_PROVIDERS = frozenset({"ollama", "openai_compatible", "tei"})


def _resolve_key(provider: str, configured: str | None) -> str | None:
    if configured:
        return configured
    env_name = PROVIDER_KEY_ENV.get(provider)
    if env_name:
        return os.environ.get(env_name) or None
    return None


class LLMSettings(BaseModel):
    provider: Literal["openai", "anthropic", "openrouter", "ollama", "openai_compatible"] = "openai"
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key: str | None = None
    timeout: float = Field(default=60.0, gt=0, description="Operation timeout for a single LLM call (seconds)")
    temperature: float = 0.2
    max_tokens: int = 4096
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    def resolved_base_url(self) -> str:
        base = self.base_url or DEFAULT_BASE_URLS.get(self.provider)
        if not base:
            raise ConfigError(f"llm.base_url is required for provider '{self.provider}'")
        return base.rstrip("/")

    def resolved_api_key(self) -> str | None:
        return _resolve_key(self.provider, self.api_key)

    def require_api_key(self) -> str | None:
        """Return the API key, raising when a cloud provider has none."""
        key = self.resolved_api_key()
        if not key and self.provider not in LOCAL_PROVIDERS:
            env_name = PROVIDER_KEY_ENV.get(self.provider, "TASKWING_LLM__API_KEY")
            raise ConfigError(f"missing API key for provider '{self.provider}' (set {env_name})")
        return key


class EmbeddingSettings(BaseModel):
    provider: Literal["openai", "tei"] = "openai"
    model: str = "text-embedding-3-small"
    base_url: str | None = None
    api_key: str | None = None
    timeout: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=32, ge=1)

    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.provider == "openai":
            return DEFAULT_BASE_URLS["openai"]
        raise ConfigError("embedding.base_url is required for the local embedding server")

    def resolved_api_key(self) -> str | None:
        return _resolve_key(self.provider, self.api_key)


class RerankSettings(BaseModel):
    enabled: bool = False
    base_url: str | None = None
    top_k: int = Field(default=5, ge=1)
    timeout: float = Field(default=5.0, gt=0)


class RetrievalSettings(BaseModel):
    rewrite_enabled: bool = True
    vector_top_k: int = Field(default=20, ge=1)
    result_limit: int = Field(default=5, ge=1)
    plan_context_limit: int = Field(default=3, ge=1)
    graph_expansion: bool = True
    expansion_per_node: int = Field(default=2, ge=0)
    expansion_discount: float = Field(default=0.6, gt=0, le=1)
    expansion_min_confidence: float = Field(default=0.5, ge=0, le=1)
    inject_architecture: bool = True
    inject_constraints: bool = True
    max_constraints: int = 10
    semantic_link_threshold: float = Field(default=0.55, ge=0, le=1)


class ClarifySettings(BaseModel):
    default_max_rounds: int = Field(default=5, ge=1)
    max_questions: int = Field(default=3, ge=1)


class StorageSettings(BaseModel):
    memory_dir: Path = Field(default=Path(".taskwing/memory"), description="Directory holding memory.db")
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy async database URL; defaults to memory.db inside memory_dir",
    )

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.memory_dir / 'memory.db'}"

    @property
    def architecture_path(self) -> Path:
        return self.memory_dir / "ARCHITECTURE.md"


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5001
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"]
    )


class ObservabilitySettings(BaseModel):
    otel_service_name: str = "taskwing"
    otel_exporter_otlp_endpoint: str | None = None
    log_level: str = "INFO"
    log_json: bool = False


class TaskWingSettings(BaseSettings):
    llm: LLMSettings = LLMSettings()
    embedding: EmbeddingSettings = EmbeddingSettings()
    rerank: RerankSettings = RerankSettings()
    retrieval: RetrievalSettings = RetrievalSettings()
    clarify: ClarifySettings = ClarifySettings()
    storage: StorageSettings = StorageSettings()
    server: ServerSettings = ServerSettings()
    observability: ObservabilitySettings = ObservabilitySettings()
    environment: Literal["dev", "qa", "prod"] | str = "dev"

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="TASKWING_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings(**kwargs: Any) -> TaskWingSettings:
    """Return cached settings instance."""
    return TaskWingSettings(**kwargs)


__all__ = [
    "ClarifySettings",
    "EmbeddingSettings",
    "LLMSettings",
    "ObservabilitySettings",
    "RerankSettings",
    "RetrievalSettings",
    "ServerSettings",
    "StorageSettings",
    "TaskWingSettings",
    "get_settings",
]
