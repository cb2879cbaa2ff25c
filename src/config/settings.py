from __future__ import annotations

from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import DB_SCHEMA, EMBEDDING_DIMENSION, IMPORTANCE_MAX, IMPORTANCE_MIN

# Load .env once at module import so every BaseSettings subclass sees the env vars
load_dotenv()


def _check_importance(name: str, v: int) -> int:
    if not (IMPORTANCE_MIN <= v <= IMPORTANCE_MAX):
        raise ValueError(
            f"{name} must be in [{IMPORTANCE_MIN}, {IMPORTANCE_MAX}] (got {v})"
        )
    return v


class DatabaseSettings(BaseSettings):
    """Database connection settings. Env vars prefixed with DATABASE_.

    PostgreSQL (asyncpg) is assembled from the discrete fields. Set
    DATABASE_URL to use any other SQLAlchemy async URL (e.g. sqlite+aiosqlite).
    """

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    name: str = "lorekeeper"
    schema_: str = Field(DB_SCHEMA, validation_alias="DATABASE_SCHEMA")
    url: str = ""
    pool_size: int = 5
    max_overflow: int = 10

    @field_validator("schema_")
    @classmethod
    def _validate_schema(cls, v: str) -> str:
        if v != DB_SCHEMA:
            msg = f"DATABASE_SCHEMA must be '{DB_SCHEMA}' (got '{v}')"
            raise ValueError(msg)
        return v

    @property
    def async_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.name}"
        )


class OpenAISettings(BaseSettings):
    """OpenAI-compatible API settings. Env vars prefixed with OPENAI_."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = ""  # empty = only offline providers are usable
    model: str = "gpt-4o-mini"
    base_url: str | None = None


class EmbeddingSettings(BaseSettings):
    """Embedding provider selection. Env vars prefixed with EMBEDDING_."""

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_")

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    dimension: int = Field(EMBEDDING_DIMENSION, gt=0)

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, v: str) -> str:
        allowed = {"openai", "hash"}
        if v not in allowed:
            msg = f"EMBEDDING_PROVIDER must be one of {allowed} (got '{v}')"
            raise ValueError(msg)
        return v


class ProviderSettings(BaseSettings):
    """Timeout/retry budget and extraction routing for external providers."""

    model_config = SettingsConfigDict(env_prefix="PROVIDER_")

    timeout_s: float = Field(10.0, gt=0)
    max_retries: int = Field(2, ge=0, le=10)
    base_delay_s: float = Field(0.5, ge=0)
    max_delay_s: float = Field(8.0, ge=0)
    extraction: str = "llm"
    extraction_fallback: bool = True  # fall back to rule-based extraction on provider failure
    temperature: float = 0.1

    @field_validator("extraction")
    @classmethod
    def _validate_extraction(cls, v: str) -> str:
        allowed = {"llm", "rules"}
        if v not in allowed:
            msg = f"PROVIDER_EXTRACTION must be one of {allowed} (got '{v}')"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.base_delay_s > self.max_delay_s:
            raise ValueError(
                f"base_delay_s ({self.base_delay_s}) must not exceed "
                f"max_delay_s ({self.max_delay_s})"
            )
        if not (0.0 <= self.temperature <= 1.0):
            raise ValueError(f"temperature must be in [0.0, 1.0], got {self.temperature}")
        return self


class MemorySettings(BaseSettings):
    """Memory store and retention settings. Env vars prefixed with MEMORY_."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_")

    default_importance: int = 5
    # Fill omitted importance from content keywords; False uses default_importance
    estimate_importance: bool = True
    max_content_chars: int = 8192
    list_default_limit: int = 20
    search_default_limit: int = 10
    search_min_similarity: float = 0.0
    # Retention defaults used by the admin CLI
    retention_keep_count: int = 200
    retention_min_importance: int = 3
    backfill_batch_size: int = 50

    @field_validator("default_importance", "retention_min_importance")
    @classmethod
    def _validate_importance(cls, v: int, info) -> int:
        return _check_importance(info.field_name, v)

    @field_validator("search_min_similarity")
    @classmethod
    def _validate_similarity(cls, v: float) -> float:
        if not (-1.0 <= v <= 1.0):
            raise ValueError(f"search_min_similarity must be in [-1, 1], got {v}")
        return v


class ConversationSettings(BaseSettings):
    """Conversation log settings. Env vars prefixed with CONVERSATION_."""

    model_config = SettingsConfigDict(env_prefix="CONVERSATION_")

    history_default_limit: int = 50
    search_default_limit: int = 10
    search_context_size: int = 3
    summary_max_messages: int = 100
    keep_days: int = 30
    keep_count: int = 500


class ContextSettings(BaseSettings):
    """Narrative context assembly settings. Env vars prefixed with CONTEXT_."""

    model_config = SettingsConfigDict(env_prefix="CONTEXT_")

    recent_window: int = 10  # conversation excerpt size
    memory_limit: int = 10
    max_tokens: int = 2000
    tokenizer_model: str = "gpt-4o-mini"
    memory_max_chars: int = 300  # per-memory truncation when rendering


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    conversation: ConversationSettings = Field(default_factory=ConversationSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    log_json: bool = True
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
