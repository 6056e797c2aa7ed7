"""Engine configuration via Pydantic BaseSettings.

All settings load from environment variables with the CONTEXT_ prefix.
For example, CONTEXT_MAX_TOKENS sets max_tokens.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class ContextEngineSettings(BaseSettings):
    """Process-level defaults for context managers, summarizer, and storage.

    Attributes:
        max_tokens: Context window size of the target model.
        response_reserve: Tokens reserved for the model response per request.
        tool_reserve: Tokens reserved for tool definitions per request.
        enable_caching: Whether prepared requests carry cache breakpoints.
        allocation_profile: Allocator profile name (default, coding, chat, analysis).
        compression_threshold: Utilization above which compaction runs.
        eviction_threshold: Utilization above which eviction runs.
        budget_warning_ratio: Utilization that emits budget_warning.
        budget_critical_ratio: Utilization that emits budget_critical.
        recent_turns_count: Conversational turns considered "recent".
        preserve_recent_messages: Newest RECENT messages never demoted by compaction.
        summarizer_model: LiteLLM model string; empty disables the summarizer.
        summarizer_timeout_seconds: Hard timeout per summarization call.
        summarizer_max_retries: Retry attempts before the summarizer fails closed.
        session_dir: Base directory for FileStorage.
        redis_url: Redis connection URL for RedisStorage.
        redis_key_prefix: Key namespace for RedisStorage.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTEXT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    environment: Environment = Environment.development
    log_level: str = "INFO"

    # Window
    max_tokens: int = 200_000
    response_reserve: int = 4_000
    tool_reserve: int = 2_000
    enable_caching: bool = True
    allocation_profile: str = "default"

    # Thresholds
    compression_threshold: float = 0.7
    eviction_threshold: float = 0.9
    budget_warning_ratio: float = 0.7
    budget_critical_ratio: float = 0.9

    # Recency
    recent_turns_count: int = 10
    preserve_recent_messages: int = 4

    # Summarizer
    summarizer_model: str = ""
    summarizer_timeout_seconds: float = 30.0
    summarizer_max_retries: int = 3
    summarizer_max_tokens: int = 2_048

    # Storage
    session_dir: str = "./sessions"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "context:session"


@lru_cache
def get_settings() -> ContextEngineSettings:
    """Singleton settings instance."""
    return ContextEngineSettings()
