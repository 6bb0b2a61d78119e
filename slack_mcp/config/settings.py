"""
Configuration settings for the Slack MCP server
"""

from typing import Any, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from slack_mcp.utils.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    server_name: str = "slack-mcp-server"
    server_version: str = "1.0.0"
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    transport: str = Field(default="stdio", pattern="^(stdio|sse)$")
    health_port: int = 8001

    # Slack tokens
    slack_bot_token: Optional[str] = None
    slack_user_token: Optional[str] = None
    use_user_token_for_read: bool = False

    # Slack rate limiting
    slack_rate_limit_retries: int = Field(default=3, ge=0, le=10)
    slack_max_request_concurrency: int = Field(default=3, ge=1, le=20)
    slack_reject_rate_limited_calls: bool = False
    slack_enable_rate_limit_retry: bool = True
    slack_requests_per_minute: int = Field(default=60, ge=1)
    slack_rate_limit_burst: int = Field(default=10, ge=1)
    slack_request_timeout: float = Field(default=30.0, gt=0)

    # Caching (TTLs in seconds)
    cache_enabled: bool = True
    cache_channels_max: int = Field(default=1000, ge=10, le=10000)
    cache_channels_ttl: int = Field(default=3600, ge=60, le=86400)
    cache_users_max: int = Field(default=500, ge=10, le=10000)
    cache_users_ttl: int = Field(default=1800, ge=60, le=86400)
    cache_search_max_queries: int = Field(default=100, ge=10, le=1000)
    cache_search_max_results: int = Field(default=5000, ge=100, le=50000)
    cache_search_query_ttl: int = Field(default=900, ge=60, le=3600)
    cache_search_result_ttl: int = Field(default=900, ge=60, le=3600)
    cache_search_adaptive_ttl: bool = True
    cache_search_pattern_invalidation: bool = True
    cache_files_max: int = Field(default=500, ge=10, le=5000)
    cache_files_ttl: int = Field(default=1800, ge=60, le=86400)
    cache_files_max_size: Optional[int] = Field(default=None, gt=0)
    cache_threads_max: int = Field(default=300, ge=10, le=5000)
    cache_threads_ttl: int = Field(default=2700, ge=60, le=3600)
    cache_global_memory_limit: Optional[int] = Field(default=None, gt=0)
    cache_maintenance_interval: float = Field(default=300.0, gt=0)

    # Pagination safety defaults for fetch_all_pages requests
    pagination_max_pages: int = Field(default=10, ge=1, le=100)
    pagination_max_items: int = Field(default=1000, ge=1, le=10000)

    # Logging
    log_level: str = "INFO"


def load_settings(**overrides: Any) -> Settings:
    """
    Build the settings once at process start

    Args:
        **overrides: Explicit values that win over the environment

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If any field fails validation
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Configuration validation failed: {problems}") from e
