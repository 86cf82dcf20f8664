"""
Shared configuration management for the tiered cache layer.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseSettings):
    """Pure value inputs consumed by the cache layer, read from ``CACHE_*`` env vars."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="cache")

    # Shared tier
    redis_url: str = Field(default="redis://localhost:6379/0")
    key_prefix: str = Field(default="cache")
    redis_socket_timeout: float = Field(default=5.0, gt=0)
    redis_connect_timeout: float = Field(default=5.0, gt=0)
    scan_count: int = Field(default=500, gt=0)
    enable_shared_tier: bool = Field(default=True)

    # Freshness
    default_ttl: int = Field(default=1800, gt=0)
    fetch_timeout: float = Field(default=10.0, gt=0)
    compress_threshold: int = Field(default=1024, ge=0)

    # Local tier
    local_max_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    local_max_entries: int = Field(default=10000, gt=0)
    local_max_item_bytes: int = Field(default=1024 * 1024, gt=0)
    sweep_interval: float = Field(default=60.0, gt=0)

    # Background reporting (0 disables)
    stats_report_interval: float = Field(default=300.0, ge=0)

    # Batched loading
    batch_tick_interval: float = Field(default=0.0, ge=0)
    max_batch_size: int = Field(default=100, gt=0)

    # Cache warming
    warm_concurrency: int = Field(default=5, gt=0)


def get_settings(**overrides) -> CacheSettings:
    """Build settings from the environment, with explicit overrides winning."""
    return CacheSettings(**overrides)
