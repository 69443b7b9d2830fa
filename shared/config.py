"""
Shared configuration management for the inventory cache.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="INVENTORY_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Primary backing store
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_connect_timeout: float = Field(default=5.0, gt=0)

    # Fallback store
    fallback_path: str = Field(default=".inventory_cache.json")


class CacheSettings(BaseConfig):
    """Tunables for chunking, expiry, eviction and batching."""

    namespace: str = Field(default="inv", min_length=1)

    chunk_size: int = Field(default=100, ge=1)
    direct_mode_threshold: int = Field(default=1000, ge=0)
    large_dataset_threshold: int = Field(default=5000, ge=0)
    max_value_bytes: Optional[int] = Field(default=4096, ge=1)

    ttl_seconds: float = Field(default=30 * 60, gt=0)
    max_entries: int = Field(default=20, ge=1)

    write_batch_size: int = Field(default=3, ge=1)
    write_batch_delay: float = Field(default=0.05, ge=0)
    read_batch_size: int = Field(default=5, ge=1)
    read_batch_delay: float = Field(default=0.03, ge=0)


class ServiceConfig(CacheSettings):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_settings(**overrides) -> CacheSettings:
    """Get cache settings, applying explicit overrides on top of the environment."""
    return CacheSettings(**overrides)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
