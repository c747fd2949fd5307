"""Container manager configuration.

Optional: DATABASE_URL (defaults to a local SQLite file), REDIS_URL (enables
Redis fan-out of realtime events).
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field

from shared.config import BaseSettings, database_url_field, redis_url_field


class Settings(BaseSettings):
    """Container manager settings."""

    database_url: str = database_url_field(
        required=False, default="sqlite+aiosqlite:///./container_manager.db"
    )
    redis_url: str | None = redis_url_field(required=False)

    # Runtime
    runtime_backend: Literal["docker", "memory"] = "docker"
    container_prefix: str = "fas"
    image_prefix: str = "fas"
    docker_network: str = ""
    workspace_root: str = Field(
        default=".",
        description="Directory under which workspace folder paths are resolved",
    )

    # Deployment executor
    operation_timeout_seconds: float = 600.0
    build_max_retries: int = Field(default=3, ge=0, le=10)
    retry_backoff_seconds: float = 1.0

    # Health & metrics monitor
    health_check_interval_seconds: int = Field(default=30, ge=5, le=3600)
    health_check_host: str = "127.0.0.1"
    metrics_interval_seconds: int = Field(default=15, ge=1)
    metrics_retention: int = Field(default=50, ge=10, le=1000)
    health_history_size: int = 50
    monitor_concurrency: int = Field(default=10, ge=1)

    # Event broadcaster
    subscriber_queue_size: int = 256
    events_channel_prefix: str = "services"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
