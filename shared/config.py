"""Base configuration with pydantic-settings.

Services inherit `BaseSettings` and declare the fields they need. Reusable
field definitions live at the bottom of the module so that URL fields look
the same in every service.

Usage in service:
    from shared.config import BaseSettings, database_url_field

    class Settings(BaseSettings):
        database_url: str = database_url_field(required=True)
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings as PydanticBaseSettings, SettingsConfigDict


class BaseSettings(PydanticBaseSettings):
    """Base application settings.

    All fields here are optional with sensible defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging configuration
    service_name: str = Field(
        default="container-manager",
        description="Service name for structured logging",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


# === Field definitions for reuse in service configs ===


def database_url_field(required: bool = True, default: str | None = None):
    """Database URL field definition."""
    if required and default is None:
        return Field(
            ...,
            description="SQLAlchemy async connection URL",
            examples=["postgresql+asyncpg://user:pass@db:5432/dbname"],
        )
    return Field(
        default=default,
        description="SQLAlchemy async connection URL",
        examples=["sqlite+aiosqlite:///./container_manager.db"],
    )


def redis_url_field(required: bool = True):
    """Redis URL field definition."""
    if required:
        return Field(
            ...,
            description="Redis connection URL",
            examples=["redis://redis:6379"],
        )
    return Field(
        default=None,
        description="Redis connection URL (optional, enables event fan-out)",
    )
