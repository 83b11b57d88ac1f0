"""
Configuration management with Pydantic settings.
Supports environment variables and .env files for relay credentials and tuning.
"""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation and type safety."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Telegram Configuration
    telegram_bot_token: str = Field(..., description="Bot token from @BotFather")

    # VK API Configuration
    vk_access_token: str = Field(..., description="VK community or service access token")
    vk_api_version: str = Field(default="5.199")
    vk_api_url: str = Field(default="https://api.vk.com/method")
    vk_requests_per_second: float = Field(default=20.0, gt=0, le=100)
    vk_longpoll_wait: int = Field(default=25, ge=0, le=90)
    vk_request_timeout: float = Field(default=35.0, gt=0)

    # Polling Configuration
    poll_interval: float = Field(default=1.0, ge=0)
    idle_timeout: float = Field(default=30.0, gt=0)
    fetch_backoff_base: float = Field(default=2.0, ge=0)
    fetch_backoff_max: float = Field(default=300.0, ge=0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)

    # Command Configuration
    command_prefix: str = Field(default="/", min_length=1)
    bind_command: str = Field(default="Bind", min_length=1)

    # Logging Configuration
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    debug_mode: bool = Field(default=False)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept lower-case level names from the environment."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("bind_command", mode="before")
    @classmethod
    def strip_command_prefix(cls, v, info):
        """Allow BIND_COMMAND=/Bind as well as BIND_COMMAND=Bind, for whatever COMMAND_PREFIX is."""
        if isinstance(v, str):
            v = v.strip()
            prefix = info.data.get("command_prefix") or "/"
            if v.startswith(prefix):
                v = v[len(prefix):]
        return v

    @field_validator("fetch_backoff_max")
    @classmethod
    def backoff_max_not_below_base(cls, v, info):
        base = info.data.get("fetch_backoff_base")
        if base is not None and v < base:
            raise ValueError("fetch_backoff_max must be >= fetch_backoff_base")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get application settings instance."""
    return Settings()
