"""
Configuration settings for the sandbox session service.
Uses pydantic-settings for environment variable management.
"""

from typing import Literal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load .env file BEFORE pydantic-settings initializes
# so E2B_CODE_EV_* variables are visible through os.environ as well
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # E2B
    e2b_api_key: str | None = Field(default=None)
    e2b_domain: str | None = Field(default=None)
    e2b_template: str | None = Field(
        default=None,
        description="Sandbox template; the SDK default is used when unset",
    )

    # Operator variables injected into every sandbox, stripped of this prefix
    hidden_env_prefix: str = Field(default="E2B_CODE_EV_")

    # Database Configuration (record store is in-memory when unset)
    database_url: str | None = Field(default=None)

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379")
    enable_distributed_lock: bool = Field(default=False)
    distributed_lock_timeout_seconds: int = Field(default=120)
    distributed_lock_wait_seconds: int = Field(default=30)

    # Sandbox lifecycle
    sandbox_default_timeout_minutes: int = Field(default=60)
    sandbox_idle_timeout_seconds: int = Field(
        default=3600,
        description="Handles idle longer than this are killed by the reaper",
    )
    reaper_interval_seconds: int = Field(default=300)
    reconnect_max_retries: int = Field(default=2)
    reconnect_retry_delay_seconds: float = Field(default=1.0)

    # Commands
    command_timeout_seconds: int = Field(default=60)
    install_timeout_seconds: int = Field(default=300)
    max_output_size: int = Field(default=50000)

    # HTTP surface
    sandbox_api_key: str = Field(default="")
    allowed_origins: str = Field(default="http://localhost:3080")
    sentry_dsn: str = Field(default="")
    sentry_environment: str = Field(default="development")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


# Global settings instance
settings = Settings()
