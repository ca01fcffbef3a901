"""
Configuration settings for the linker knowledge point core.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ApiConfig(BaseModel):
    """Remote store endpoint layout."""

    dashboard_endpoint: str = "/api/data/get_dashboard"
    archived_endpoint: str = "/api/data/archived_knowledge_points"
    finalize_endpoint: str = "/api/data/session/finalize"
    knowledge_point_endpoint: str = "/api/v2/data/knowledge_point"
    legacy_knowledge_point_endpoint: str = "/api/data/knowledge_point"
    batch_action_endpoint: str = "/api/v2/data/knowledge_points/batch_action"
    health_endpoint: str = "/health"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LINKER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Remote store
    # ========================================
    api_base_url: str = Field(
        default="http://localhost:5000",
        description="Base URL of the knowledge point backend",
    )
    api_token: str | None = Field(
        default=None,
        description="Bearer token handed over by the auth layer; unset means guest mode",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for remote store calls",
    )
    api: ApiConfig = Field(default_factory=ApiConfig)

    # ========================================
    # Local store
    # ========================================
    local_database_url: str = Field(
        default="sqlite:///data/linker_local.db",
        description="SQLite database holding guest points and the offline cache",
    )
    guest_knowledge_point_limit: int = Field(
        default=20,
        description="Maximum knowledge points a guest may keep on-device (0 disables the cap)",
    )

    # ========================================
    # Repository & reconciliation
    # ========================================
    cache_ttl_seconds: int = Field(
        default=300,
        description="How long fetched remote lists stay fresh in memory",
    )
    promotion_delay_seconds: float = Field(
        default=0.5,
        description="Pause between promotion requests to avoid hammering the backend",
    )
    auto_sync_interval_seconds: int = Field(
        default=3600,
        description="Minimum gap between automatic reconciliation runs",
    )
    foreground_threshold_seconds: int = Field(
        default=300,
        description="Background time after which returning to foreground triggers a sync",
    )

    # ========================================
    # Mastery engine (0-5 scale)
    # ========================================
    mastery_correct_gain: float = Field(
        default=0.5,
        description="Mastery added per correct answer",
    )
    mastery_base_interval_days: float = Field(
        default=1.0,
        description="First review interval after a correct answer",
    )
    mastery_max_interval_days: float = Field(
        default=180.0,
        description="Upper bound for the review interval",
    )
    mastery_relearn_interval_hours: float = Field(
        default=4.0,
        description="Review delay after an incorrect answer",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_file: str | None = Field(
        default="logs/linker.log",
        description="Log file path (None for stderr only)",
    )

    @property
    def is_authenticated(self) -> bool:
        """Whether a token was configured for the remote store."""
        return bool(self.api_token)

    def get_mastery_config(self) -> dict[str, float]:
        """Get mastery engine parameters as a dictionary."""
        return {
            "correct_gain": self.mastery_correct_gain,
            "base_interval_days": self.mastery_base_interval_days,
            "max_interval_days": self.mastery_max_interval_days,
            "relearn_interval_hours": self.mastery_relearn_interval_hours,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
