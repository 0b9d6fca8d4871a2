"""Configuration for the routing engine.

Every setting can be overridden through environment variables prefixed with
``ROUTING_`` (for example ``ROUTING_SWEEP_INTERVAL_SECONDS=30``) or a ``.env``
file. Per-tenant routing configuration lives in the persistence store; the
values here are the defaults applied when a tenant has none.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


ROUTING_STRATEGIES = ("round_robin", "least_busy", "skill_based", "manual")


class RoutingSettings(BaseSettings):
    """Engine-wide settings and per-tenant defaults."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    log_level: str = "info"
    log_format: str = Field(
        default="console",
        description="Log renderer: json or console",
    )

    # Tenant defaults
    default_strategy: str = "round_robin"
    default_auto_assign: bool = True
    default_max_wait_minutes: int = Field(default=30, ge=1)
    default_language: str = "en"

    # Background sweeps
    sweep_interval_seconds: float = 60.0

    # Wait-time estimation
    eta_window_days: int = Field(default=7, ge=1)
    eta_sample_size: int = Field(default=50, ge=1)
    eta_default_chat_minutes: float = 5.0

    # Collaborators
    notify_timeout_seconds: float = 5.0

    # Assignment
    assign_attempts: int = Field(default=2, ge=1)
    default_break_minutes: int = Field(default=15, ge=1)

    @field_validator("default_strategy")
    @classmethod
    def validate_default_strategy(cls, v: str) -> str:
        """Only known routing strategies may be configured."""
        v = v.lower()
        if v not in ROUTING_STRATEGIES:
            raise ValueError(
                f"default_strategy must be one of {', '.join(ROUTING_STRATEGIES)}"
            )
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @field_validator(
        "sweep_interval_seconds",
        "eta_default_chat_minutes",
        "notify_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("value must be greater than zero")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod", "staging")


@lru_cache()
def get_settings() -> RoutingSettings:
    """Get cached settings instance."""
    return RoutingSettings()
