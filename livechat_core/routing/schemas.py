"""
Routing Schemas

Pydantic models validating operator input before it reaches the engine.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .base import (
    DEFAULT_PRECEDENCE,
    InvalidRoutingConfigError,
    RoutingConfig,
    RoutingStrategyType,
)


# =============================================================================
# Request Models
# =============================================================================


class RoutingConfigUpdate(BaseModel):
    """Partial update of a tenant's routing configuration."""

    model_config = ConfigDict(extra="forbid")

    strategy: Optional[RoutingStrategyType] = Field(
        default=None,
        description="Routing strategy",
    )
    auto_assign: Optional[bool] = Field(
        default=None,
        description="Assign new conversations automatically",
    )
    max_wait_minutes: Optional[int] = Field(
        default=None,
        ge=1,
        le=24 * 60,
        description="Minutes a conversation may wait in the queue",
    )
    default_language: Optional[str] = Field(
        default=None,
        min_length=2,
        max_length=16,
        description="Language served without language routing",
    )
    precedence: Optional[List[str]] = Field(
        default=None,
        description="Order of pre-routing rules",
    )
    settings: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Free-form tenant settings",
    )

    @field_validator("precedence")
    @classmethod
    def validate_precedence(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        v = [name.lower() for name in v]
        unknown = [name for name in v if name not in DEFAULT_PRECEDENCE]
        if unknown:
            raise ValueError(
                f"Unknown routing rules {unknown}; allowed: {', '.join(DEFAULT_PRECEDENCE)}"
            )
        if len(set(v)) != len(v):
            raise ValueError("precedence must not repeat a rule")
        return v

    @field_validator("default_language")
    @classmethod
    def validate_language(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    def apply_to(self, config: RoutingConfig) -> RoutingConfig:
        """Return ``config`` with the provided fields replaced."""
        changes = self.model_dump(exclude_unset=True, exclude_none=True)
        for key, value in changes.items():
            setattr(config, key, value)
        return config


def parse_config_update(data: Dict[str, Any]) -> RoutingConfigUpdate:
    """Validate a raw update, raising the routing error type on failure."""
    try:
        return RoutingConfigUpdate.model_validate(data)
    except ValidationError as e:
        raise InvalidRoutingConfigError(str(e)) from e


__all__ = [
    "RoutingConfigUpdate",
    "parse_config_update",
]
