"""
Core configuration module for LLM Reliability.

WBS-R1.1: Settings Class Implementation
WBS-R1.2: Settings Singleton

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the LLM_RELIABILITY_ prefix.

Reference:
- Release It! (Nygard): Circuit breaker thresholds and timeouts
- GUIDELINES: Sinha pp. 193-195 - Pydantic BaseSettings pattern
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    WBS-R1.1: Settings class extending BaseSettings.

    All fields use the LLM_RELIABILITY_ prefix for environment variables.
    Example: LLM_RELIABILITY_TOTAL_TIMEOUT_SECONDS=45
    """

    # =========================================================================
    # WBS-R1.1.1: Service Configuration
    # =========================================================================
    service_name: str = Field(
        default="llm-reliability",
        description="Name of the service for logging and identification",
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    # =========================================================================
    # WBS-R1.1.2: Redis Configuration
    # =========================================================================
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL for shared circuit state and tracking records",
    )

    # =========================================================================
    # WBS-R1.1.3: Circuit Breaker Configuration
    # =========================================================================
    circuit_breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Number of consecutive failures before circuit opens",
    )
    circuit_breaker_recovery_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=3600.0,
        description="Seconds to wait before allowing a half-open trial",
    )
    circuit_breaker_window_seconds: Optional[float] = Field(
        default=60.0,
        gt=0.0,
        description="Rolling window for consecutive failures (None disables)",
    )
    circuit_breaker_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where circuit state lives: process memory or shared Redis",
    )

    # =========================================================================
    # WBS-R1.1.4: Deadline Configuration
    # =========================================================================
    total_timeout_seconds: Optional[float] = Field(
        default=120.0,
        gt=0.0,
        description="Wall-clock ceiling across all attempts (None disables)",
    )

    # =========================================================================
    # WBS-R1.1.5: Tracking Configuration
    # =========================================================================
    tracking_store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where execution tracking records are persisted",
    )
    tracking_record_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="Time-to-live for tracking records stored in Redis",
    )
    error_message_max_length: int = Field(
        default=1000,
        ge=16,
        description="Maximum stored length of an error message",
    )
    usage_tracking_enabled: bool = Field(
        default=False,
        description="Aggregate per-backend token usage and spend in Redis",
    )

    # =========================================================================
    # WBS-R1.1.6: Environment Prefix Configuration
    # =========================================================================
    model_config = {
        "env_prefix": "LLM_RELIABILITY_",
        "case_sensitive": False,
        "extra": "ignore",
    }

    # =========================================================================
    # WBS-R1.1.7: Field Validators
    # =========================================================================
    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("Redis URL must start with redis:// or rediss://")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


# =============================================================================
# WBS-R1.2: Settings Singleton
# =============================================================================


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses functools.lru_cache to ensure only one Settings instance is created.

    Returns:
        Settings: The application settings instance.
    """
    return Settings()
