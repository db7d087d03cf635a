"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from caresignal.domain.signal_domains import (
    DEFAULT_MEDICATION_STATUSES,
    DEFAULT_OBSERVATION_CONCERN_LEVELS,
    DEFAULT_TASK_CONCERN_KEYWORDS,
    DEFAULT_VITAL_RANGES,
    SignalDomainRegistry,
    build_default_registry,
)

# Load environment variables from .env file
load_dotenv()


class CorrelationConfig(BaseModel):
    """Correlation engine configuration."""

    default_window_hours: int = Field(
        default=168, gt=0, description="Lookback window used when the caller supplies none"
    )
    contribution_cap: int = Field(
        default=10, ge=1, le=100, description="Max signal contributions linked per domain"
    )
    idempotent_writes: bool = Field(
        default=False,
        description="Skip re-inserting events whose (subject, rule, window) already exists",
    )
    window_granularity_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="Window end is floored to this granularity when idempotent_writes is on",
    )
    rules_file: str | None = Field(
        default=None, description="JSON file with correlation rules (seeded rules if unset)"
    )

    # Abnormality predicates
    medication_abnormal_statuses: list[str] = Field(
        default_factory=lambda: list(DEFAULT_MEDICATION_STATUSES), min_length=1
    )
    vital_ranges: dict[str, tuple[float | None, float | None]] = Field(
        default_factory=lambda: dict(DEFAULT_VITAL_RANGES)
    )
    observation_concern_levels: list[str] = Field(
        default_factory=lambda: list(DEFAULT_OBSERVATION_CONCERN_LEVELS), min_length=1
    )
    task_concern_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TASK_CONCERN_KEYWORDS), min_length=1
    )

    @field_validator("vital_ranges")
    @classmethod
    def validate_vital_ranges(
        cls, v: dict[str, tuple[float | None, float | None]]
    ) -> dict[str, tuple[float | None, float | None]]:
        for metric_type, (low, high) in v.items():
            if low is None and high is None:
                raise ValueError(f"Vital range for {metric_type} needs at least one bound")
            if low is not None and high is not None and low > high:
                raise ValueError(f"Vital range for {metric_type} has low > high")
        return v

    def build_registry(self) -> SignalDomainRegistry:
        """Domain registry with predicates taken from this configuration."""
        return build_default_registry(
            medication_statuses=self.medication_abnormal_statuses,
            vital_ranges=self.vital_ranges,
            observation_levels=self.observation_concern_levels,
            task_keywords=self.task_concern_keywords,
        )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def _split_csv(val: str | None) -> list[str] | None:
    if val is None:
        return None
    items = [item.strip() for item in val.split(",") if item.strip()]
    return items or None


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    overrides: dict[str, object] = {
        "default_window_hours": int(os.getenv("CORRELATION_WINDOW_HOURS", "168")),
        "contribution_cap": int(os.getenv("CORRELATION_CONTRIBUTION_CAP", "10")),
        "idempotent_writes": _parse_bool(os.getenv("CORRELATION_IDEMPOTENT_WRITES"), False),
        "window_granularity_minutes": int(
            os.getenv("CORRELATION_WINDOW_GRANULARITY_MINUTES", "60")
        ),
        "rules_file": os.getenv("CORRELATION_RULES_FILE") or None,
    }
    for field_name, env_name in (
        ("medication_abnormal_statuses", "MEDICATION_ABNORMAL_STATUSES"),
        ("observation_concern_levels", "OBSERVATION_CONCERN_LEVELS"),
        ("task_concern_keywords", "TASK_CONCERN_KEYWORDS"),
    ):
        parsed = _split_csv(os.getenv(env_name))
        if parsed is not None:
            overrides[field_name] = parsed

    correlation_config = CorrelationConfig.model_validate(overrides)

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        correlation=correlation_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> AppConfig:
    """Validate configuration at startup and apply the logging settings."""
    from caresignal.services.signal_sources import configure_logging, logger

    try:
        config = get_config()
    except Exception as e:
        logger.error("configuration_invalid", error=str(e))
        raise

    configure_logging(config.logging.level, config.logging.format)
    logger.info(
        "configuration_loaded",
        environment=config.environment,
        window_hours=config.correlation.default_window_hours,
        contribution_cap=config.correlation.contribution_cap,
        idempotent_writes=config.correlation.idempotent_writes,
    )
    return config
