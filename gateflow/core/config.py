"""
GATEFLOW — Configuration Management
===================================
Centralized, validated configuration with environment-based overrides.
All settings are loaded from environment variables with sensible defaults.

The quality threshold and severity cutoffs are heuristics carried over from
earlier deployments; they are defaults, not contracts.

Usage:
    from gateflow.core.config import get_settings
    settings = get_settings()
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gateflow.core.exceptions import InvalidConfigurationError


class Environment(StrEnum):
    """Deployment environment, attached to every log entry."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Root configuration object.

    All values can be overridden via environment variables prefixed with ``GATEFLOW_``.
    Example: ``GATEFLOW_MAX_PARALLELISM=5``
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────────
    app_name: str = "gateflow"
    environment: Environment = Environment.DEVELOPMENT

    # ── Logging ──────────────────────────────────────────────────────────
    log_level: str = Field(
        default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_format: str = "json"  # "json" or "console"

    # ── Scheduling ───────────────────────────────────────────────────────
    max_parallelism: int = Field(default=3, ge=1, le=64)
    scheduler_poll_interval_seconds: float = Field(default=0.5, gt=0)
    max_scheduler_iterations: int = Field(default=10_000, ge=1)

    # ── Quality Gates ────────────────────────────────────────────────────
    quality_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    critical_score_cutoff: float = Field(default=0.3, ge=0.0, le=1.0)
    moderate_score_cutoff: float = Field(default=0.6, ge=0.0, le=1.0)
    default_success_score: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Score assumed for a successful outcome that states none.",
    )
    timeout_fails_quality_gate: bool = Field(
        default=True,
        description="Nodes completed with a timeout warning fail downstream quality gates.",
    )

    # ── Retries & Cycles ─────────────────────────────────────────────────
    max_retries: int = Field(default=3, ge=0, le=20)
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0.0)
    max_cyclical_iterations: int = Field(default=5, ge=1, le=100)
    general_improvement_cap: int = Field(default=3, ge=1, le=100)

    # ── Checkpoints & Recovery ───────────────────────────────────────────
    checkpoint_retention_count: int = Field(default=10, ge=1, le=1000)
    auto_checkpoint_interval: int = Field(
        default=5,
        ge=1,
        description="Results applied between automatic snapshots.",
    )
    max_recovery_attempts: int = Field(default=3, ge=1, le=50)

    # ── Timeouts ─────────────────────────────────────────────────────────
    task_timeout_seconds: float = Field(default=900.0, gt=0)
    extended_task_timeout_seconds: float = Field(default=1800.0, gt=0)
    extended_timeout_effort_threshold: float = Field(default=8.0, ge=0.0)

    # ── Events ───────────────────────────────────────────────────────────
    event_queue_size: int = Field(default=1000, ge=1)
    event_drain_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long a finishing run waits for the sink to accept queued events.",
    )

    # ── Persistence ──────────────────────────────────────────────────────
    persistence_url: str = "memory://"
    db_echo_sql: bool = False

    @model_validator(mode="after")
    def _check_cutoffs(self) -> "Settings":
        if self.critical_score_cutoff > self.moderate_score_cutoff:
            raise ValueError(
                "critical_score_cutoff must not exceed moderate_score_cutoff"
            )
        if self.extended_task_timeout_seconds < self.task_timeout_seconds:
            raise ValueError(
                "extended_task_timeout_seconds must be >= task_timeout_seconds"
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the singleton Settings instance.

    Cached so environment is read exactly once per process lifetime.
    Call ``get_settings.cache_clear()`` in tests to reset.

    Raises ``InvalidConfigurationError`` when the environment holds an
    invalid value.
    """
    try:
        return Settings()
    except ValidationError as exc:
        raise InvalidConfigurationError(f"Invalid configuration: {exc}") from exc
