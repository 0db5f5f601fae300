# src/config/settings.py — v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for all deployment-specific settings: storage and
lock backends, retry/gating/kill-switch thresholds, logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Storage ===
    store_backend: Literal["memory", "sqlite"] = "sqlite"
    store_path: Path = Path("~/.scrapegate/scrapegate.db")
    blob_root: Path = Path("~/.scrapegate/blobs")
    sources_file: Path = Path("sources.json")

    # === Locks ===
    lock_backend: Literal["memory", "sqlite", "redis"] = "sqlite"
    lock_redis_url: str = ""
    lock_ttl_minutes: int = 30

    # === Checkpoints ===
    checkpoint_interval_items: int = 50
    checkpoint_max_bytes: int = 100_000

    # === Retry policy ===
    rate_limit_max_attempts: int = 3
    rate_limit_base_delay_s: float = 2.0
    rate_limit_max_delay_s: float = 120.0
    blocked_circuit_threshold: int = 3
    proxy_max_attempts: int = 3
    timeout_baseline_s: float = 30.0
    timeout_max_multiplier: float = 3.0
    infra_max_attempts: int = 3
    infra_backoff_step_s: float = 1.0

    # === Confidence scoring ===
    gate_full_threshold: float = 0.8
    gate_partial_threshold: float = 0.5
    low_yield_ratio: float = 0.5
    low_yield_penalty: float = 0.6
    block_weight: float = 2.0
    content_type_penalty: float = 0.5

    # === Kill switch ===
    killswitch_failure_threshold: int = 3
    killswitch_low_confidence_threshold: int = 5
    killswitch_low_confidence_score: float = 0.5
    killswitch_cooldown_hours: float = 24.0

    # === Scheduling ===
    max_concurrent_runs: int = 4
    safe_mode_pacing_factor: float = 2.0

    # === Notifications ===
    notify_log_file: Path | None = None

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator(
        "lock_ttl_minutes",
        "checkpoint_interval_items",
        "checkpoint_max_bytes",
        "max_concurrent_runs",
        "killswitch_failure_threshold",
        "killswitch_low_confidence_threshold",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:  # noqa: N805
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if not 0.0 <= self.gate_partial_threshold <= self.gate_full_threshold <= 1.0:
            errors.append(
                "GATE thresholds must satisfy 0 <= PARTIAL <= FULL <= 1"
            )

        if self.lock_backend == "redis" and not self.lock_redis_url:
            errors.append("LOCK_REDIS_URL must be set when LOCK_BACKEND=redis")

        if self.timeout_max_multiplier < 1.0:
            errors.append("TIMEOUT_MAX_MULTIPLIER must be >= 1")

        for name in ("low_yield_penalty", "content_type_penalty", "low_yield_ratio"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name.upper()} must be within [0, 1]")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
