"""Configuration management using Pydantic v2."""

import os
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> str:
    """Find .env file: check project root first, then CWD."""
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    env_path = os.path.join(project_root, ".env")
    if os.path.exists(env_path):
        return env_path
    return ".env"


class StagAlgoSettings(BaseSettings):
    """Main configuration for the StagAlgo core."""

    model_config = SettingsConfigDict(
        env_file=_find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["text", "json"] = Field(
        default="text",
        description="Log output format: 'text' for development, 'json' for aggregators",
    )

    # Scheduler intervals
    scheduler_tick_seconds: float = Field(
        default=1.0, gt=0, description="How often the async scheduler loop checks for due tasks"
    )
    indicator_interval_seconds: int = Field(
        default=300, gt=0, description="Indicator recompute interval"
    )
    risk_interval_seconds: int = Field(default=60, gt=0, description="Risk recompute interval")
    retention_interval_seconds: int = Field(
        default=3600, gt=0, description="Retention sweep interval"
    )
    performance_interval_seconds: int = Field(
        default=86400, gt=0, description="Daily performance rollup interval"
    )
    overseer_scan_interval_seconds: int = Field(
        default=15, gt=0, description="Overseer position scan interval"
    )
    search_alert_interval_seconds: int = Field(
        default=60, gt=0, description="Saved-search alert check interval"
    )
    recommendation_interval_seconds: int = Field(
        default=300, gt=0, description="Recommendation refresh interval"
    )

    # Retention (days)
    retention_1m_days: int = Field(default=90, gt=0)
    retention_5m_days: int = Field(default=90, gt=0)
    retention_15m_days: int = Field(default=90, gt=0)
    retention_1h_days: int = Field(default=180, gt=0)
    retention_d1_days: int = Field(default=730, gt=0)
    indicator_retention_days: int = Field(default=90, gt=0)
    oracle_retention_days: int = Field(default=90, gt=0)
    risk_retention_days: int = Field(default=730, gt=0)
    position_risk_retention_days: int = Field(default=90, gt=0)
    performance_retention_days: int = Field(default=730, gt=0)

    # Store
    min_candles_for_indicators: int = Field(
        default=20, ge=2, description="Series shorter than this are skipped by the indicator pass"
    )
    health_degraded_age_minutes: float = Field(default=10.0, gt=0)
    health_unhealthy_age_minutes: float = Field(default=60.0, gt=0)
    default_equity: float = Field(
        default=100_000.0, gt=0, description="Equity assumed by the validator without a snapshot"
    )
    seed_reference_data: bool = Field(
        default=True, description="Load the default symbol/oracle seed set on startup"
    )

    # Ingestion
    feed_stale_seconds: int = Field(
        default=300, gt=0, description="Feed records older than this are rejected as stale"
    )

    # Overseer
    collapse_exit_threshold: float = Field(default=0.8, ge=0, le=1)
    collapse_reduce_threshold: float = Field(default=0.6, ge=0, le=1)
    collapse_monitor_threshold: float = Field(default=0.4, ge=0, le=1)
    max_spread_pct: float = Field(default=0.05, gt=0, description="Spread above which trades are soft-pulled")
    min_volume_ratio: float = Field(default=0.3, gt=0, description="Volume/ADV ratio below which trades are soft-pulled")
    max_volatility: float = Field(default=0.5, gt=0, description="Annualized volatility above which stops are tightened")
    max_trades_per_hour: int = Field(default=3, ge=1)
    critical_signal_window_minutes: int = Field(default=15, ge=1)
    loss_alert_pct: float = Field(default=15.0, gt=0, description="Unrealized loss % that raises a scan alert")

    # Validator
    validator_learning_rate: float = Field(
        default=0.1, gt=0, le=1, description="Step size of the rule effectiveness update"
    )

    # Backend collaborators
    backend_url: str = Field(
        default="http://localhost:54321", description="Base URL of the hosted backend"
    )
    backend_api_key: str = Field(default="", description="API key sent to the hosted backend")
    execution_timeout_seconds: float = Field(default=10.0, gt=0)
    candle_fetch_timeout_seconds: float = Field(default=6.0, gt=0)
    persistence_flush_seconds: float = Field(default=5.0, gt=0)
    persistence_batch_size: int = Field(default=100, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a standard logging level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @model_validator(mode="after")
    def validate_thresholds(self) -> "StagAlgoSettings":
        """Collapse thresholds must be ordered monitor < reduce < exit."""
        if not (
            self.collapse_monitor_threshold
            < self.collapse_reduce_threshold
            < self.collapse_exit_threshold
        ):
            raise ValueError(
                "collapse thresholds must satisfy monitor < reduce < exit "
                f"(got {self.collapse_monitor_threshold}, {self.collapse_reduce_threshold}, "
                f"{self.collapse_exit_threshold})"
            )
        if self.health_degraded_age_minutes >= self.health_unhealthy_age_minutes:
            raise ValueError("health_degraded_age_minutes must be below health_unhealthy_age_minutes")
        return self

    def candle_retention_days(self, timeframe: str) -> int:
        """Retention window in days for a candle timeframe."""
        return {
            "1m": self.retention_1m_days,
            "5m": self.retention_5m_days,
            "15m": self.retention_15m_days,
            "1h": self.retention_1h_days,
            "D1": self.retention_d1_days,
        }[timeframe]


settings = StagAlgoSettings()
