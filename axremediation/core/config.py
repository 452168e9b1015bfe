"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "AXRemediation"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )

    # Control loop
    tick_interval_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Period of the rule evaluation loop in seconds",
    )
    catalog_refresh_seconds: float = Field(
        default=60.0,
        ge=5,
        description="Rule catalog refresh interval in seconds",
    )
    max_concurrent_executions: int = Field(
        default=8,
        ge=1,
        description="Maximum number of executions running at once",
    )
    history_window_seconds: int = Field(
        default=900,
        ge=60,
        description="Rolling signal history kept for sustained conditions",
    )

    # Execution
    action_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Default hard timeout of a single action",
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Time in-flight executions get to finish on shutdown",
    )
    execution_max_lifetime_seconds: int = Field(
        default=3600,
        ge=60,
        description="Non-terminal executions older than this are reconciled",
    )
    watchdog_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How often stale executions are reconciled",
    )
    action_retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Base delay between action attempts (exponential)",
    )

    # Ledger
    ledger_write_max_retry: int = Field(
        default=3,
        ge=1,
        description="Attempts for a terminal ledger write before buffering",
    )
    ledger_retry_base_delay: float = Field(
        default=0.5,
        ge=0,
        description="Base delay between ledger write attempts (exponential)",
    )
    history_default_limit: int = Field(
        default=100,
        ge=1,
        description="Default number of executions returned by history queries",
    )

    # Monitoring API (target of ERP operations actions)
    monitoring_api_url: str = Field(
        default="http://localhost:5000",
        description="Base URL of the monitoring API",
    )
    monitoring_api_token: str = Field(default="", description="Bearer token for the monitoring API")
    http_timeout: float = Field(default=10.0, gt=0, description="HTTP client timeout in seconds")

    # Scripts
    script_root: str = Field(
        default="./scripts/remediation",
        description="Directory that invoke_script actions may run from",
    )
    powershell_executable: str = Field(
        default="pwsh",
        description="Interpreter used for .ps1 remediation scripts",
    )

    # Metrics
    metrics_port: int = Field(
        default=9108,
        ge=0,
        description="Prometheus exporter port, 0 disables the exporter",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
