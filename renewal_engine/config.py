"""
Engine Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica for scans
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Host process
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "ISP Renewal Engine"
    api_version: str = "0.1.0"
    api_description: str = "Wallet-based subscription renewal and billing automation"

    # Host lifecycle
    automation_enabled: bool = True  # False = serve status/metrics without loops
    run_migrations_on_startup: bool = False

    # Precision scheduler
    scheduler_interval_seconds: float = 60.0
    checkpoint_tolerance_seconds: int = 120
    scheduler_bounded_scan: bool = True  # False = scan every active client each tick

    # Payment ingestion
    payment_poll_interval_seconds: float = 30.0
    payment_lookback_seconds: int = 300
    installation_reference_prefix: str = "INST-"

    # Renewal policy
    renewal_period_days: int = 30
    min_partial_renewal_days: int = 3
    renewal_anchor: Literal["now", "expiry"] = "now"
    topup_renewal_max_days_until_expiry: int | None = None
    currency: str = "KES"

    # External collaborators
    http_timeout_seconds: float = 10.0
    mpesa_gateway_url: str = ""
    bank_gateway_url: str = ""
    gateway_api_key: str = ""
    notification_service_url: str = ""
    network_automation_url: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "isp-renewal-engine"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The engine MUST NOT start if critical config is missing, otherwise
        the background loops would silently fail on every tick.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.scheduler_interval_seconds <= 0:
            errors.append("SCHEDULER_INTERVAL_SECONDS must be positive")
        if self.payment_poll_interval_seconds <= 0:
            errors.append("PAYMENT_POLL_INTERVAL_SECONDS must be positive")
        if self.checkpoint_tolerance_seconds <= 0:
            errors.append("CHECKPOINT_TOLERANCE_SECONDS must be positive")
        if self.payment_lookback_seconds <= 0:
            errors.append("PAYMENT_LOOKBACK_SECONDS must be positive")
        if self.renewal_period_days <= 0:
            errors.append("RENEWAL_PERIOD_DAYS must be positive")
        if not 0 <= self.min_partial_renewal_days <= self.renewal_period_days:
            errors.append("MIN_PARTIAL_RENEWAL_DAYS must be between 0 and RENEWAL_PERIOD_DAYS")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - ENGINE CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def gateway_channels(self) -> dict[str, str]:
        """Configured payment channels keyed by payment method."""
        channels = {}
        if self.mpesa_gateway_url:
            channels["mpesa"] = self.mpesa_gateway_url
        if self.bank_gateway_url:
            channels["bank"] = self.bank_gateway_url
        return channels


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get engine settings instance."""
    return settings
