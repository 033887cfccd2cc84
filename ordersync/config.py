"""
Centralized configuration for the order sync engine.

Configuration is loaded from environment variables with sensible defaults.

Usage:
    from ordersync.config import config

    batch_size = config.sync.batch_size
    grace = config.sync.open_grace_minutes
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value and value.strip().lstrip("-").isdigit() else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    try:
        return float(value) if value else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    """Remote order API (Linnworks) configuration."""

    auth_url: str = field(
        default_factory=lambda: os.getenv(
            "LINNWORKS_AUTH_URL", "https://api.linnworks.net/api/Auth/AuthorizeByApplication"
        )
    )
    application_id: str = field(default_factory=lambda: os.getenv("LINNWORKS_APP_ID", ""))
    application_secret: str = field(default_factory=lambda: os.getenv("LINNWORKS_APP_SECRET", ""))
    installation_token: str = field(default_factory=lambda: os.getenv("LINNWORKS_TOKEN", ""))
    location_id: str = field(
        default_factory=lambda: os.getenv(
            "LINNWORKS_LOCATION_ID", "00000000-0000-0000-0000-000000000000"
        )
    )
    request_timeout: float = 30.0
    requests_per_minute: int = field(default_factory=lambda: _env_int("LINNWORKS_RATE_LIMIT", 150))
    max_batch_size: int = 200
    session_ttl_seconds: int = 1800
    session_refresh_margin_seconds: int = 300

    @property
    def is_configured(self) -> bool:
        """All three credentials are needed to open a session."""
        return bool(self.application_id and self.application_secret and self.installation_token)


@dataclass(frozen=True)
class SyncConfig:
    """Sync pipeline tuning."""

    batch_size: int = field(default_factory=lambda: _env_int("SYNC_BATCH_SIZE", 200))
    max_attempts: int = 3
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    open_grace_minutes: int = 30
    cache_lookback_days: int = 730
    gc_every_batches: int = 10
    progress_every_batches: int = 5
    lock_ttl_seconds: int = 3600
    default_incremental_days: int = 7
    max_open_orders: int = field(default_factory=lambda: _env_int("SYNC_MAX_OPEN_ORDERS", 1000))
    default_date_field: str = field(
        default_factory=lambda: os.getenv("SYNC_DEFAULT_DATE_FIELD", "received")
    )
    max_historical_days: int = 730
    fanout_stagger_seconds: float = field(
        default_factory=lambda: _env_float("SYNC_FANOUT_STAGGER_SECONDS", 2.0)
    )
    fanout_concurrency: int = 3
    incremental_interval_minutes: int = field(
        default_factory=lambda: _env_int("SYNC_INTERVAL_MINUTES", 15)
    )
    failed_retry_limit: int = 50
    shutdown_timeout_seconds: float = field(
        default_factory=lambda: _env_float("SYNC_SHUTDOWN_TIMEOUT_SECONDS", 300.0)
    )


@dataclass(frozen=True)
class DatabaseConfig:
    """DuckDB storage configuration."""

    path: str = field(default_factory=lambda: os.getenv("ORDERSYNC_DB_PATH", "data/ordersync.duckdb"))
    query_timeout: float = 30.0


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(default_factory=lambda: _env_bool("LOG_JSON"))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global config instance
config = AppConfig()


# ─── Convenience Exports ──────────────────────────────────────────────────────
VERSION = config.version
MAX_BATCH_SIZE = config.gateway.max_batch_size
DB_PATH = config.database.path


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = None, require_gateway: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this before starting a run to fail fast with clear error messages
    instead of a half-started sync.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    app_config = app_config or config
    errors: List[str] = []

    if require_gateway:
        if not app_config.gateway.application_id:
            errors.append("LINNWORKS_APP_ID is required but not set")
        if not app_config.gateway.application_secret:
            errors.append("LINNWORKS_APP_SECRET is required but not set")
        if not app_config.gateway.installation_token:
            errors.append("LINNWORKS_TOKEN is required but not set")

    if not 1 <= app_config.sync.batch_size <= app_config.gateway.max_batch_size:
        errors.append(
            f"SYNC_BATCH_SIZE must be between 1 and {app_config.gateway.max_batch_size}"
        )

    if app_config.sync.default_date_field not in ("received", "processed", "payment", "cancelled"):
        errors.append("SYNC_DEFAULT_DATE_FIELD must be one of received, processed, payment, cancelled")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
