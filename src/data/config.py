"""
SQP Sync Configuration Module
=============================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    BIGQUERY_PROJECT_ID: Google Cloud project holding the warehouse (required)
    BIGQUERY_DATASET: Dataset containing the SQP extract (default: dataclient_amzn_api_x_sqp)
    BIGQUERY_TABLE: Table containing the SQP extract (default: sqp_weekly)
    BIGQUERY_LOCATION: Query job location (default: US)
    GOOGLE_APPLICATION_CREDENTIALS: Service account key file (optional)
    BIGQUERY_QUERY_LIMIT: Default row limit per extraction (default: 10000)

    DATABASE_HOST: PostgreSQL host (default: localhost)
    DATABASE_PORT: PostgreSQL port (default: 5432)
    DATABASE_NAME: Database name (default: sqp)
    DATABASE_USER: Database user (default: sqp_app)
    DATABASE_PASSWORD: Database password (required)
    DATABASE_POOL_MIN: Minimum pool connections (default: 1)
    DATABASE_POOL_MAX: Maximum pool connections (default: 5)

    SYNC_BATCH_SIZE: Child rows per upsert batch (default: 500)
    SYNC_MAX_RETRIES: Rate-limit retries per call (default: 3)
    SYNC_RETRY_BASE_DELAY: Backoff base delay in seconds (default: 1.0)
    SYNC_CONTINUE_ON_ERROR: Keep going after a failed batch (default: false)
    SYNC_LOOKBACK_DAYS: Default sync window in days (default: 7)

    PIPELINE_ID: State row identifier (default: bigquery_sync)
    PIPELINE_LOCK_TIMEOUT_SECONDS: Lock TTL (default: 300)
    PIPELINE_HISTORY_RETENTION_DAYS: Transition history retention (default: 30)
"""

import os
import re
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        Environment variable value or default

    Raises:
        ValueError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class WarehouseConfig:
    """BigQuery warehouse configuration."""

    project_id: str = field(default_factory=lambda: get_env("BIGQUERY_PROJECT_ID", required=True))
    dataset: str = field(default_factory=lambda: get_env("BIGQUERY_DATASET", "dataclient_amzn_api_x_sqp"))
    table: str = field(default_factory=lambda: get_env("BIGQUERY_TABLE", "sqp_weekly"))
    location: str = field(default_factory=lambda: get_env("BIGQUERY_LOCATION", "US"))
    credentials_file: Optional[str] = field(
        default_factory=lambda: get_env("GOOGLE_APPLICATION_CREDENTIALS")
    )

    # Row cap for a single extraction query
    query_limit: int = field(default_factory=lambda: get_env_int("BIGQUERY_QUERY_LIMIT", 10000))

    @property
    def table_ref(self) -> str:
        """Fully qualified table reference for SQL."""
        return f"{self.project_id}.{self.dataset}.{self.table}"

    def __post_init__(self):
        """Validate configuration."""
        if not self.project_id:
            raise ValueError("BIGQUERY_PROJECT_ID is required")
        for part in (self.project_id, self.dataset, self.table):
            if not _IDENTIFIER_RE.match(part):
                raise ValueError(f"Invalid BigQuery identifier: {part!r}")
        if self.query_limit <= 0:
            raise ValueError("query_limit must be positive")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "sqp"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "sqp_app"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", required=True))

    # Connection pool settings
    pool_min_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 1))
    pool_max_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 5))

    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))

    # SSL mode: disable, allow, prefer, require, verify-ca, verify-full
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }

    def __post_init__(self):
        """Validate configuration."""
        if not self.password:
            raise ValueError("DATABASE_PASSWORD is required")
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size cannot exceed pool_max_size")


@dataclass
class SyncConfig:
    """Warehouse to store synchronization settings."""

    batch_size: int = field(default_factory=lambda: get_env_int("SYNC_BATCH_SIZE", 500))
    parent_batch_size: int = field(default_factory=lambda: get_env_int("SYNC_PARENT_BATCH_SIZE", 1000))

    # Rate-limit retry policy: delay = base * 2^attempt
    max_retries: int = field(default_factory=lambda: get_env_int("SYNC_MAX_RETRIES", 3))
    retry_base_delay: float = field(default_factory=lambda: get_env_float("SYNC_RETRY_BASE_DELAY", 1.0))

    continue_on_error: bool = field(default_factory=lambda: get_env_bool("SYNC_CONTINUE_ON_ERROR", False))
    lookback_days: int = field(default_factory=lambda: get_env_int("SYNC_LOOKBACK_DAYS", 7))

    # Drop duplicate (date, asin, query) rows in the warehouse query itself
    dedupe_in_query: bool = field(default_factory=lambda: get_env_bool("SYNC_DEDUPE_IN_QUERY", False))

    def __post_init__(self):
        """Validate configuration."""
        if self.batch_size <= 0 or self.parent_batch_size <= 0:
            raise ValueError("batch sizes must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay cannot be negative")


@dataclass
class StateConfig:
    """Pipeline state manager settings."""

    pipeline_id: str = field(default_factory=lambda: get_env("PIPELINE_ID", "bigquery_sync"))
    lock_timeout_seconds: int = field(
        default_factory=lambda: get_env_int("PIPELINE_LOCK_TIMEOUT_SECONDS", 300)
    )
    retention_days: int = field(
        default_factory=lambda: get_env_int("PIPELINE_HISTORY_RETENTION_DAYS", 30)
    )

    def __post_init__(self):
        """Validate configuration."""
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))

    # Structured logging
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


@dataclass
class Settings:
    """Main application settings container."""

    warehouse: WarehouseConfig = field(default_factory=WarehouseConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    app_name: str = "sqp-sync"
    app_version: str = "1.0.0"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


class _SettingsProxy:
    """Proxy class for lazy settings access."""

    def __getattr__(self, name):
        return getattr(get_settings(), name)


settings = _SettingsProxy()
