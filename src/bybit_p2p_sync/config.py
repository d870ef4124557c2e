"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Bybit P2P sync service, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

MAINNET_BASE_URL = "https://api.bybit.com"
TESTNET_BASE_URL = "https://api-testnet.bybit.com"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )
    connect_retries: int = Field(
        default=5,
        alias="DATABASE_CONNECT_RETRIES",
        ge=1,
        le=100,
        description="Connection attempts at startup before giving up",
    )
    connect_retry_delay_seconds: float = Field(
        default=5.0,
        alias="DATABASE_CONNECT_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=300.0,
        description="Fixed delay between connection attempts",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class ExchangeSettings(BaseSettings):
    """Bybit REST API settings."""

    model_config = SettingsConfigDict(env_prefix="BYBIT_", extra="ignore")

    base_url: str | None = Field(
        default=None,
        alias="BYBIT_BASE_URL",
        description="Override for the REST host (takes precedence over BYBIT_TESTNET)",
    )
    testnet: bool = Field(
        default=False,
        alias="BYBIT_TESTNET",
        description="Use the Bybit testnet host",
    )
    recv_window_ms: int = Field(
        default=5000,
        alias="BYBIT_RECV_WINDOW_MS",
        ge=1000,
        le=60_000,
        description="Receive window sent with signed requests",
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        alias="BYBIT_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="HTTP timeout per request",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("BYBIT_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @property
    def resolved_base_url(self) -> str:
        """Host actually used for requests."""
        if self.base_url:
            return self.base_url
        return TESTNET_BASE_URL if self.testnet else MAINNET_BASE_URL


class SyncSettings(BaseSettings):
    """Trade history sync pass settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    interval_seconds: int = Field(
        default=300,
        alias="SYNC_INTERVAL_SECONDS",
        ge=10,
        le=86_400,
        description="How often the sync pass runs",
    )
    account_delay_seconds: float = Field(
        default=2.0,
        alias="SYNC_ACCOUNT_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between accounts within one pass",
    )
    page_delay_seconds: float = Field(
        default=0.5,
        alias="SYNC_PAGE_DELAY_SECONDS",
        ge=0.0,
        le=10.0,
        description="Pause between page requests",
    )
    max_pages: int = Field(
        default=10,
        alias="SYNC_MAX_PAGES",
        ge=1,
        le=100,
        description="Page cap per fetch strategy",
    )
    lookback_days: int = Field(
        default=3,
        alias="SYNC_LOOKBACK_DAYS",
        ge=1,
        le=180,
        description="Window length for the time-windowed strategy",
    )
    windowed_page_size: int = Field(
        default=20,
        alias="SYNC_WINDOWED_PAGE_SIZE",
        ge=1,
        le=100,
    )
    unwindowed_page_size: int = Field(
        default=10,
        alias="SYNC_UNWINDOWED_PAGE_SIZE",
        ge=1,
        le=100,
    )
    minimal_page_size: int = Field(
        default=5,
        alias="SYNC_MINIMAL_PAGE_SIZE",
        ge=1,
        le=100,
    )
    minimal_strategy_enabled: bool = Field(
        default=False,
        alias="SYNC_MINIMAL_STRATEGY_ENABLED",
        description="Append the status-only minimal query to the fallback chain",
    )
    cabinet_appealing_as_completed: bool = Field(
        default=False,
        alias="SYNC_CABINET_APPEALING_AS_COMPLETED",
        description="Treat status 30 (appealing) as completed for cabinet accounts",
    )


class EnrichmentSettings(BaseSettings):
    """Chat phone enrichment pass settings."""

    model_config = SettingsConfigDict(env_prefix="ENRICHMENT_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="ENRICHMENT_ENABLED",
        description="Run the enrichment pass on its own schedule",
    )
    interval_seconds: int = Field(
        default=600,
        alias="ENRICHMENT_INTERVAL_SECONDS",
        ge=10,
        le=86_400,
    )
    record_delay_seconds: float = Field(
        default=1.0,
        alias="ENRICHMENT_RECORD_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Pause between per-transaction chat requests",
    )
    batch_limit: int = Field(
        default=500,
        alias="ENRICHMENT_BATCH_LIMIT",
        ge=1,
        le=100_000,
        description="Max unenriched transactions handled per pass",
    )
    chat_page_size: int = Field(
        default=100,
        alias="ENRICHMENT_CHAT_PAGE_SIZE",
        ge=1,
        le=100,
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from bybit_p2p_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.sync.interval_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    exchange: ExchangeSettings = Field(
        default_factory=lambda: ExchangeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sync: SyncSettings = Field(
        default_factory=lambda: SyncSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    enrichment: EnrichmentSettings = Field(
        default_factory=lambda: EnrichmentSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    shutdown_timeout_seconds: float = Field(
        default=60.0,
        alias="SHUTDOWN_TIMEOUT_SECONDS",
        ge=0.0,
        le=3600.0,
        description="How long stop() waits for an in-flight cycle before cancelling it",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "database_connect_retries": str(self.database.connect_retries),
            "exchange": {
                "base_url": self.exchange.resolved_base_url,
                "recv_window_ms": str(self.exchange.recv_window_ms),
            },
            "sync": {
                "interval_seconds": str(self.sync.interval_seconds),
                "max_pages": str(self.sync.max_pages),
                "lookback_days": str(self.sync.lookback_days),
                "minimal_strategy_enabled": str(self.sync.minimal_strategy_enabled),
                "cabinet_appealing_as_completed": str(self.sync.cabinet_appealing_as_completed),
            },
            "enrichment": {
                "enabled": str(self.enrichment.enabled),
                "interval_seconds": str(self.enrichment.interval_seconds),
                "batch_limit": str(self.enrichment.batch_limit),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
