"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
copy-trading worker, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from polymarket_copy_trader.credentials import parse_master_key

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache for per-user watermarks and cooldowns."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (unset keeps user state in memory only)",
    )
    state_ttl_seconds: int = Field(
        default=86_400,
        alias="REDIS_STATE_TTL_SECONDS",
        ge=60,
        le=30 * 86_400,
        description="TTL for cached user state",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        """Check if the Redis state cache is enabled."""
        return self.url is not None


class SignalFeedSettings(BaseSettings):
    """Upstream trade feed settings."""

    model_config = SettingsConfigDict(env_prefix="SIGNAL_", extra="ignore")

    feed_url: str | None = Field(
        default=None,
        alias="SIGNAL_FEED_URL",
        description="Base URL of the trades feed (queried with ?traders=...&limit=...)",
    )
    feed_limit: int = Field(
        default=50,
        alias="SIGNAL_FEED_LIMIT",
        ge=1,
        le=1000,
        description="Maximum trades requested per user per cycle",
    )
    feed_timeout_seconds: float = Field(
        default=10.0,
        alias="SIGNAL_FEED_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="HTTP timeout for feed requests",
    )
    leaderboard_url: str | None = Field(
        default=None,
        alias="SIGNAL_LEADERBOARD_URL",
        description="Base URL of the trader leaderboard API",
    )

    @field_validator("feed_url", "leaderboard_url")
    @classmethod
    def validate_http_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("Signal source URLs must be HTTP(S) endpoints")
        return v


class WorkerSettings(BaseSettings):
    """Polling loop and risk-pipeline settings."""

    model_config = SettingsConfigDict(env_prefix="WORKER_", extra="ignore")

    poll_interval_ms: int = Field(
        default=1500,
        alias="POLL_INTERVAL_MS",
        ge=100,
        le=3_600_000,
        description="Fixed delay between the end of one cycle and the start of the next",
    )
    initial_lookback_ms: int = Field(
        default=60_000,
        alias="WORKER_INITIAL_LOOKBACK_MS",
        ge=0,
        le=7 * 24 * 3_600_000,
        description="Window behind 'now' used to seed a fresh user's watermark",
    )
    call_timeout_seconds: float = Field(
        default=15.0,
        alias="WORKER_CALL_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Deadline for each network or storage call",
    )
    cycle_deadline_seconds: float = Field(
        default=120.0,
        alias="WORKER_CYCLE_DEADLINE_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Time allowed for one cycle; users not reached are deferred",
    )
    min_order_shares: Decimal = Field(
        default=Decimal("5"),
        alias="WORKER_MIN_ORDER_SHARES",
        description="Exchange minimum order size in shares",
    )

    @field_validator("min_order_shares")
    @classmethod
    def validate_min_order_shares(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("WORKER_MIN_ORDER_SHARES must be >= 0")
        return v


class ExecutionSettings(BaseSettings):
    """Execution backend selection."""

    model_config = SettingsConfigDict(env_prefix="EXECUTION_", extra="ignore")

    backend: Literal["paper", "clob"] = Field(
        default="paper",
        alias="EXECUTION_BACKEND",
        description="paper (deterministic, no orders sent) or clob (live exchange)",
    )


class PolymarketSettings(BaseSettings):
    """Polymarket API settings."""

    model_config = SettingsConfigDict(env_prefix="POLYMARKET_", extra="ignore")

    clob_host: str = Field(
        default="https://clob.polymarket.com",
        alias="POLYMARKET_CLOB_HOST",
        description="CLOB HTTP API host",
    )
    clob_chain_id: int = Field(
        default=137,
        alias="POLYMARKET_CLOB_CHAIN_ID",
        description="Chain ID for signing (Polygon=137)",
    )
    data_api_url: str = Field(
        default="https://data-api.polymarket.com",
        alias="POLYMARKET_DATA_API_URL",
        description="Data API host used for position lookups",
    )

    @field_validator("clob_host", "data_api_url")
    @classmethod
    def validate_http_host(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Polymarket hosts must be HTTP(S) endpoints")
        return v.rstrip("/")


class CredentialSettings(BaseSettings):
    """Master key used to decrypt per-user exchange credentials."""

    model_config = SettingsConfigDict(env_prefix="CREDENTIALS_", extra="ignore")

    master_key: SecretStr | None = Field(
        default=None,
        alias="CREDENTIALS_MASTER_KEY",
        description="AES-256 key as 64 hex characters or base64 of 32 bytes",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from polymarket_copy_trader.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.worker.poll_interval_ms)
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
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    signals: SignalFeedSettings = Field(
        default_factory=lambda: SignalFeedSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    worker: WorkerSettings = Field(
        default_factory=lambda: WorkerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    execution: ExecutionSettings = Field(
        default_factory=lambda: ExecutionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    polymarket: PolymarketSettings = Field(
        default_factory=lambda: PolymarketSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    credentials: CredentialSettings = Field(
        default_factory=lambda: CredentialSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
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
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "signals": {
                "feed_url": self.signals.feed_url or "(not set)",
                "feed_limit": str(self.signals.feed_limit),
                "leaderboard_url": self.signals.leaderboard_url or "(not set)",
            },
            "worker": {
                "poll_interval_ms": str(self.worker.poll_interval_ms),
                "initial_lookback_ms": str(self.worker.initial_lookback_ms),
                "call_timeout_seconds": str(self.worker.call_timeout_seconds),
                "cycle_deadline_seconds": str(self.worker.cycle_deadline_seconds),
                "min_order_shares": str(self.worker.min_order_shares),
            },
            "execution_backend": self.execution.backend,
            "polymarket": {
                "clob_host": self.polymarket.clob_host,
                "clob_chain_id": str(self.polymarket.clob_chain_id),
                "data_api_url": self.polymarket.data_api_url,
            },
            "credentials_master_key": "(set)" if self.credentials.master_key else "(not set)",
            "log_level": self.log_level,
        }

    def validate_requirements(
        self, *, command: Literal["run", "tick", "store-credentials", "top-traders"]
    ) -> None:
        """Validate command-specific requirements.

        A worker without a feed or a master key cannot do anything useful,
        so those commands refuse to start rather than idling.
        """
        if command in ("run", "tick"):
            if not self.signals.feed_url:
                raise ValueError("SIGNAL_FEED_URL is required to run the worker")
        if command in ("run", "tick", "store-credentials"):
            if not self.credentials.master_key:
                raise ValueError("CREDENTIALS_MASTER_KEY is required for credential decryption")
            parse_master_key(self.credentials.master_key.get_secret_value())
        if command == "top-traders" and not self.signals.leaderboard_url:
            raise ValueError("SIGNAL_LEADERBOARD_URL is required for leaderboard lookups")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
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

    Returns:
        The Settings instance.

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
