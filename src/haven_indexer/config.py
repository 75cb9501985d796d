"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Haven indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

# BNB Smart Chain mainnet addresses used by the price oracle.
WBNB_ADDRESS = "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"
USDT_ADDRESS = "0x55d398326f99059fF775485246999027B3197955"
HAVEN_ADDRESS = "0x3c06AF089F1188c8357b29bDf9f98B36E51f7690"
PANCAKE_FACTORY_ADDRESS = "0xcA143Ce32Fe78f1f7019d7d551a6402fC5350c73"

Command = Literal["backfill", "realtime", "serve"]


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis cache settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string for the block header cache",
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


class ChainSettings(BaseSettings):
    """BNB Smart Chain node settings."""

    model_config = SettingsConfigDict(env_prefix="BSC_", extra="ignore")

    rpc_url: str = Field(
        alias="BSC_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="BSC_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    ws_url: str | None = Field(
        default=None,
        alias="BSC_WS_URL",
        description="WebSocket endpoint for new block subscriptions",
    )
    logs_chunk_size_blocks: int = Field(
        default=10_000,
        alias="BSC_LOGS_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=100_000,
        description="Maximum block span per eth_getLogs call (provider limit)",
    )
    max_requests_per_second: float = Field(
        default=25,
        alias="BSC_MAX_REQUESTS_PER_SECOND",
        gt=0,
    )
    max_retries: int = Field(
        default=3,
        alias="BSC_MAX_RETRIES",
        ge=1,
        le=10,
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="BSC_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=600,
    )
    block_cache_size: int = Field(
        default=1000,
        alias="BSC_BLOCK_CACHE_SIZE",
        ge=1,
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("BSC_WS_URL must be a WebSocket endpoint")
        return v


class PriceSettings(BaseSettings):
    """Price oracle settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", extra="ignore")

    cache_ttl_seconds: float = Field(
        default=60.0,
        alias="PRICE_CACHE_TTL_SECONDS",
        gt=0,
    )
    fallback_bnb_price_usd: Decimal = Field(
        default=Decimal("600"),
        alias="PRICE_FALLBACK_BNB_USD",
        gt=0,
    )
    reference_price_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price?ids=binancecoin&vs_currencies=usd",
        alias="PRICE_REFERENCE_URL",
        description="HTTP endpoint returning the BNB/USD reference price",
    )
    wbnb_address: str = Field(default=WBNB_ADDRESS, alias="PRICE_WBNB_ADDRESS")
    usdt_address: str = Field(default=USDT_ADDRESS, alias="PRICE_USDT_ADDRESS")
    haven_address: str = Field(default=HAVEN_ADDRESS, alias="PRICE_HAVEN_ADDRESS")
    factory_address: str = Field(default=PANCAKE_FACTORY_ADDRESS, alias="PRICE_FACTORY_ADDRESS")


class IndexerSettings(BaseSettings):
    """Backfill and realtime indexer settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    backfill_lookback_blocks: int = Field(
        default=201_600,
        alias="INDEXER_BACKFILL_LOOKBACK_BLOCKS",
        ge=1,
        description="Start offset when a token has no deployment block (~7 days)",
    )
    swaps_lookback_blocks: int = Field(
        default=28_800,
        alias="INDEXER_SWAPS_LOOKBACK_BLOCKS",
        ge=1,
        description="DEX swap scan window during backfill (~24h)",
    )
    bonding_events_lookback_blocks: int = Field(
        default=10_000,
        alias="INDEXER_BONDING_EVENTS_LOOKBACK_BLOCKS",
        ge=1,
    )
    graduation_lookback_blocks: int = Field(
        default=100_000,
        alias="INDEXER_GRADUATION_LOOKBACK_BLOCKS",
        ge=1,
    )
    realtime_graduation_lookback_blocks: int = Field(
        default=1_000,
        alias="INDEXER_REALTIME_GRADUATION_LOOKBACK_BLOCKS",
        ge=1,
    )
    sniper_window_blocks: int = Field(
        default=10,
        alias="INDEXER_SNIPER_WINDOW_BLOCKS",
        ge=0,
        description="Blocks after the first transfer in which buyers count as snipers",
    )
    startup_backfill_blocks: int = Field(
        default=100,
        alias="INDEXER_STARTUP_BACKFILL_BLOCKS",
        ge=1,
    )
    realtime_max_range_blocks: int = Field(
        default=5_000,
        alias="INDEXER_REALTIME_MAX_RANGE_BLOCKS",
        ge=1,
        description="Largest block range one token processes per new block",
    )
    token_timeout_seconds: float = Field(
        default=120.0,
        alias="INDEXER_TOKEN_TIMEOUT_SECONDS",
        gt=0,
        description="Wall-clock limit for one token's range in the realtime loop",
    )
    fee_check_interval_seconds: float = Field(
        default=600.0,
        alias="INDEXER_FEE_CHECK_INTERVAL_SECONDS",
        gt=0,
    )
    fee_check_max_blocks: int = Field(
        default=1_000,
        alias="INDEXER_FEE_CHECK_MAX_BLOCKS",
        ge=1,
    )
    token_refresh_interval_seconds: float = Field(
        default=60.0,
        alias="INDEXER_TOKEN_REFRESH_INTERVAL_SECONDS",
        gt=0,
    )
    token_delay_seconds: float = Field(
        default=2.0,
        alias="INDEXER_TOKEN_DELAY_SECONDS",
        ge=0,
        description="Pause between tokens during backfill",
    )
    store_batch_size: int = Field(
        default=1_000,
        alias="INDEXER_STORE_BATCH_SIZE",
        ge=1,
    )
    reference_snapshot_interval_seconds: float = Field(
        default=300.0,
        alias="INDEXER_REFERENCE_SNAPSHOT_INTERVAL_SECONDS",
        gt=0,
    )
    token_channel: str = Field(
        default="haven_token_inserted",
        alias="INDEXER_TOKEN_CHANNEL",
        description="Postgres NOTIFY channel for new token rows",
    )


class ApiSettings(BaseSettings):
    """Read API settings."""

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    cache_ttl_seconds: float = Field(
        default=300.0,
        alias="API_CACHE_TTL_SECONDS",
        gt=0,
    )
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=8080, alias="API_PORT", ge=1, le=65535)
    cors_origins: str = Field(
        default="*",
        alias="API_CORS_ORIGINS",
        description="Comma separated list of allowed origins",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from haven_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.chain.rpc_url)
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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price: PriceSettings = Field(
        default_factory=lambda: PriceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    api: ApiSettings = Field(
        default_factory=lambda: ApiSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

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
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url) if self.chain.fallback_rpc_url else "(not set)"
                ),
                "ws_url": self._redact_url(self.chain.ws_url) if self.chain.ws_url else "(not set)",
                "logs_chunk_size_blocks": str(self.chain.logs_chunk_size_blocks),
                "request_timeout_seconds": str(self.chain.request_timeout_seconds),
            },
            "indexer": {
                "sniper_window_blocks": str(self.indexer.sniper_window_blocks),
                "fee_check_max_blocks": str(self.indexer.fee_check_max_blocks),
                "startup_backfill_blocks": str(self.indexer.startup_backfill_blocks),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Command) -> None:
        """Validate command-specific requirements.

        If a capability is required for a command and not configured, the
        application must refuse to run.
        """
        if command == "realtime" and not self.chain.ws_url:
            raise ValueError("BSC_WS_URL is required for the realtime indexer")

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
