"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Stake Event Indexer, loading and validating environment variables at
startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _is_address(value: str) -> bool:
    if not value.startswith("0x") or len(value) != 42:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


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
        if not v.startswith(("postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (block timestamp cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class ChainSettings(BaseSettings):
    """Blockchain node and watched contract settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        alias="CHAIN_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    ws_url: str | None = Field(
        default=None,
        alias="CHAIN_WS_URL",
        description="WebSocket endpoint for live subscriptions (derived from CHAIN_RPC_URL if unset)",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    # Comma-separated, not JSON.
    watched_contracts: Annotated[tuple[str, ...], NoDecode] = Field(
        alias="CHAIN_WATCHED_CONTRACTS",
        description="Contract addresses to index (comma-separated)",
    )
    stake_contract_address: str | None = Field(
        default=None,
        alias="CHAIN_STAKE_CONTRACT_ADDRESS",
        description="Staking contract address (defaults to the first watched contract)",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        """Validate WebSocket URL format."""
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v

    @field_validator("watched_contracts", mode="before")
    @classmethod
    def _parse_watched_contracts(cls, v: object) -> tuple[str, ...]:
        if v is None:
            raise ValueError("CHAIN_WATCHED_CONTRACTS must be set")
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
        elif isinstance(v, (list, tuple)):
            parts = [str(x).strip() for x in v]
        else:
            raise TypeError("Invalid CHAIN_WATCHED_CONTRACTS type")
        if not parts:
            raise ValueError("CHAIN_WATCHED_CONTRACTS must contain at least one address")
        for part in parts:
            if not _is_address(part):
                raise ValueError(f"Invalid contract address: {part}")
        return tuple(p.lower() for p in parts)

    @field_validator("stake_contract_address")
    @classmethod
    def validate_stake_contract_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not _is_address(v):
            raise ValueError(f"Invalid contract address: {v}")
        return v.lower()

    @property
    def effective_ws_url(self) -> str:
        """WebSocket endpoint, derived from the RPC URL when not configured."""
        if self.ws_url:
            return self.ws_url
        if self.rpc_url.startswith("https://"):
            return "wss://" + self.rpc_url[len("https://") :]
        return "ws://" + self.rpc_url[len("http://") :]

    @property
    def effective_stake_contract(self) -> str:
        return self.stake_contract_address or self.watched_contracts[0]


class IndexerSettings(BaseSettings):
    """Event indexer batching, reconciliation and retry settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    batch_size_blocks: int = Field(
        default=1000,
        alias="INDEXER_BATCH_SIZE_BLOCKS",
        ge=1,
        le=1_000_000,
        description="Block range size per eth_getLogs batch",
    )
    reconciliation_interval_seconds: int = Field(
        default=300,
        alias="INDEXER_RECONCILIATION_INTERVAL_SECONDS",
        ge=1,
        le=86_400,
        description="How often to check for missed blocks",
    )
    reconciliation_gap_threshold_blocks: int = Field(
        default=10,
        alias="INDEXER_RECONCILIATION_GAP_THRESHOLD_BLOCKS",
        ge=0,
        le=1_000_000,
        description="Gap (current height - last processed) that triggers reconciliation",
    )
    init_max_retries: int = Field(
        default=5,
        alias="INDEXER_INIT_MAX_RETRIES",
        ge=1,
        le=100,
        description="Connection attempts during initialization before giving up",
    )
    init_retry_delay_seconds: float = Field(
        default=1.0,
        alias="INDEXER_INIT_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff delay between initialization attempts",
    )
    batch_max_attempts: int = Field(
        default=3,
        alias="INDEXER_BATCH_MAX_ATTEMPTS",
        ge=1,
        le=100,
        description="Attempts per batch before the range is recorded as an outstanding gap",
    )
    batch_retry_delay_seconds: float = Field(
        default=1.0,
        alias="INDEXER_BATCH_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff delay between attempts of a failed batch",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="INDEXER_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Timeout for a single RPC request",
    )
    inbox_max_size: int = Field(
        default=10_000,
        alias="INDEXER_INBOX_MAX_SIZE",
        ge=1,
        le=1_000_000,
        description="Bound on queued live messages",
    )
    stop_timeout_seconds: float = Field(
        default=30.0,
        alias="INDEXER_STOP_TIMEOUT_SECONDS",
        ge=0.0,
        le=600.0,
        description="How long stop() waits for the batch in flight",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from stake_event_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.watched_contracts)
        print(settings.log_level)
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
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
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
                "ws_url": self._redact_url(self.chain.effective_ws_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "watched_contracts": ",".join(self.chain.watched_contracts),
                "stake_contract": self.chain.effective_stake_contract,
            },
            "indexer": {
                "batch_size_blocks": str(self.indexer.batch_size_blocks),
                "reconciliation_interval_seconds": str(self.indexer.reconciliation_interval_seconds),
                "reconciliation_gap_threshold_blocks": str(
                    self.indexer.reconciliation_gap_threshold_blocks
                ),
                "batch_max_attempts": str(self.indexer.batch_max_attempts),
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
