"""
Application settings.

Loads configuration from environment variables using pydantic-settings.
"""

from loguru import logger
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from btc_deposits.config.constants import (
    CHAIN_API_URLS,
    MONITOR_MAX_CONCURRENCY_LIMIT,
    MONITOR_STARTUP_DELAY_DEFAULT,
    MONITOR_STARTUP_DELAY_PRODUCTION,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str
    database_echo: bool = False

    # Bitcoin network (static, never a per-call parameter)
    bitcoin_network: str = "testnet"
    bitcoin_address_seed: str = Field(
        ...,
        min_length=16,
        description="Server-side secret used for deterministic address derivation",
    )
    chain_api_url: str | None = None

    # Confirmation policy
    required_confirmations: int = Field(
        default=6, ge=1, le=100, description="Confirmations required to settle"
    )

    # Monitor loop
    monitor_interval_seconds: float = Field(default=60.0, gt=0)
    monitor_batch_size: int = Field(default=100, ge=1, le=1000)
    monitor_max_concurrency: int = Field(
        default=4, ge=1, le=MONITOR_MAX_CONCURRENCY_LIMIT
    )
    monitor_item_delay_seconds: float = Field(default=0.1, ge=0)
    monitor_item_timeout_seconds: float = Field(default=120.0, gt=0)
    monitor_startup_delay_seconds: float | None = Field(default=None, ge=0)

    # Chain explorer client
    chain_request_timeout_seconds: float = Field(default=15.0, gt=0)
    chain_max_attempts: int = Field(default=3, ge=1, le=10)
    chain_backoff_base_seconds: float = Field(default=1.0, ge=0)
    chain_backoff_max_seconds: float = Field(default=30.0, ge=0)
    chain_backoff_jitter: float = Field(default=0.25, ge=0, le=1)
    chain_rate_limit_default_wait_seconds: float = Field(default=60.0, ge=0)
    chain_rate_limit_max_wait_seconds: float = Field(default=120.0, ge=0)

    # Mint trigger (downstream token issuance)
    mint_trigger_url: str | None = None
    mint_trigger_timeout_seconds: float = Field(default=30.0, gt=0)
    mint_max_attempts: int = Field(default=5, ge=1)
    mint_claim_stale_seconds: float = Field(default=600.0, gt=0)

    # Redis (for Dramatiq)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0

    # Application
    environment: str = "production"
    debug: bool = False
    log_level: str = "INFO"
    health_check_port: int = Field(
        default=8080, ge=1, le=65535, description="Health check HTTP server port"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("bitcoin_network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        """Validate Bitcoin network name."""
        network = v.strip().lower()
        if network not in CHAIN_API_URLS:
            raise ValueError(
                f"Invalid BITCOIN_NETWORK: {v}. Must be one of: "
                f"{', '.join(sorted(CHAIN_API_URLS))}"
            )
        return network

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL."""
        if not v.startswith(
            ("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")
        ):
            raise ValueError(
                "DATABASE_URL must start with postgresql://, "
                "postgresql+asyncpg:// or sqlite+aiosqlite://"
            )
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    @field_validator("chain_api_url")
    @classmethod
    def validate_chain_api_url(cls, v: str | None) -> str | None:
        """Strip trailing slash from explorer URL override."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("CHAIN_API_URL must be an http(s) URL")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_production(self) -> "Settings":
        """Validate production-specific requirements."""
        if self.environment == "production":
            if self.debug:
                raise ValueError(
                    "DEBUG must be False in production environment. "
                    "Set DEBUG=false in your .env file."
                )
            if len(self.bitcoin_address_seed) < 32:
                raise ValueError(
                    "BITCOIN_ADDRESS_SEED must be at least 32 characters in "
                    "production. Generate one with: openssl rand -hex 32"
                )
            if not self.mint_trigger_url:
                logger.warning(
                    "MINT_TRIGGER_URL is not set. Confirmed deposits will stay "
                    "in deposit_confirmed until a mint trigger is configured."
                )
        return self

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        """Backoff ceiling must not be below its base delay."""
        if self.chain_backoff_max_seconds < self.chain_backoff_base_seconds:
            raise ValueError(
                "CHAIN_BACKOFF_MAX_SECONDS must be >= CHAIN_BACKOFF_BASE_SECONDS"
            )
        return self

    @property
    def chain_api_base_url(self) -> str:
        """Explorer API base URL for the configured network."""
        return self.chain_api_url or CHAIN_API_URLS[self.bitcoin_network]

    @property
    def startup_delay_seconds(self) -> float:
        """Initial delay before the first monitoring tick."""
        if self.monitor_startup_delay_seconds is not None:
            return self.monitor_startup_delay_seconds
        if self.environment == "production":
            return MONITOR_STARTUP_DELAY_PRODUCTION
        return MONITOR_STARTUP_DELAY_DEFAULT


# Global settings instance
settings = Settings()
