"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payments.db",
        description="Async SQLAlchemy connection URL for the transaction ledger",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (webhook de-duplication)",
    )
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )

    # Application Configuration
    app_name: str = Field(default="payment-orchestration", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Provider calls
    provider_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for payment calls to a provider (seconds)"
    )
    incidental_timeout_seconds: float = Field(
        default=8.0, gt=0, description="Timeout for incidental calls such as token fetches"
    )

    # Payment defaults
    default_commission_rate: Decimal = Field(
        default=Decimal("0.025"),
        ge=0,
        le=1,
        description="Platform commission when a tenant has none",
    )
    default_currency: str = Field(default="EUR", min_length=3, max_length=3)

    # Reconciliation
    reconciliation_interval_seconds: int = Field(
        default=300, description="Pause between reconciliation sweeps (seconds)"
    )
    reconciliation_stale_after_seconds: int = Field(
        default=900, description="Processing transactions idle longer than this are polled"
    )
    reconciliation_batch_size: int = Field(default=100, description="Transactions per sweep")
    reconciliation_max_attempts: int = Field(
        default=3, description="Status poll attempts per transaction per sweep"
    )

    # Stripe (platform account, Connect)
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")

    # PayPal (platform credentials)
    paypal_client_id: Optional[str] = Field(default=None)
    paypal_client_secret: Optional[str] = Field(default=None)
    paypal_environment: str = Field(default="sandbox")

    # Axerve (environment of the shop that receives server-to-server callbacks)
    axerve_environment: str = Field(default="sandbox")

    # Mangopay (platform credentials)
    mangopay_client_id: Optional[str] = Field(default=None)
    mangopay_api_key: Optional[str] = Field(default=None)
    mangopay_environment: str = Field(default="sandbox")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the Stripe secret key is a test or live secret key."""
        if v is None:
            return v
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("paypal_environment", "axerve_environment", "mangopay_environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Provider environments are either sandbox or production."""
        if v not in ("sandbox", "production"):
            raise ValueError("Provider environment must be 'sandbox' or 'production'")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
