"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration (credentials live in the account registry)
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    stripe_max_attempts: int = Field(default=3, description="Attempts for transient Stripe errors")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payment_broker.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Shopify Configuration
    shopify_shop_domain: str = Field(default="", description="Shop domain (shop.myshopify.com)")
    shopify_admin_token: str = Field(default="", description="Shopify Admin API access token")
    shopify_api_version: str = Field(default="2024-10", description="Shopify Admin API version")
    shopify_storefront_token: str = Field(
        default="", description="Storefront API token used to empty the buyer cart after an order"
    )

    # Application Configuration
    app_name: str = Field(default="payment-broker", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Account rotation
    rotation_window_seconds: int = Field(
        default=6 * 60 * 60, description="Duration of one rotation window (seconds)"
    )
    last_used_throttle_seconds: int = Field(
        default=60 * 60, description="Minimum interval between lastUsedAt audit writes (seconds)"
    )

    # Payment requests
    min_charge_cents: int = Field(default=50, description="Smallest chargeable amount in cents")
    default_currency: str = Field(default="EUR", description="Currency used when a cart has none")
    fallback_display_title: str = Field(
        default="Order", description="Display title used when an account has none configured"
    )

    # Webhook reconciliation
    order_event_types: str = Field(
        default="payment_intent.succeeded",
        description="Event types that trigger order creation (comma-separated)",
    )
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum accepted age of a webhook signature timestamp"
    )
    order_claim_lease_seconds: int = Field(
        default=120, description="How long an in-flight order creation holds its session claim"
    )
    order_mark_max_attempts: int = Field(
        default=5, description="Attempts to record a created order when the store is unavailable"
    )

    # Timeouts
    store_timeout_seconds: float = Field(default=5.0, description="Timeout for store operations")
    provider_timeout_seconds: float = Field(
        default=20.0, description="Timeout for payment provider calls"
    )
    order_timeout_seconds: float = Field(
        default=20.0, description="Timeout for order creation calls"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("rotation_window_seconds")
    @classmethod
    def validate_rotation_window(cls, v: int) -> int:
        """Rotation windows must be at least one second long."""
        if v <= 0:
            raise ValueError("rotation_window_seconds must be positive")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, v: str) -> str:
        """Normalize the default currency code."""
        if len(v) != 3:
            raise ValueError("default_currency must be a 3-letter code")
        return v.upper()

    @model_validator(mode="after")
    def validate_claim_lease(self) -> "Settings":
        """A claim must outlive the order call it guards."""
        if self.order_claim_lease_seconds <= self.order_timeout_seconds:
            raise ValueError(
                "order_claim_lease_seconds must be greater than order_timeout_seconds"
            )
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_order_event_types(self) -> frozenset[str]:
        """Parse order-affecting event types from comma-separated string."""
        return frozenset(
            event_type.strip()
            for event_type in self.order_event_types.split(",")
            if event_type.strip()
        )

    @property
    def uses_sqlite(self) -> bool:
        """Check if the configured database is SQLite (no pool sizing)."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
