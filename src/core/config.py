"""Application configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Checkout engine settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="course-checkout", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # Pricing
    currency: str = Field(default="gbp", description="ISO currency code sent to the payment gateway")
    tax_rate_basis_points: int = Field(
        default=0,
        ge=0,
        le=10000,
        description="Tax rate applied to the taxable amount, in basis points (2000 = 20%)",
    )

    # Checkout flow
    checkout_max_step: int = Field(default=3, ge=1, description="Last step of the checkout flow")
    order_history_page_size: int = Field(default=20, ge=1, description="Default page size for order history")

    # Supabase (order storage)
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    orders_table: str = Field(default="orders", description="Table holding placed orders")
    order_service_timeout_seconds: int = Field(default=30, ge=1, description="Order storage request timeout")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (for the client SDK)")
    stripe_max_network_retries: int = Field(
        default=2,
        ge=0,
        description="Retries the Stripe SDK performs on network failures (idempotent requests only)",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
