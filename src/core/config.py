"""Application configuration management using Pydantic Settings."""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

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
    app_name: str = Field(default="marketplace-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Frontend, used for default checkout redirect URLs
    app_url: str = Field(default="http://localhost:3000", description="Public storefront URL")

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (for frontend)")

    # Checkout
    platform_fee_percentage: Decimal = Field(
        default=Decimal("10"),
        ge=0,
        le=100,
        description="Platform fee taken from seller proceeds, in percent of the items subtotal",
    )
    default_currency: str = Field(default="usd", description="ISO currency code for all amounts")
    max_quantity_per_product: int = Field(default=100, ge=1, description="Per-product quantity cap per checkout")
    checkout_allowed_countries: str = Field(
        default="US",
        description="Comma-separated list of shipping countries offered at checkout",
    )

    # Refunds
    reserve_refund_balance: bool = Field(
        default=True,
        description="Reserve the refund amount on the order before calling Stripe",
    )

    @field_validator("default_currency")
    @classmethod
    def lowercase_currency(cls, value: str) -> str:
        """Stripe expects lowercase ISO currency codes."""
        return value.strip().lower()

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def allowed_countries_list(self) -> list[str]:
        """Parse allowed shipping countries into a list."""
        return [c.strip().upper() for c in self.checkout_allowed_countries.split(",") if c.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")


@dataclass(frozen=True)
class SettlementConfig:
    """Money-core configuration injected into checkout and refund services.

    Kept separate from ``Settings`` so tests can vary the fee rate or caps
    per case without touching the environment.
    """

    platform_fee_percentage: Decimal = Decimal("10")
    currency: str = "usd"
    max_quantity_per_product: int = 100
    reserve_refund_balance: bool = True
    allowed_countries: tuple[str, ...] = ("US",)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SettlementConfig":
        """Build the money-core config from application settings."""
        return cls(
            platform_fee_percentage=settings.platform_fee_percentage,
            currency=settings.default_currency,
            max_quantity_per_product=settings.max_quantity_per_product,
            reserve_refund_balance=settings.reserve_refund_balance,
            allowed_countries=tuple(settings.allowed_countries_list),
        )


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


def get_settlement_config() -> SettlementConfig:
    """Get the money-core config derived from the cached settings."""
    return SettlementConfig.from_settings(get_settings())
