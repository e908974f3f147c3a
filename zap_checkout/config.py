"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="zap-checkout", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Nostr Configuration
    relay_urls: str = Field(
        default="wss://relay.damus.io,wss://nos.lol",
        description="Relays the orders are published to (comma-separated)",
    )
    private_key: Optional[str] = Field(
        default=None,
        description="Hex secp256k1 key used to sign orders (ephemeral if unset)",
    )
    relay_timeout_seconds: float = Field(
        default=10.0, description="Timeout for relay publish/fetch round trips"
    )

    # Lightning Configuration
    lightning_address: str = Field(
        default="",
        description="Lightning address (user@domain) that issues zap invoices",
    )
    http_timeout_seconds: float = Field(
        default=10.0, description="Timeout for LNURL HTTP calls"
    )

    # Pricing
    default_fiat_currency: str = Field(default="ARS", description="Fiat currency code")
    fiat_per_sat_rate: Decimal = Field(
        default=Decimal("0.18"),
        description="Fixed fiat units per satoshi used to price orders",
    )

    # Reconciliation
    auto_request_invoices: bool = Field(
        default=True,
        description="Request a fresh invoice whenever the pending amount changes",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ZAP_CHECKOUT_",
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

    @field_validator("default_fiat_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency codes are non-empty and upper case."""
        if not v.strip():
            raise ValueError("Fiat currency code cannot be empty")
        return v.strip().upper()

    @field_validator("fiat_per_sat_rate")
    @classmethod
    def validate_rate(cls, v: Decimal) -> Decimal:
        """The conversion rate divides fiat amounts, so it must be positive."""
        if v <= 0:
            raise ValueError("fiat_per_sat_rate must be positive")
        return v

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: Optional[str]) -> Optional[str]:
        """Private keys are 32-byte hex strings."""
        if v is None or v == "":
            return None
        try:
            raw = bytes.fromhex(v)
        except ValueError as e:
            raise ValueError("private_key must be hex encoded") from e
        if len(raw) != 32:
            raise ValueError("private_key must be 32 bytes")
        return v.lower()

    def get_relay_urls(self) -> List[str]:
        """Parse relay URLs from comma-separated string."""
        return [url.strip() for url in self.relay_urls.split(",") if url.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
