"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Daraja (M-Pesa) Configuration
    daraja_consumer_key: str = Field(..., min_length=1, description="Daraja app consumer key")
    daraja_consumer_secret: str = Field(
        ..., min_length=1, description="Daraja app consumer secret"
    )
    daraja_shortcode: str = Field(
        ..., min_length=1, description="Business shortcode used to sign requests"
    )
    daraja_passkey: str = Field(..., min_length=1, description="Lipa Na M-Pesa Online passkey")
    daraja_callback_url: str = Field(
        ..., min_length=1, description="Public URL Safaricom posts results to"
    )
    daraja_till_no: Optional[str] = Field(
        default=None, description="Till number (Buy Goods); paybill is used when unset"
    )
    daraja_env: str = Field(default="sandbox", description="Daraja environment (sandbox/production)")
    daraja_callback_secret: Optional[str] = Field(
        default=None, description="Shared secret expected as ?secret= on callbacks"
    )

    # Shopify Configuration
    shopify_store_domain: str = Field(
        ..., min_length=1, description="Store domain (example.myshopify.com)"
    )
    shopify_client_id: Optional[str] = Field(default=None, description="Shopify app client ID")
    shopify_client_secret: Optional[str] = Field(
        default=None, description="Shopify app client secret"
    )
    shopify_access_token: Optional[str] = Field(
        default=None, description="Static Admin API access token (skips OAuth)"
    )
    shopify_api_version: str = Field(default="2024-10", description="Shopify Admin API version")

    # Application Configuration
    app_name: str = Field(default="mpesa-bridge", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=3000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)"
    )
    admin_api_key: Optional[str] = Field(
        default=None, description="API key for admin endpoints (disabled when unset)"
    )
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=30.0, description="Timeout for outbound calls")

    # Transaction retention
    transaction_retention_seconds: int = Field(
        default=600, description="Age after which transactions are evicted"
    )
    order_failed_retention_seconds: Optional[int] = Field(
        default=None,
        description="Longer retention for payment_received_order_failed transactions",
    )
    sweep_interval_seconds: int = Field(
        default=60, description="Interval of the background retention sweep (0 disables)"
    )

    # Validation
    strict_county_validation: bool = Field(
        default=False, description="Reject counties not in the Kenyan county list"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("daraja_env")
    @classmethod
    def validate_daraja_env(cls, v: str) -> str:
        """Validate Daraja environment flag."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("Invalid Daraja environment. Must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_shopify_credentials(self) -> "Settings":
        """Require either a static token or client credentials for Shopify."""
        if self.shopify_access_token:
            return self
        if not (self.shopify_client_id and self.shopify_client_secret):
            raise ValueError(
                "Shopify credentials missing. Set SHOPIFY_ACCESS_TOKEN or both "
                "SHOPIFY_CLIENT_ID and SHOPIFY_CLIENT_SECRET"
            )
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def daraja_base_url(self) -> str:
        if self.daraja_env == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
