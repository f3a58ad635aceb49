"""
Configuration management for the billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseSettings):
    """
    Stripe provider configuration.

    Security: secret key and webhook secret are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    secret_key: str = Field(default="", description="Stripe secret API key (sk_...)")
    webhook_secret: str = Field(default="", description="Webhook endpoint signing secret (whsec_...)")
    pro_price_id: str = Field(default="", description="Flat monthly price for the pro plan")
    pro_metered_price_id: str = Field(
        default="", description="Metered usage price attached to the pro plan"
    )
    api_version: str | None = Field(
        default=None, description="Pinned Stripe API version (None = account default)"
    )
    strict_webhook_verification: bool = Field(
        default=False,
        description="Reject webhooks when no signing secret is configured",
    )
    webhook_tolerance_seconds: int = Field(default=300, ge=1, le=3600)

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key_security(cls, v: str) -> str:
        """Publishable keys are a common paste mistake and must never be used server-side."""
        if v.startswith("pk_"):
            raise ValueError("STRIPE_SECRET_KEY must be a secret key (sk_...), not a publishable key")
        return v

    @property
    def is_configured(self) -> bool:
        """Check if Stripe API access is available."""
        return bool(self.secret_key)

    @property
    def has_plan_prices(self) -> bool:
        return bool(self.pro_price_id and self.pro_metered_price_id)


class BillingConfig(BaseSettings):
    """Billing engine behaviour and storage."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    subscription_guard_enabled: bool = Field(
        default=False,
        description="Require an active subscription for usage recording and summaries",
    )
    database_path: str = Field(default="./data/billing.db")
    usage_list_limit: int = Field(default=200, ge=1, le=1000)


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    reload: bool = Field(default=False)

    # Stripe webhook payloads are small; anything larger is rejected before parsing
    max_webhook_body_size: int = Field(
        default=1024 * 1024,  # 1MB
        ge=1024,
        description="Maximum webhook request body size in bytes",
    )


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(default="billing-engine", description="Service name for log aggregation")
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def webhook_verification_required(self) -> bool:
        """Unsigned webhooks are only tolerated outside production and strict mode."""
        return self.stripe.strict_webhook_verification or self.logging.environment == "production"

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.

        Missing billing configuration is never fatal: each operation that needs
        a value fails on its own when it is absent.
        """
        if not self.stripe.is_configured:
            logging.warning(
                "STRIPE_SECRET_KEY not configured - using in-memory billing provider"
            )

        if not self.stripe.has_plan_prices:
            logging.warning("Stripe pro price IDs not configured - checkout sessions will fail")

        if not self.stripe.webhook_secret:
            if self.webhook_verification_required:
                logging.warning(
                    "STRIPE_WEBHOOK_SECRET not configured - all webhooks will be rejected"
                )
            else:
                logging.warning(
                    "STRIPE_WEBHOOK_SECRET not configured - webhooks accepted WITHOUT verification"
                )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
