"""
Configuration management for the CutGlueBuild billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """SQLite storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    path: str = Field(default="./data/billing.db", description="Path to SQLite database file")
    busy_timeout_seconds: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="How long a write waits for the database lock before failing",
    )
    usage_retention_days: int = Field(
        default=400,
        ge=31,
        description="Usage counter rows older than this are eligible for purge",
    )
    usage_record_retention_days: int = Field(
        default=90,
        ge=1,
        description="Per-use audit rows older than this are eligible for purge",
    )


class StripeConfig(BaseSettings):
    """
    Stripe configuration.

    Price ids map subscription tiers to Stripe prices. Products and prices
    are provisioned out of band; only their ids live here.

    Security: API keys and webhook secrets are never logged.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Stripe secret key (sk_...)")
    webhook_secret: str = Field(default="", description="Webhook signing secret (whsec_...)")
    webhook_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum signature age accepted (replay protection)",
    )

    price_starter_monthly: str = Field(default="price_starter_monthly")
    price_starter_yearly: str = Field(default="price_starter_yearly")
    price_maker_monthly: str = Field(default="price_maker_monthly")
    price_maker_yearly: str = Field(default="price_maker_yearly")
    price_pro_monthly: str = Field(default="price_pro_monthly")
    price_pro_yearly: str = Field(default="price_pro_yearly")
    price_ai_usage_metered: str = Field(default="price_ai_usage_metered")

    trial_period_days: int = Field(default=14, ge=0, le=90)
    checkout_success_url: str = Field(
        default="http://localhost:4321/billing?checkout=success"
    )
    checkout_cancel_url: str = Field(default="http://localhost:4321/pricing")
    portal_return_url: str = Field(default="http://localhost:4321/billing")

    @field_validator("api_key", "webhook_secret")
    @classmethod
    def validate_secret_format(cls, v: str, info) -> str:
        """
        Reject obvious placeholders so a misconfigured deployment fails loudly.

        Never expose secrets in logs or errors.
        """
        if not v:
            return ""

        placeholder_patterns = ["your-key-here", "changeme", "example", "dummy"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(f"stripe {info.field_name} appears to be a placeholder - ignoring it")
            return ""

        return v

    @property
    def is_configured(self) -> bool:
        """Check if Stripe API calls are possible."""
        return bool(self.api_key)

    @property
    def price_map(self) -> dict[str, tuple[str, str]]:
        """Tier name -> (monthly price id, yearly price id)."""
        return {
            "starter": (self.price_starter_monthly, self.price_starter_yearly),
            "maker": (self.price_maker_monthly, self.price_maker_yearly),
            "pro": (self.price_pro_monthly, self.price_pro_yearly),
        }


class BillingConfig(BaseSettings):
    """Usage metering and webhook processing configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    timezone: str = Field(
        default="UTC",
        description="IANA timezone whose calendar days and months bound usage windows",
    )
    webhook_timeout_seconds: float = Field(
        default=8.0,
        ge=0.5,
        le=30.0,
        description="Webhook processing budget; Stripe waits roughly 10s before retrying",
    )
    upgrade_url: str = Field(default="/pricing", description="Shown with quota-exceeded errors")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown billing timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class EmailConfig(BaseSettings):
    """Transactional email (MailerSend) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mailersend_api_key: str = Field(default="", description="MailerSend API token")
    api_base_url: str = Field(default="https://api.mailersend.com/v1")
    from_address: str = Field(default="billing@cutgluebuild.com")
    from_name: str = Field(default="CutGlueBuild")
    timeout_seconds: float = Field(default=5.0, ge=0.5, le=30.0)
    max_attempts: int = Field(default=3, ge=1, le=5)

    @property
    def is_configured(self) -> bool:
        return bool(self.mailersend_api_key)


class GenerationConfig(BaseSettings):
    """AI generation collaborator endpoint."""

    model_config = SettingsConfigDict(
        env_prefix="GENERATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    endpoint_url: str = Field(
        default="http://localhost:8787/ai",
        description="Base URL of the AI worker; the feature name is appended",
    )
    api_token: str = Field(default="")
    timeout_seconds: float = Field(default=60.0, ge=1.0, le=180.0)


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    api_key: str | None = Field(
        default=None,
        description="Shared key the web application presents on server-to-server calls",
    )

    @field_validator("api_key")
    @classmethod
    def validate_api_key_security(cls, v: str | None) -> str | None:
        if not v:
            return None

        if len(v) < 32:
            logging.warning(
                "service api_key seems too short to be secure - use at least 32 characters"
            )

        return v


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_", extra="ignore")

    allowed_origins: str = Field(
        default="http://localhost:4321",
        description="Comma-separated list of allowed origins",
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,OPTIONS")
    allowed_headers: str = Field(
        default="Authorization,Content-Type,X-User-ID,X-Request-ID,X-Trace-ID",
        description="Comma-separated list of allowed request headers",
    )
    max_age: int = Field(default=600, ge=0)

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    @property
    def headers_list(self) -> list[str]:
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(default=False, description="Colorize console output")

    slow_request_warning_ms: float = Field(default=250.0, ge=0.0)
    slow_request_error_ms: float = Field(default=1000.0, ge=0.0)

    service_name: str = Field(default="cutglue-billing")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")

    @field_validator("slow_request_error_ms")
    @classmethod
    def validate_slow_thresholds(cls, v: float, info) -> float:
        """Ensure error threshold is greater than warning threshold."""
        warning = info.data.get("slow_request_warning_ms")
        if warning is not None and v <= warning:
            raise ValueError(
                f"slow_request_error_ms ({v}) must be > slow_request_warning_ms ({warning})"
            )
        return v


class Settings(BaseSettings):
    """Root configuration for the billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.webhook_secret:
            logging.warning(
                "Stripe webhook secret not configured - webhook deliveries will be rejected"
            )

        if not self.stripe.is_configured:
            logging.warning("Stripe API key not configured - checkout and portal are disabled")

        if not self.email.is_configured:
            logging.warning("MailerSend API key not configured - billing emails are only logged")

        if not self.service.api_key:
            logging.warning("SERVICE_API_KEY not configured - billing API calls will be rejected")

        if self.logging.environment == "production" and "*" in self.cors.origins_list:
            logging.warning("CORS allows all origins in production")


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
