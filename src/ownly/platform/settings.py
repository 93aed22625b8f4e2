"""Service settings loaded with pydantic-settings.

Values come from the process environment and an optional ``.env`` file.
Nested groups use a double underscore, e.g. ``BILLING__INVOICE_DUE_DAYS=14``
or ``DATABASE__URL=postgresql+asyncpg://...``.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Where the billing service is deployed."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Top-level settings for the billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("ownly-billing", description="Service name reported in logs")
    app_version: str = Field("1.0.0", description="Version reported by /health")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment stage")

    class DatabaseSettings(BaseModel):
        """Billing store connection."""

        url: str | None = Field(None, description="Async SQLAlchemy URL; SQLite when unset")
        echo: bool = Field(False, description="Log emitted SQL")
        pool_pre_ping: bool = Field(True, description="Test pooled connections before reuse")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    class ObservabilitySettings(BaseModel):
        """structlog output."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Minimum level emitted")
        log_format: str = Field("json", description="json for production, anything else for console")
        enable_correlation_ids: bool = Field(
            True, description="Merge request-scoped contextvars into every event"
        )

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    class BillingSettings(BaseModel):
        """Processor credentials and billing defaults."""

        stripe_api_key: str = Field("", description="Stripe secret API key")
        stripe_webhook_secret: str = Field("", description="Stripe webhook signing secret")
        stripe_publishable_key: str = Field("", description="Stripe publishable key")

        default_currency: str = Field("USD", description="ISO 4217 code used for all amounts")

        default_trial_days: int = Field(0, description="Trial days for new subscriptions")
        proration_enabled: bool = Field(True, description="Prorate mid-cycle feature changes")

        invoice_due_days: int = Field(30, description="Days until a sent invoice is due")
        invoice_number_format: str = Field(
            "INV-{year}-{sequence:06d}", description="Local invoice number template"
        )
        public_site_url: str = Field(
            "http://localhost:3000", description="Origin of the public invoice payment pages"
        )

        # Optimistic locking
        update_retry_attempts: int = Field(
            3, description="Attempts for versioned record updates before giving up"
        )

        @field_validator("default_currency")
        @classmethod
        def normalize_currency(cls, value: str) -> str:
            return value.upper()

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings


settings = get_settings()
