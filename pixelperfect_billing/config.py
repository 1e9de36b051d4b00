"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Signing secret shipped with local fixtures; must never verify production traffic
KNOWN_TEST_WEBHOOK_SECRET = "whsec_test_secret"


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Runtime environment: "production", "staging", "development" or "test"
    environment: str = "production"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "PixelPerfect Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and subscription reconciliation for PixelPerfect"

    # User authentication - JWTs issued by the auth provider
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"

    # Admin authentication
    ADMIN_JWT_SECRET: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "pixelperfect-billing-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)

    # Stripe price ids (override the catalog defaults per deployment)
    stripe_price_starter: str = "price_starter_monthly"
    stripe_price_hobby: str = "price_hobby_monthly"
    stripe_price_pro: str = "price_pro_monthly"
    stripe_price_business: str = "price_business_monthly"
    stripe_price_pack_small: str = "price_credits_small"
    stripe_price_pack_medium: str = "price_credits_medium"
    stripe_price_pack_large: str = "price_credits_large"

    # Store retry contract for webhook status transitions
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.2

    # Events left in "processing" longer than this are swept to "failed"
    webhook_processing_timeout_seconds: int = 900

    # Failed-event recovery: re-fetch from Stripe and re-run the handler
    webhook_recovery_max_retries: int = 3
    webhook_recovery_batch_size: int = 50

    # Active subscriptions whose period ended are re-checked against Stripe
    expiration_check_batch_size: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.is_test_environment:
            if not self.stripe_api_key:
                errors.append("STRIPE_API_KEY is required outside the test environment")
            if not self.stripe_webhook_secret:
                errors.append("STRIPE_WEBHOOK_SECRET is required outside the test environment")

        if self.store_retry_attempts < 1:
            errors.append("STORE_RETRY_ATTEMPTS must be at least 1")

        if self.webhook_recovery_max_retries < 1:
            errors.append("WEBHOOK_RECOVERY_MAX_RETRIES must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_test_environment(self) -> bool:
        return self.environment.lower() == "test"

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
