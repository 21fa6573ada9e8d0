"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Farmbook API"
    api_version: str = "0.1.0"
    api_description: str = "Subscription, usage metering and AI features for Farmbook"
    cors_allow_origins: str = "*"  # Comma-separated

    # Session tokens issued by the auth provider (HS256 shared secret)
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"
    auth_jwt_algorithm: str = "HS256"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_price_standard_monthly: str = "price_standard_monthly"
    stripe_price_premium_monthly: str = "price_premium_monthly"
    stripe_price_pro_yearly: str = "price_pro_yearly"
    checkout_locale: str = "ja"
    app_base_url: str = "http://localhost:3000"

    # Free tier quotas (per calendar month)
    free_receipt_scan_limit: int = 50
    free_export_limit: int = 3
    free_assistant_limit: int = 10

    # Calendar month boundaries are computed in this zone
    usage_timezone: str = "Asia/Tokyo"

    # LLM - OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 30.0

    # Input bounds for metered features
    receipt_image_max_bytes: int = 5 * 1024 * 1024
    assistant_message_max_chars: int = 1000
    assistant_history_max_turns: int = 10
    export_max_range_days: int = 366

    # Retries for transient database failures
    persistence_retry_attempts: int = 3
    persistence_retry_base_delay: float = 0.1
    persistence_retry_max_delay: float = 2.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "farmbook-api"
    deployment_environment: str = "production"

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

        if not self.auth_jwt_secret:
            errors.append("AUTH_JWT_SECRET is required to verify session tokens")

        if self.stripe_api_key and not self.stripe_webhook_secret:
            errors.append("STRIPE_WEBHOOK_SECRET is required when STRIPE_API_KEY is set")

        try:
            ZoneInfo(self.usage_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"USAGE_TIMEZONE is not a known time zone: {self.usage_timezone}")

        for name in ("free_receipt_scan_limit", "free_export_limit", "free_assistant_limit"):
            if getattr(self, name) < 0:
                errors.append(f"{name.upper()} must be >= 0")

        if self.persistence_retry_attempts < 1:
            errors.append("PERSISTENCE_RETRY_ATTEMPTS must be >= 1")

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
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def usage_zone(self) -> ZoneInfo:
        """Time zone used to bucket usage into calendar months."""
        return ZoneInfo(self.usage_timezone)

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins as a list."""
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


# Global settings instance - validates at import time
settings = Settings()