"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SECRET_LENGTH = 32
MIN_REFRESH_RETENTION_DAYS = 7


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

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
    api_title: str = "BillForge API"
    api_version: str = "0.1.0"
    api_description: str = "Subscription billing backend"
    environment: Literal["development", "test", "production"] = "development"
    cors_origins: str = ""  # Comma-separated explicit origins; empty allows none

    # Session credentials (generate secrets with: openssl rand -hex 32)
    jwt_secret: str = ""
    refresh_token_secret: str = ""
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 7
    refresh_token_retention_days: int = MIN_REFRESH_RETENTION_DAYS
    refresh_cookie_name: str = "billforge_refresh_token"
    refresh_reuse_revokes_sessions: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "billforge-api"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_publishable_key: str = ""  # Stripe publishable key (pk_test_... or pk_live_...)
    stripe_price_id_pro: str = ""
    stripe_price_id_premium: str = ""
    stripe_price_plan_map: str = ""  # Extra "price_id:plan_code" pairs, comma-separated

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        # Token secrets sign every session - weak or shared secrets are refused
        if len(self.jwt_secret) < MIN_SECRET_LENGTH:
            errors.append(f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters")
        if len(self.refresh_token_secret) < MIN_SECRET_LENGTH:
            errors.append(f"REFRESH_TOKEN_SECRET must be at least {MIN_SECRET_LENGTH} characters")
        if self.jwt_secret and self.jwt_secret == self.refresh_token_secret:
            errors.append("JWT_SECRET and REFRESH_TOKEN_SECRET must differ")

        if self.access_token_ttl_minutes <= 0:
            errors.append("ACCESS_TOKEN_TTL_MINUTES must be positive")
        if self.refresh_token_ttl_days <= 0:
            errors.append("REFRESH_TOKEN_TTL_DAYS must be positive")
        if self.refresh_token_retention_days < MIN_REFRESH_RETENTION_DAYS:
            errors.append(
                f"REFRESH_TOKEN_RETENTION_DAYS must be at least {MIN_REFRESH_RETENTION_DAYS}"
            )

        # Credentialed CORS (refresh cookie) needs explicit origins
        if "*" in self._split_csv(self.cors_origins):
            errors.append("CORS_ORIGINS must list explicit origins, not '*'")

        for pair in self._split_csv(self.stripe_price_plan_map):
            if ":" not in pair:
                errors.append(f"STRIPE_PRICE_PLAN_MAP entry must be price_id:plan_code, got: {pair}")

        # If we have errors, fail immediately with clear messaging
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

    @staticmethod
    def _split_csv(value: str) -> list[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def is_production(self) -> bool:
        """Production enables the Secure flag on session cookies."""
        return self.environment == "production"

    @property
    def allowed_cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        return self._split_csv(self.cors_origins)

    @property
    def stripe_configured(self) -> bool:
        """Whether outbound Stripe API calls are possible."""
        return bool(self.stripe_api_key)

    @property
    def stripe_webhook_configured(self) -> bool:
        """Whether inbound Stripe webhooks can be verified."""
        return bool(self.stripe_api_key and self.stripe_webhook_secret)

    @property
    def price_plan_map(self) -> dict[str, str]:
        """
        Get the Stripe price ID -> local plan code mapping.

        Built from STRIPE_PRICE_ID_PRO / STRIPE_PRICE_ID_PREMIUM plus any
        extra pairs listed in STRIPE_PRICE_PLAN_MAP.
        """
        mapping: dict[str, str] = {}
        if self.stripe_price_id_pro:
            mapping[self.stripe_price_id_pro] = "pro"
        if self.stripe_price_id_premium:
            mapping[self.stripe_price_id_premium] = "premium"
        for pair in self._split_csv(self.stripe_price_plan_map):
            price_id, _, plan_code = pair.partition(":")
            if price_id.strip() and plan_code.strip():
                mapping[price_id.strip()] = plan_code.strip()
        return mapping


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
