"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


def _split_csv(value: str) -> list[str]:
    """Split a comma-separated setting, dropping blanks and duplicates."""
    items: list[str] = []
    for item in value.split(","):
        item = item.strip()
        if item and item not in items:
            items.append(item)
    return items


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Indicator Access API"
    api_version: str = "0.1.0"
    api_description: str = "Provisions TradingView indicator access from Stripe billing events"
    environment: str = "development"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)

    # Plan catalog - ordered Stripe price ids shown as plans
    PLAN_PRICE_IDS: str = ""
    plan_cache_ttl_seconds: float = 300.0
    default_access_months: int = 6

    # Front-end pages Stripe Checkout and the billing portal return to
    app_base_url: str = "http://localhost:3000"
    checkout_success_path: str = "/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_path: str = "/checkout"
    billing_portal_return_path: str = "/dashboard"

    # TradingView
    tradingview_base_url: str = "https://www.tradingview.com"
    tradingview_session_id: str = ""  # value of the `sessionid` cookie
    INDICATOR_IDS: str = ""  # Comma-separated pine ids, e.g. "PUB;abc,PUB;def"
    tradingview_timeout_seconds: float | None = None  # None = no timeout

    # Session refresh trigger (GitHub repository_dispatch)
    github_token: str = ""
    github_repo: str = ""  # format: "owner/repo"
    github_api_url: str = "https://api.github.com"

    # Operational notifications (Discord/Slack incoming webhook)
    notification_webhook_url: str = ""

    # Operator endpoints (bearer token)
    operator_secret: str = ""

    # User Authentication - Google ID tokens
    GOOGLE_CLIENT_ID: str = ""  # Google OAuth client ID (web client)
    GOOGLE_CLIENT_IDS: str = ""  # Comma-separated list of valid client IDs

    @property
    def valid_google_client_ids(self) -> list[str]:
        """Get list of valid Google client IDs for token validation."""
        ids = [self.GOOGLE_CLIENT_ID] if self.GOOGLE_CLIENT_ID else []
        for cid in _split_csv(self.GOOGLE_CLIENT_IDS):
            if cid not in ids:
                ids.append(cid)
        return ids

    @property
    def indicator_ids(self) -> list[str]:
        """Indicator (pine) ids granted to every subscriber."""
        return _split_csv(self.INDICATOR_IDS)

    @property
    def plan_price_ids(self) -> list[str]:
        """Stripe price ids that make up the plan catalog, in display order."""
        return _split_csv(self.PLAN_PRICE_IDS)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "indicator-access-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        Without Stripe credentials no event can be verified and no customer
        record can be read, so the app must not start.
        """
        errors: list[str] = []

        if not self.stripe_api_key:
            errors.append("STRIPE_API_KEY is required but empty or missing")
        elif not self.stripe_api_key.startswith(("sk_", "rk_")):
            errors.append(
                f"STRIPE_API_KEY must be a secret or restricted key, got: {self.stripe_api_key[:5]}..."
            )

        if not self.stripe_webhook_secret:
            errors.append("STRIPE_WEBHOOK_SECRET is required but empty or missing")

        if self.default_access_months < 1:
            errors.append("DEFAULT_ACCESS_MONTHS must be at least 1")

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
    def session_refresh_configured(self) -> bool:
        """Whether the GitHub dispatch trigger has credentials."""
        return bool(self.github_token and self.github_repo)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
