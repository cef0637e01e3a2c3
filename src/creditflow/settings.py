"""Application settings and configuration."""

import sys

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_JWT_DEFAULTS = {"change-me-in-production", "secret", "your_jwt_secret_key_here_at_least_32_characters"}


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "creditflow"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # json | console
    allowed_origins: str = "http://localhost:3000"
    frontend_url: str | None = None

    # JWT
    jwt_secret_key: str = "change-me-in-production"

    # Database
    database_url: str = "sqlite:///./creditflow.db"

    # Ephemeral key/value store for session snapshots (memory:// or redis://...)
    kv_url: str = "memory://"

    # Sessions
    session_ttl_days: int = 30
    max_sessions_per_user: int = 5

    # Credits
    free_monthly_credits: int = 50  # Used when no admin setting overrides it
    credits_expiration_years: int = 2  # Purchased packages
    referral_invitation_ttl_days: int | None = None  # None = invitations never expire

    # SendGrid
    sendgrid_api_key: str | None = None
    sendgrid_from_email: str = "noreply@example.com"
    sendgrid_from_name: str = "Creditflow"

    # Stripe
    stripe_secret_key: str | None = None
    stripe_currency: str = "eur"


# Global settings instance
settings = Settings()

# ── Security validation ──────────────────────────────────────────────
if settings.env == "production":
    if settings.jwt_secret_key in _INSECURE_JWT_DEFAULTS or len(settings.jwt_secret_key) < 32:
        print(
            "\nFATAL: JWT_SECRET_KEY is insecure or too short (min 32 chars).\n"
            "   Set a strong random value:  openssl rand -hex 32\n",
            file=sys.stderr,
        )
        sys.exit(1)
