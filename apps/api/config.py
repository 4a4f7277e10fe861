"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./creator_credits.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Billing
    BILLING_ENABLED: bool = False
    PAYMENT_WEBHOOK_SECRET: str = ""
    RECENT_TRANSACTIONS_LIMIT: int = 10
    CREDIT_HISTORY_MAX_LIMIT: int = 200

    # Admin
    ADMIN_API_KEY: str = ""

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    AUTO_CREATE_DB_SCHEMA: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


INSECURE_SECRET_VALUES = {
    "",
    "change_me_in_production",
    "your_jwt_secret_change_in_production",
    "your_admin_api_key_here",
    "your_webhook_secret_here",
}


def require_payment_webhook_secret() -> str:
    """Return configured payment webhook secret or raise a configuration error."""
    secret = (settings.PAYMENT_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise ValueError("PAYMENT_WEBHOOK_SECRET is not configured")
    return secret


def require_admin_api_key() -> str:
    """Return configured admin API key or raise a configuration error."""
    api_key = (settings.ADMIN_API_KEY or "").strip()
    if not api_key:
        raise ValueError("ADMIN_API_KEY is not configured")
    return api_key


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    jwt_secret = (settings.JWT_SECRET or "").strip()
    if jwt_secret in INSECURE_SECRET_VALUES or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")

    admin_key = (settings.ADMIN_API_KEY or "").strip()
    if admin_key and (admin_key in INSECURE_SECRET_VALUES or len(admin_key) < 24):
        raise ValueError("ADMIN_API_KEY is insecure. Configure a strong key (>=24 chars) or leave it unset.")

    webhook_secret = (settings.PAYMENT_WEBHOOK_SECRET or "").strip()
    if webhook_secret and (webhook_secret in INSECURE_SECRET_VALUES or len(webhook_secret) < 16):
        raise ValueError("PAYMENT_WEBHOOK_SECRET is insecure. Configure a strong secret (>=16 chars).")
