from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    # App
    app_name: str = "Subscription Ledger"
    base_url: str = "http://localhost:8000"
    secret_key: str = "CHANGE_ME"
    environment: str = "dev"  # dev|prod
    log_level: str = "INFO"
    session_max_age_seconds: int = 60 * 60 * 24 * 30
    session_cookie_name: str = "session_token"

    # Database
    database_url: str = "postgresql+asyncpg://billing:billing@db:5432/billing"

    # Payments (Stripe)
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_price_id_basic: str | None = None
    stripe_price_id_pro: str | None = None
    stripe_price_id_enterprise: str | None = None
    payments_mode: str = "mock"  # mock|stripe
    provider_timeout_seconds: float = 10.0
    webhook_deadline_seconds: float = 10.0

    # Usage limits per plan (-1 = unlimited)
    free_usage_limit: int = 100
    basic_usage_limit: int = 500
    pro_usage_limit: int = 2000
    enterprise_usage_limit: int = -1

    # RQ/Redis
    redis_url: str = "redis://redis:6379/0"

    # Optional: bootstrap admins by email (comma-separated)
    admin_emails: str | None = None


settings = Settings()
