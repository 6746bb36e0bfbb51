from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    # App
    app_name: str = "Calorie Tracker Billing"
    base_url: str = "http://localhost:8000"
    secret_key: str = "CHANGE_ME"
    environment: str = "dev"  # dev|prod
    allowed_hosts: str = "*"
    log_level: str = "INFO"
    session_max_age_seconds: int = 60 * 60 * 24 * 30

    # Database
    database_url: str = "postgresql+asyncpg://caltrack:caltrack@db:5432/caltrack"

    # Payments (Stripe)
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_version: str = "2023-10-16"
    stripe_webhook_tolerance_seconds: int = 300
    stripe_price_id_steady: str | None = None
    stripe_price_id_intensive: str | None = None
    stripe_price_id_accelerated: str | None = None
    billing_currency: str = "usd"
    portal_return_path: str = "/app/profile"


settings = Settings()
