"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:3000"
    app_secret_key: str
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (click rate limiting)
    redis_url: str = "redis://localhost:6379/0"

    # Identity provider (Supabase) - JWT verification and user lookups
    auth_jwt_secret: str = ""
    auth_jwt_audience: str = "authenticated"
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    identity_timeout_seconds: int = 5

    # Stripe - read-only price lookups for commission math
    stripe_secret_key: str = ""
    stripe_price_premium: str = ""
    stripe_price_enterprise: str = ""
    tier_price_premium_cents: int = 2900
    tier_price_enterprise_cents: int = 9900

    # Referral program
    referral_cookie_name: str = "ref_tracking"
    attribution_window_days: int = 30
    default_commission_rate: int = 200  # cents per attributed signup
    recurring_commission_days: int = 30
    auto_approve_after_days: int = 7
    code_generation_attempts: int = 5
    track_rate_limit_per_minute: int = 30

    # Sentry
    sentry_dsn: str = ""

    # CORS
    allowed_origins: str = ""  # Comma-separated

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
