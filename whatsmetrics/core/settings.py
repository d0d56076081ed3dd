from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    WHATSMETRICS_ENV: str = "development"
    WHATSMETRICS_MODE: str = "api"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    API_CORS_ORIGINS: str = "*"
    SITE_URL: str = "https://leadflux.lovable.app"
    SUPABASE_URL: str
    SUPABASE_ANON_KEY: str
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    SUPABASE_ISSUER: str | None = None
    SUPABASE_JWKS_URL: str | None = None
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_API_VERSION: str | None = None
    STRIPE_WEBHOOK_ALLOW_UNSIGNED: bool | None = None
    WEBHOOK_RETRY_UNRESOLVED: bool = False
    NOTIFY_DELIVERY_MODE: str = "outbox"
    NOTIFY_TRANSPORT: str = "function"
    NOTIFY_FUNCTION_NAME: str = "send-subscription-email"
    NOTIFY_JOB_BATCH_LIMIT: int = 50
    NOTIFY_MAX_ATTEMPTS: int = 5
    WORKER_POLL_INTERVAL_SECONDS: int = 5
    EMAIL_FROM: str | None = None
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False

    @model_validator(mode="after")
    def apply_supabase_defaults(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.SUPABASE_ANON_KEY.strip():
            raise ValueError("SUPABASE_ANON_KEY must be configured")

        if not self.SUPABASE_ISSUER:
            self.SUPABASE_ISSUER = f"{self.SUPABASE_URL.rstrip('/')}/auth/v1"
        if not self.SUPABASE_JWKS_URL:
            self.SUPABASE_JWKS_URL = (
                f"{self.SUPABASE_ISSUER.rstrip('/')}/.well-known/jwks.json"
            )

        if self.NOTIFY_DELIVERY_MODE.strip().lower() not in {"outbox", "inline"}:
            raise ValueError("NOTIFY_DELIVERY_MODE must be 'outbox' or 'inline'")
        if self.NOTIFY_TRANSPORT.strip().lower() not in {"function", "smtp"}:
            raise ValueError("NOTIFY_TRANSPORT must be 'function' or 'smtp'")

        if self.is_production:
            if not (self.STRIPE_SECRET_KEY or "").strip():
                raise ValueError("STRIPE_SECRET_KEY must be configured in production")
            if not (self.STRIPE_WEBHOOK_SECRET or "").strip():
                raise ValueError("STRIPE_WEBHOOK_SECRET must be configured in production")
            if self.STRIPE_WEBHOOK_ALLOW_UNSIGNED:
                raise ValueError("STRIPE_WEBHOOK_ALLOW_UNSIGNED cannot be enabled in production")
            if self.notify_transport == "smtp" and not (self.EMAIL_FROM or "").strip():
                raise ValueError("EMAIL_FROM must be configured in production")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.API_CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.WHATSMETRICS_ENV.strip().lower() == "production"

    @property
    def allow_unsigned_webhooks(self) -> bool:
        if self.STRIPE_WEBHOOK_ALLOW_UNSIGNED is not None:
            return self.STRIPE_WEBHOOK_ALLOW_UNSIGNED
        return not self.is_production

    @property
    def notify_delivery_mode(self) -> str:
        return self.NOTIFY_DELIVERY_MODE.strip().lower()

    @property
    def notify_transport(self) -> str:
        return self.NOTIFY_TRANSPORT.strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()
