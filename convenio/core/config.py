"""Application configuration with environment variables."""

from datetime import time

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str
    AUTO_CREATE_TABLES: bool = False

    # Access token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    ACCESS_TOKEN_EXPIRES_MINUTES: int = 15
    SELECTION_TOKEN_EXPIRES_MINUTES: int = 5
    REFRESH_TOKEN_EXPIRES_DAYS: int = 7
    BCRYPT_ROUNDS: int = 12

    # CORS
    CORS_ORIGINS: str = "http://localhost:5173"

    # Frontend (checkout back_urls) and public API base (webhook notification_url)
    FRONTEND_URL: str = "http://localhost:5173"
    API_URL: str = "http://localhost:8000"

    # Mercado Pago
    MERCADOPAGO_ACCESS_TOKEN: str = ""
    MERCADOPAGO_SANDBOX: bool = True
    MERCADOPAGO_API_BASE: str = "https://api.mercadopago.com"
    MERCADOPAGO_TIMEOUT_SECONDS: float = 10.0
    MERCADOPAGO_WEBHOOK_SECRET: str = ""  # Enables x-signature validation when set
    MERCADOPAGO_WEBHOOK_MAX_PAYLOAD_BYTES: int = 100000
    STATEMENT_DESCRIPTOR: str = "CONVENIO"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_AUTH: int = 10
    RATE_LIMIT_TRACKING: int = 30
    RATE_LIMIT_WEBHOOK: int = 100
    RATE_LIMIT_API: int = 120

    # SystemSetting read cache
    SETTINGS_CACHE_TTL_SECONDS: int = 30

    # Expiry sweep (local wall-clock time)
    EXPIRY_SWEEP_TIME: str = "00:05"
    EXPIRY_SWEEP_TIMEZONE: str = "America/Sao_Paulo"

    # Worker
    WORKER_POLL_INTERVAL_SECONDS: int = 10
    WORKER_BATCH_SIZE: int = 10
    JOB_RETRY_BASE_SECONDS: int = 30

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def sweep_time(self) -> time:
        """Parse EXPIRY_SWEEP_TIME (HH:MM) into a time."""
        hour, _, minute = self.EXPIRY_SWEEP_TIME.partition(":")
        return time(int(hour), int(minute or 0))


settings = Settings()
