"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # Application
    APP_ENV: str = "development"
    API_V1_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"

    # Xero Integration
    XERO_CLIENT_ID: str = ""
    XERO_CLIENT_SECRET: str = ""
    XERO_REDIRECT_URI: str = "http://localhost:8000/api/v1/xero/auth/callback"
    XERO_SCOPES: str = "offline_access openid profile email accounting.transactions accounting.contacts accounting.settings accounting.reports.read"
    XERO_WEBHOOK_KEY: str = ""

    # Xero API limits (per tenant)
    XERO_REQUESTS_PER_MINUTE: int = 60
    XERO_DAILY_LIMIT: int = 5000
    XERO_MAX_CONCURRENT: int = 5
    XERO_MIN_TIME_MS: int = 100
    XERO_MAX_RETRIES: int = 3
    XERO_MAX_BACKOFF_SECONDS: float = 60.0

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "bookkeeping:"

    # Sync coordination
    SYNC_LOCK_TIMEOUT_SECONDS: int = 300
    TOKEN_REFRESH_TIMEOUT_SECONDS: int = 30
    IDEMPOTENCY_TTL_SECONDS: int = 86400
    IDEMPOTENCY_MAX_KEYS: int = 10000
    CHECKPOINT_TTL_HOURS: int = 24
    PROGRESS_TTL_SECONDS: int = 3600

    # Background jobs
    SCHEDULER_ENABLED: bool = False
    RECONCILIATION_LOOKBACK_DAYS: int = 30

    # Inbound rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

    # CORS
    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        if self.is_development:
            return ["*"]
        return [self.FRONTEND_URL]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )


settings = Settings()
