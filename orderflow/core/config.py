"""
Order Pipeline — Configuration
All settings are read from environment variables (or .env file).
"""
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Service ──────────────────────────────────────────────
    SERVICE_NAME: str = "order-pipeline"
    SERVICE_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8006
    LOG_LEVEL: str = "INFO"
    PUBLIC_BASE_URL: str = "http://localhost:8006"

    # ── PostgreSQL (Order DB) ─────────────────────────────────
    POSTGRES_HOST: str = "orders-db"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "orders_db"
    POSTGRES_USER: str = "orders_user"
    POSTGRES_PASSWORD: str = "orders_pass"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # ── Redis / Celery Broker ──────────────────────────────────
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def celery_broker_url(self) -> str:
        return self.redis_url

    # ── Retrying transport (outbound HTTP) ─────────────────────
    RETRY_MAX_ATTEMPTS: int = 4           # 1 initial call + 3 retries
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_MAX_DELAY_MS: int = 10000

    # ── Store retry (DB connectivity blips) ────────────────────
    STORE_RETRY_MAX_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY_MS: int = 50
    STORE_RETRY_MAX_DELAY_MS: int = 1000
    STORE_RETRY_JITTER_MS: int = 50

    # ── Payment gateway ────────────────────────────────────────
    MERCADOPAGO_API_URL: str = "https://api.mercadopago.com"
    MERCADOPAGO_ACCESS_TOKEN: str = ""
    PIX_EXPIRATION_MINUTES: int = 15
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # ── Messaging channel ──────────────────────────────────────
    MESSAGING_API_URL: str = "http://evolution-api:8080"
    MESSAGING_API_KEY: str = ""
    MESSAGING_INSTANCE: str = "counter"
    DEFAULT_COUNTRY_CODE: str = "55"

    # ── Business rules ─────────────────────────────────────────
    COMMISSION_RATE: Decimal = Decimal("0.10")
    CONFIRMATION_DEDUP_WINDOW_SECONDS: int = 300

    # ── Payment status poller ──────────────────────────────────
    POLL_FAST_INTERVAL_SECONDS: float = 5.0
    POLL_MEDIUM_INTERVAL_SECONDS: float = 10.0
    POLL_SLOW_INTERVAL_SECONDS: float = 15.0
    POLL_ERROR_INTERVAL_SECONDS: float = 20.0
    POLL_MAX_CONSECUTIVE_ERRORS: int = 5

    # ── SSE ───────────────────────────────────────────────────
    SSE_KEEPALIVE_INTERVAL_SECONDS: int = 15
    SSE_RETRY_MILLISECONDS: int = 3000

    # ── Idempotency ───────────────────────────────────────────
    IDEMPOTENCY_KEY_TTL_SECONDS: int = 86400

    # ── Observability ─────────────────────────────────────────
    METRICS_ENABLED: bool = True
    HEALTH_CHECK_TIMEOUT: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
