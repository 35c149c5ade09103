from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "bounty-escrow"
    APP_ENV: str = "local"
    LOG_LEVEL: str = "INFO"
    # text | json
    LOG_FORMAT: str = "text"

    # In unit tests / CI we avoid long startup retries against external deps.
    ENSURE_EXTERNAL_DEPS_ON_STARTUP: bool = True

    ADMIN_TOKEN: str = "change-me-admin-token"
    AUTH_DISABLED: bool = False

    DATABASE_URL: str

    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # Money rules (minor currency units).
    PLATFORM_FEE_RATE: Decimal = Decimal("0.05")
    MIN_CHARGE_AMOUNT: int = 50

    # Outbox relay.
    OUTBOX_MAX_RETRIES: int = 3
    OUTBOX_BACKOFF_BASE_S: float = 1.0
    OUTBOX_POLL_INTERVAL_S: float = 2.0
    OUTBOX_BATCH_SIZE: int = 25
    OUTBOX_CLAIM_TIMEOUT_S: float = 300.0

    # Payment gateway: "fake" (in-memory, default) or "http".
    PAYMENT_GATEWAY: str = "fake"
    GATEWAY_API_BASE: str = "http://localhost:8089"
    GATEWAY_API_KEY: str | None = None
    GATEWAY_TIMEOUT_S: float = 30.0

    # Optional notification webhook (STUB logging by default)
    NOTIFY_WEBHOOK_URL: str | None = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
