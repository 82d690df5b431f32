"""
config/settings.py
Settings of the booking ledger, read from the environment (and .env).
Lock timings, cache TTLs and shard capacity rules live here so the API
process and the Celery workers agree on them.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Branch Booking Ledger"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300              # 5 minutes
    AVAILABILITY_CACHE_TTL: int = 60        # shard snapshot freshness
    ADMISSION_LOCK_TTL: int = 30
    ADMISSION_LOCK_WAIT_SECONDS: float = 5.0
    RECONCILE_LOCK_TTL: int = 600

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CELERY_TIMEZONE: str = "Asia/Manila"
    RECONCILE_INTERVAL_SECONDS: int = 300

    # ── Ledger ───────────────────────────────────────────────
    LEDGER_TEMPLATE_SHARD: str = "Template"
    LEDGER_BUFFER_ROWS: int = 50
    LEDGER_INITIAL_ROWS: int = 100
    LEDGER_TRIM_CEILING: int = 1000         # never trim shards provisioned at/above this
    LEDGER_TRIM_EXCESS: int = 500           # only trim when this many rows are spare
    DEFAULT_BRANCH_CAPACITY: int = 4
    ARCHIVE_AFTER_DAYS: int = 7
    PHONE_COUNTRY_CODE: str = "63"          # stripped from international numbers
    PHONE_NATIONAL_DIGITS: int = 10

    # ── Admin / Alerts ───────────────────────────────────────
    ADMIN_API_KEY: str = ""
    ADMIN_EMAIL: str = ""
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@bookingledger.local"

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
