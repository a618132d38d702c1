from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Storefront Orders Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Orders
    DEFAULT_CURRENCY: str = "ILS"
    DEFAULT_TAX_RATE: Decimal = Decimal("0")  # Percent applied to (subtotal - discount)

    # Payment Gateway
    PAYMENT_GATEWAY: str = "lahza"  # "lahza" or "fake"
    LAHZA_API_URL: str = "https://api.lahza.io/transaction"
    LAHZA_SECRET_KEY: str = ""  # Fallback when a store has no key of its own
    LAHZA_TIMEOUT_SECONDS: float = 30.0
    PAYMENT_CALLBACK_URL: str = "http://localhost:5173/"
    PAYMENT_WEBHOOK_SECRET: Optional[str] = None  # HMAC-SHA256 key for webhook signatures

    # Payment Polling (per reference, exponential backoff)
    PAYMENT_POLLING_ENABLED: bool = True
    PAYMENT_POLL_INITIAL_INTERVAL: float = 5.0  # Seconds before the first check
    PAYMENT_POLL_MAX_INTERVAL: float = 60.0  # Backoff ceiling in seconds
    PAYMENT_POLL_BACKOFF_FACTOR: float = 2.0
    PAYMENT_POLL_MAX_ATTEMPTS: int = 60

    # Pending payment sweeper (re-arms polls after a restart)
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    PAYMENT_SWEEP_INTERVAL_MINUTES: int = 10
    PAYMENT_SWEEP_WINDOW_HOURS: int = 24

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('PAYMENT_GATEWAY', mode='before')
    @classmethod
    def normalize_gateway_name(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
