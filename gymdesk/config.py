"""Desk configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_BASE_URL: str = "http://api:8000"
    API_TOKEN: str = ""
    API_TIMEOUT_SEC: float = 10.0

    # Cached views older than this are refetched before use
    CACHE_STALE_SEC: int = 300
    # Untouched cache entries are dropped after this
    CACHE_GC_SEC: int = 900

    RENEWAL_WINDOW_DAYS: int = 3
    PAYMENT_GRACE_DAYS: int = 7
    CURRENCY_CODE: str = "COP"

    TELEGRAM_BOT_TOKEN: str = ""
    ADMIN_TELEGRAM_ID: str = ""

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
