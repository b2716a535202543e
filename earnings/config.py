from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App Settings
    APP_NAME: str = "Ad Earnings Ledger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"  # comma-separated

    # Database (unset -> in-memory storage)
    DATABASE_URL: Optional[str] = None

    # Administrator identity (messaging-platform id)
    ADMIN_EXTERNAL_ID: str = "6653616672"

    # Ledger rules
    AD_COOLDOWN_SECONDS: float = 3.0
    REFERRAL_COMMISSION_RATE: Decimal = Decimal("0.10")
    MIN_WITHDRAWAL: Decimal = Decimal("1.00")
    DEFAULT_EARNINGS_PER_AD: Decimal = Decimal("0.00035")
    DEFAULT_DAILY_AD_LIMIT: int = 250

    # Channel membership gate (Telegram Bot API)
    REQUIRE_CHANNEL_MEMBERSHIP: bool = False
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    CHANNEL_ID: str = "-1002480439556"
    CHANNEL_URL: str = "https://t.me/TesterMen"
    MEMBERSHIP_TIMEOUT_SECONDS: float = 5.0

    # Price feed (display only)
    PRICE_FEED_URL: str = "https://api.coingecko.com/api/v3/simple/price"
    PRICE_FEED_COIN_ID: str = "the-open-network"
    PRICE_FALLBACK: Decimal = Decimal("5.42")
    PRICE_TIMEOUT_SECONDS: float = 10.0

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
