from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./distributions.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Deal Distribution Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Money
    CURRENCY_DECIMAL_PLACES: int = 2  # Minimal currency unit = 10^-places
    LEDGER_TOLERANCE: Decimal = Decimal("0.01")  # Investment sum vs deal capital

    # Settlement
    SETTLEMENT_MAX_RETRIES: int = 3  # Attempts for a failed settlement transaction

    # Notifications
    NOTIFICATIONS_ENABLED: bool = True
    NOTIFICATION_SENDER: Optional[str] = None  # Display name on outgoing messages

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def currency_quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')."""
        return Decimal(1).scaleb(-self.CURRENCY_DECIMAL_PLACES)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
