from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator
from typing import Annotated, Optional
from functools import lru_cache
import json


def _parse_day_list(v):
    """Accept a JSON list, a comma-separated string or a list of day offsets."""
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except json.JSONDecodeError:
            v = [item.strip() for item in v.split(',') if item.strip()]
    if isinstance(v, (int, float)):
        v = [v]
    days = sorted({int(item) for item in v})
    if not days:
        raise ValueError("At least one threshold is required")
    if days[0] < 0:
        raise ValueError("Thresholds must be zero or positive day offsets")
    return days


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./vaccine_stock.db"

    # Database Connection Pool Settings (PostgreSQL only)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Retries for ledger units that hit a concurrent write
    TRANSACTION_RETRY_ATTEMPTS: int = 3

    # App Settings
    APP_NAME: str = "Vaccine Stock Ledger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    CORS_ORIGINS: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Notification thresholds, in days before the target instant
    STOCK_EXPIRATION_WARNING_DAYS: Annotated[list[int], NoDecode] = [30, 14, 7, 2, 0]
    APPOINTMENT_WARNING_DAYS: Annotated[list[int], NoDecode] = [7, 2, 0]

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    STOCK_CHECK_CRON: str = "0 8 * * *"  # every day at 08:00
    APPOINTMENT_CHECK_CRON: str = "0 9 * * *"  # every day at 09:00
    SCHEDULER_MISFIRE_GRACE_SECONDS: int = 300

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # defaults to SMTP_USER
    SMTP_FROM_NAME: str = "Vaccine Stock Ledger"

    # SMS gateway (guardian reminders)
    SMS_GATEWAY_URL: str = ""
    SMS_API_KEY: str = ""
    SMS_SENDER_ID: str = "VACCIN"
    SMS_TIMEOUT_SECONDS: float = 10.0

    # Frontend URL for links in emails
    FRONTEND_URL: Optional[str] = None

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('STOCK_EXPIRATION_WARNING_DAYS', 'APPOINTMENT_WARNING_DAYS', mode='before')
    @classmethod
    def parse_warning_days(cls, v):
        return _parse_day_list(v)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
