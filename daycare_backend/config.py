import re

from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # "production" enables the daily sync scheduler
    environment: str = "development"
    log_level: str = "INFO"

    # AES-256-GCM key for stored SimpleFIN access URLs (openssl rand -hex 32)
    encryption_key: str = ""

    # Firefly III settings
    firefly_base_url: str = "http://firefly:8080"
    firefly_service_pat: str = ""
    firefly_timeout_seconds: float = 10.0
    firefly_expense_account_name: str = "Business Expenses"
    firefly_revenue_account_name: str = "Business Income"

    # SimpleFIN settings
    simplefin_timeout_seconds: float = 15.0
    simplefin_user_agent: str = "Daycare-SimpleFIN/1.0"

    # Sync settings
    sync_timezone: str = "UTC"
    sync_hour: int = 2
    sync_minute: int = 0
    sync_default_days: int = 30
    sync_lookback_days: int = 0
    manual_sync_daily_limit: int = 6
    claim_ttl_minutes: int = 10

    class Config:
        env_file = ".env"

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, value: str) -> str:
        # Empty is allowed here so that tooling can load settings;
        # TokenEncryption refuses to start without a key.
        if value and not re.fullmatch(r"[0-9a-fA-F]{64}", value):
            raise ValueError(
                "ENCRYPTION_KEY must be 64 hex characters (32 bytes). "
                "Generate with: openssl rand -hex 32"
            )
        return value

    @field_validator("sync_hour")
    @classmethod
    def validate_sync_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("SYNC_HOUR must be between 0 and 23")
        return value

    @field_validator("sync_minute")
    @classmethod
    def validate_sync_minute(cls, value: int) -> int:
        if not 0 <= value <= 59:
            raise ValueError("SYNC_MINUTE must be between 0 and 59")
        return value

    @field_validator("sync_default_days", "sync_lookback_days", "manual_sync_daily_limit")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings():
    return Settings()
