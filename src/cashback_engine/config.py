"""Application configuration primitives."""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]
load_dotenv(BASE_DIR / ".env")


class ReconciliationConfig(BaseModel):
    """Tunables handed to the postback processor and reversal coordinator."""

    partial_match_min_length: int = Field(default=6, ge=1)
    default_conversion_type: str = Field(default="install")
    referral_reward: Decimal = Field(default=Decimal("5"))
    ledger_retry_attempts: int = Field(default=3, ge=1)
    resync_batch_size: int = Field(default=100, ge=1)
    offer_cache_ttl: float = Field(default=300.0)
    offer_cache_size: int = Field(default=1024)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    database_url: str = Field(default="sqlite+aiosqlite:///./cashback.db")
    admin_secret: SecretStr = Field(default=SecretStr("change-me"))
    log_level: str = Field(default="INFO")
    payout_currency: str = Field(default="INR")
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
