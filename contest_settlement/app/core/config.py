from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Contest Settlement API"
    database_url: str = "sqlite:///contest_settlement.db"
    log_level: str = "INFO"
    # seconds a SQLite writer waits on another writer's lock
    sqlite_busy_timeout: float = 30.0

    fixed_pool_room_size: int = 5
    default_fixed_pool_prize: Decimal = Decimal("24.00")
    reconciliation_tolerance: Decimal = Decimal("0.01")
    preview_limit: int = 100
    summary_limit: int = 20

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SETTLEMENT_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
