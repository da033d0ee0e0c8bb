from __future__ import annotations

from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "rates.db"


class AppSettings(BaseSettings):
    binance_base_url: str = "https://api.binance.com/api/v3"
    binance_timeout: float = 10.0
    binance_max_attempts: int = 3
    binance_retry_delay_seconds: float = 1.0

    database_url: str = f"sqlite:///{DB_FILE}"
    redis_url: str | None = None

    cache_ttl_recent: int = 300
    cache_ttl_historical: int = 3600
    cache_ttl_snapshot: int = 60
    cache_ttl_stats: int = 60

    freshness_threshold_seconds: int = 600
    fetch_interval_seconds: int = 300
    retention_days: int = 365
    reference_timezone: str = "UTC"

    debug: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
