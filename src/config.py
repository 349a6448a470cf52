from __future__ import annotations

from decimal import Decimal
from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "reconciliation.db"


class AppSettings(BaseSettings):
    db_file: Path = DB_FILE

    deposit_window_minutes: int = 60
    withdrawal_window_minutes: int = 120
    amount_tolerance: Decimal = Decimal("0.02")
    amount_weight: Decimal = Decimal("0.7")
    time_weight: Decimal = Decimal("0.3")
    candidate_fetch_cap: int = 200

    off_ramp_window_hours: int = 24
    off_ramp_priority: int = 10

    orphan_batch_size: int = 500
    lock_ttl_minutes: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@cache
def config() -> AppSettings:
    return AppSettings()
