from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./quota_ledger.db"
    database_busy_timeout_seconds: float = 30.0
    database_echo: bool = False
    log_level: str = "INFO"

    # Calendar-day boundary for check-ins, streaks and history
    ledger_timezone: str = "UTC"

    # Bounded retry for transient store conflicts
    ledger_max_attempts: int = 5
    ledger_retry_base_backoff_seconds: float = 0.05
    ledger_retry_max_backoff_seconds: float = 1.0
    ledger_retry_deadline_seconds: float = 10.0

    # Configuration snapshots
    config_cache_ttl_seconds: float = 5.0

    # Check-in leaderboard
    leaderboard_cache_ttl_seconds: float = 60.0
    leaderboard_default_limit: int = 10
    leaderboard_max_limit: int = 100

    # Check-in history
    checkin_history_default_page_size: int = 30
    checkin_history_max_page_size: int = 100

    # Redemption codes
    redemption_max_batch_size: int = 100
    redemption_name_max_length: int = 64

    # Internal API security
    admin_api_key: str = ""

    # Groups every member may always select
    always_usable_groups: list[str] = Field(default_factory=lambda: ["default"])

    @field_validator("always_usable_groups", mode="before")
    @classmethod
    def _parse_group_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Scheduled jobs
    ledger_job_scheduler_enabled: bool = False
    ledger_job_schedule_path: str = "config/schedules.toml"
    quota_reconciliation_batch_size: int = 100

    # Quota balance; dotted path to a ``factory(session)``, empty means users.quota
    quota_balance_store: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
