from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./scheduler.db", alias="SCHEDULER_DATABASE_URL"
    )
    log_level: str = Field(default="INFO", alias="SCHEDULER_LOG_LEVEL")
    bot_token: str | None = Field(default=None, alias="BOT_TOKEN")

    # Transaction retries on store contention, on top of the first attempt.
    tx_retries: int = Field(default=3, ge=0, alias="SCHEDULER_TX_RETRIES")
    retry_backoff_sec: float = Field(default=0.05, gt=0, alias="SCHEDULER_RETRY_BACKOFF_SEC")
    retry_backoff_max_sec: float = Field(default=1.0, gt=0, alias="SCHEDULER_RETRY_BACKOFF_MAX_SEC")

    # Used for providers that have not configured a policy of their own.
    advance_booking_days: int = Field(default=60, ge=0, alias="SCHEDULER_ADVANCE_BOOKING_DAYS")
    slot_step_min: int = Field(default=30, gt=0, alias="SCHEDULER_SLOT_STEP_MIN")

    snapshot_ttl_sec: int = Field(default=120, ge=0, alias="SCHEDULER_SNAPSHOT_TTL_SEC")
    sweep_interval_sec: int = Field(default=300, gt=0, alias="SCHEDULER_SWEEP_INTERVAL_SEC")

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", extra="ignore", populate_by_name=True
    )
