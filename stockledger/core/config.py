from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "StockLedger"
    env: str = "dev"
    log_level: str = "INFO"
    database_url: str = Field(default="sqlite:///./stockledger.db")
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_enabled: bool = True
    admin_token: str = "dev-admin-token"

    lock_max_wait_seconds: float = 30.0
    lock_ttl_seconds: int = 60
    idempotency_ttl_seconds: int = 7 * 24 * 3600

    job_lock_ttl_seconds: int = 30 * 60
    job_lock_max_attempts: int = 3
    job_lock_wait_seconds: float = 10.0

    reconciliation_percentage_threshold: float = 10.0
    reconciliation_notify_threshold: int = 5
    reconciliation_batch_size: int = 100

    retry_intervals_seconds: list[int] = Field(default_factory=lambda: [300, 900, 3600, 14400])
    critical_retry_delay_seconds: int = 30
    unprocessed_grace_seconds: int = 600

    inline_jobs: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_prefix="STOCKLEDGER_")


@lru_cache
def get_settings() -> Settings:
    return Settings()
