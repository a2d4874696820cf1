from functools import lru_cache
from typing import Dict

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    postgres_user: str = Field("user", alias="POSTGRES_USER")
    postgres_password: str = Field("password", alias="POSTGRES_PASSWORD")
    postgres_host: str = Field("localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(5432, alias="POSTGRES_PORT")
    postgres_db: str = Field("neon_scheduler", alias="POSTGRES_DB")

    database_url_override: str | None = Field(None, alias="DATABASE_URL")

    @computed_field
    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://"
            f"{self.postgres_user}:{self.postgres_password}@"
            f"{self.postgres_host}:{self.postgres_port}/"
            f"{self.postgres_db}"
        )

    backend_port: int = Field(8000, alias="BACKEND_PORT")
    backend_version: str = "0.1.0"
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Scheduler settings
    scheduler_enabled: bool = Field(True, alias="SCHEDULER_ENABLED")
    scheduler_poll_interval_seconds: float = Field(5, alias="SCHEDULER_POLL_INTERVAL_SECONDS")
    scheduler_max_concurrency: int = Field(5, alias="SCHEDULER_MAX_CONCURRENCY")
    scheduler_claim_batch_size: int = Field(25, alias="SCHEDULER_CLAIM_BATCH_SIZE")
    scheduler_default_timezone: str = Field("UTC", alias="SCHEDULER_DEFAULT_TIMEZONE")
    scheduler_lease_grace_seconds: int = Field(60, alias="SCHEDULER_LEASE_GRACE_SECONDS")
    scheduler_shutdown_timeout_seconds: float = Field(30, alias="SCHEDULER_SHUTDOWN_TIMEOUT_SECONDS")

    # Execution history settings
    history_retention_days: int = Field(30, alias="HISTORY_RETENTION_DAYS")
    history_max_records_per_schedule: int = Field(500, alias="HISTORY_MAX_RECORDS_PER_SCHEDULE")
    success_rate_window_days: int = Field(30, alias="SUCCESS_RATE_WINDOW_DAYS")

    # Agent endpoints, keyed by agent type
    agent_endpoints: Dict[str, str] = Field(default_factory=dict, alias="AGENT_ENDPOINTS")
    agent_endpoint_headers: Dict[str, str] = Field(default_factory=dict, alias="AGENT_ENDPOINT_HEADERS")


@lru_cache
def get_settings() -> Settings:
    return Settings()
