import logging
import os
import sys
import uuid
from typing import Literal, Optional

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LockBackend = Literal["postgres", "redis", "memory"]


def _generate_instance_id() -> str:
    return uuid.uuid4().hex[:8]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Infrastructure dependencies
    postgres_user: str
    postgres_host: str
    postgres_password: str
    postgres_port: int
    postgres_db: str
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: Optional[int] = None
    redis_conn_timeout: int = 5
    redis_retry_on_timeout: bool = True

    # Scheduler
    scheduler_config_path: str = "config/scheduler.yaml"
    scheduler_timezone: str = "UTC"
    lock_backend: LockBackend = "postgres"
    lock_key_prefix: str = "scheduler:lock"
    instance_id: str = Field(default_factory=_generate_instance_id)
    handler_plugins: list[str] = []

    # Bounded executors (domain -> tournament -> team)
    domain_workers: int = 2
    tournament_workers: int = 4
    team_workers: int = 8
    task_timeout_seconds: int = 120
    tournament_task_timeout_seconds: int = 1800
    domain_task_timeout_seconds: int = 21600

    # Failed-job retries
    retry_batch_size: int = 100
    failed_job_max_retries: int = 3
    failed_job_retention_days: int = 30

    # Inline retries for transient fetch errors
    fetch_retry_attempts: int = 3
    fetch_retry_delay_seconds: float = 2.0

    @model_validator(mode="after")
    def validate_worker_settings(self):
        """Ensure executor and retry configuration values are sane."""
        for name in ("domain_workers", "tournament_workers", "team_workers"):
            value = getattr(self, name)
            if value <= 0:
                logging.error(
                    "%s must be greater than zero. Current value: %s", name.upper(), value
                )
                sys.exit(1)

        for name in (
            "task_timeout_seconds",
            "tournament_task_timeout_seconds",
            "domain_task_timeout_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                logging.error(
                    "%s must be greater than zero. Current value: %s", name.upper(), value
                )
                sys.exit(1)

        if self.retry_batch_size <= 0:
            logging.error(
                "RETRY_BATCH_SIZE must be greater than zero. Current value: %s",
                self.retry_batch_size,
            )
            sys.exit(1)

        if self.failed_job_max_retries < 0:
            logging.error(
                "FAILED_JOB_MAX_RETRIES cannot be negative. Current value: %s",
                self.failed_job_max_retries,
            )
            sys.exit(1)

        if self.fetch_retry_attempts < 1:
            logging.error(
                "FETCH_RETRY_ATTEMPTS must be at least 1. Current value: %s",
                self.fetch_retry_attempts,
            )
            sys.exit(1)

        return self

    @computed_field
    @property
    def sync_database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed.

    Returns:
        Settings: The application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing)."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
