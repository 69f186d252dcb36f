import pytest

from statcrawl.main.config import Settings, reset_settings
from statcrawl.scheduler.domain.job_config import SchedulerConfig
from statcrawl.scheduler.infrastructure.metrics import SchedulerMetrics


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Explicit settings that do not depend on .env or the environment."""
    return Settings(
        postgres_user="unit_test_user",
        postgres_host="localhost",
        postgres_password="unit_test_password",
        postgres_port=5432,
        postgres_db="unit_test_db",
        redis_host="localhost",
        redis_port=6379,
        lock_backend="memory",
        instance_id="unit0001",
        task_timeout_seconds=5,
        fetch_retry_attempts=2,
        fetch_retry_delay_seconds=0,
    )


@pytest.fixture(autouse=True)
def reset_settings_after_test():
    yield
    reset_settings()


@pytest.fixture
def metrics() -> SchedulerMetrics:
    return SchedulerMetrics()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig.model_validate(
        {
            "jobs": {
                "junior_stats": {"cron": "0 */4 * * *", "timeout": "2s", "order": 2},
                "retry_worker": {"cron": "*/10 * * * *", "timeout": "2s", "order": 1},
                "disabled_job": {"cron": "0 0 * * *", "timeout": "1m", "enabled": False},
            }
        }
    )
